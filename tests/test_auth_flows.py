"""Service-level tests for the composed sign-in flows in AuthService."""

import pytest

from linkauth.service.errors import (
    AccountLockedError,
    ConflictError,
    InvalidCodeError,
    RateLimitedError,
    ServiceError,
    UserSuspendedError,
)
from linkauth.storage.models import DeviceInfo, UserStatus

PHONE = "+15551234567"


@pytest.fixture
def codes(runtime):
    counter = iter(range(200001, 200100))
    runtime.otp._generate_code = lambda digits: str(next(counter))
    return runtime


async def _registered(runtime, clock, device):
    issued = await runtime.auth.send_otp(PHONE)
    result = await runtime.auth.register(PHONE, issued["code"], device, display_name="Ada")
    clock.advance(seconds=61)
    return result


class TestRegisterAndLogin:
    async def test_register_creates_verified_user(self, codes, clock, device_info):
        result = await _registered(codes, clock, device_info)
        user = codes.store.get_user(result["user"]["id"])
        assert user.is_verified
        assert user.is_online
        assert [d.device_id for d in user.devices] == ["phone-1"]
        assert "user_registered" in codes.analytics.names()

    async def test_register_twice_conflicts(self, codes, clock, device_info):
        await _registered(codes, clock, device_info)
        issued = await codes.auth.send_otp(PHONE)
        with pytest.raises(ConflictError):
            await codes.auth.register(PHONE, issued["code"], device_info)

    async def test_verify_then_login_with_same_code(self, codes, clock, device_info):
        """The verify step leaves the challenge for the login that follows."""
        await _registered(codes, clock, device_info)
        issued = await codes.auth.send_otp(PHONE)
        verified = await codes.auth.verify_otp(PHONE, issued["code"])
        assert verified["is_new_user"] is False

        result = await codes.auth.login(PHONE, issued["code"], device_info)
        assert result["tokens"]["device_id"] == "phone-1"
        assert "login_success" in codes.analytics.names()

    async def test_failed_login_tracked(self, codes, clock, device_info):
        await _registered(codes, clock, device_info)
        await codes.auth.send_otp(PHONE)
        with pytest.raises(InvalidCodeError):
            await codes.auth.login(PHONE, "999999", device_info)
        failed = [e for e in codes.analytics.events if e.event == "login_failed"]
        assert failed[0].attributes["reason"] == "INVALID_CODE"

    async def test_suspended_user_cannot_log_in(self, codes, clock, device_info):
        result = await _registered(codes, clock, device_info)
        codes.store.set_user_status(result["user"]["id"], UserStatus.SUSPENDED.value)
        issued = await codes.auth.send_otp(PHONE)
        with pytest.raises(UserSuspendedError):
            await codes.auth.login(PHONE, issued["code"], device_info)

    async def test_locked_user_cannot_log_in(self, codes, clock, device_info):
        result = await _registered(codes, clock, device_info)
        for _ in range(5):
            codes.lockout.record_failure(result["user"]["id"])
        issued = await codes.auth.send_otp(PHONE)
        with pytest.raises(AccountLockedError):
            await codes.auth.login(PHONE, issued["code"], device_info)

    async def test_login_rate_limited(self, codes, clock, device_info):
        await _registered(codes, clock, device_info)
        await codes.auth.send_otp(PHONE)
        for _ in range(2):
            with pytest.raises(InvalidCodeError):
                await codes.auth.login(PHONE, "999999", device_info)
        # Third miss exhausts the challenge; further calls hit the request limit
        with pytest.raises(InvalidCodeError):
            await codes.auth.login(PHONE, "999999", device_info)
        outcomes = []
        for _ in range(3):
            try:
                await codes.auth.login(PHONE, "999999", device_info)
            except ServiceError as exc:
                outcomes.append(exc.error_code)
        assert outcomes[-1] == "RATE_LIMIT_EXCEEDED"


class TestLogout:
    async def test_logout_all_devices(self, codes, clock, device_info):
        result = await _registered(codes, clock, device_info)
        user_id = result["user"]["id"]
        codes.devices.upsert_device(user_id, DeviceInfo(device_id="tablet-1"))
        ctx = codes.sessions.authenticate(f"Bearer {result['tokens']['access_token']}")

        outcome = await codes.auth.logout(ctx, all_devices=True)
        assert outcome == {"logged_out_devices": 2, "is_online": False}
        assert not codes.store.get_user(user_id).is_online


class TestQRThrottle:
    async def test_qr_generation_limited_per_address(self, codes):
        for _ in range(10):
            await codes.auth.create_qr_session(None, ip_address="10.0.0.9")
        with pytest.raises(RateLimitedError):
            await codes.auth.create_qr_session(None, ip_address="10.0.0.9")
        await codes.auth.create_qr_session(None, ip_address="10.0.0.10")
