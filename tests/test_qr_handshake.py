"""Tests for QR device sign-in.

Tests for:
- Session creation and QR image payload
- Poll states and one-time token hand-off
- Confirmation races, expiry and invalid tokens
"""

import asyncio
import base64

import pytest

from linkauth.service.errors import (
    AlreadyUsedError,
    ChallengeExpiredError,
    InvalidTokenError,
    NotFoundError,
    TokenExpiredError,
    UserInactiveError,
    ValidationError,
)
from linkauth.service.qr import render_qr_data_url
from linkauth.service.tokens import ACCESS
from linkauth.storage.models import DeviceInfo, UserStatus

PHONE = "+15551234567"


@pytest.fixture
def user(runtime):
    return runtime.store.create_user(PHONE, "1", is_verified=True)


@pytest.fixture
def waiting_device():
    return DeviceInfo(device_id="desktop-1", device_name="Laptop", platform="web")


class TestQRPayload:
    def test_data_url_is_png(self):
        url = render_qr_data_url("hello")
        assert url.startswith("data:image/png;base64,")
        raw = base64.b64decode(url.split(",", 1)[1])
        assert raw[:8] == b"\x89PNG\r\n\x1a\n"


class TestCreateAndPoll:
    async def test_new_session_is_pending(self, runtime, waiting_device):
        created = await runtime.qr.create_session(waiting_device, ip_address="10.0.0.1")
        assert created["qr_payload"].startswith("data:image/png;base64,")
        status = await runtime.qr.poll_status(created["session_id"], created["poll_token"])
        assert status["is_used"] is False
        assert "tokens" not in status
        assert "qr_generated" in runtime.analytics.names()

    async def test_unknown_session(self, runtime):
        with pytest.raises(NotFoundError):
            await runtime.qr.poll_status("no-such-session")

    async def test_expired_session_poll(self, runtime, clock):
        """Polling past expiry reports EXPIRED and removes the session."""
        created = await runtime.qr.create_session()
        clock.advance(minutes=5)
        with pytest.raises(ChallengeExpiredError):
            await runtime.qr.poll_status(created["session_id"])
        with pytest.raises(NotFoundError):
            await runtime.qr.poll_status(created["session_id"])


class TestConfirm:
    async def test_confirm_hands_tokens_to_waiting_device_once(
        self, runtime, user, waiting_device
    ):
        created = await runtime.qr.create_session(waiting_device)
        confirmed = await runtime.qr.confirm(user, qr_token=created["qr_token"])
        assert confirmed["device_id"] == "desktop-1"
        assert confirmed["user_id"] == user.id

        # A poll without the poll token sees the state but not the tokens
        peek = await runtime.qr.poll_status(created["session_id"])
        assert peek["is_used"] is True
        assert "tokens" not in peek

        first = await runtime.qr.poll_status(created["session_id"], created["poll_token"])
        assert first["user_id"] == user.id
        payload = runtime.tokens.verify(first["tokens"]["access_token"], ACCESS)
        assert payload["sub"] == user.id
        assert payload["did"] == "desktop-1"

        second = await runtime.qr.poll_status(created["session_id"], created["poll_token"])
        assert second["is_used"] is True
        assert "tokens" not in second

        stored = runtime.store.get_user(user.id)
        assert stored.find_device("desktop-1") is not None
        assert "qr_verification_success" in runtime.analytics.names()

    async def test_wrong_poll_token_gets_no_tokens(self, runtime, user):
        created = await runtime.qr.create_session()
        await runtime.qr.confirm(user, session_id=created["session_id"])
        status = await runtime.qr.poll_status(created["session_id"], "guessed")
        assert "tokens" not in status

    async def test_concurrent_confirm_single_winner(self, runtime, user, waiting_device):
        """Two simultaneous confirmations: exactly one succeeds."""
        created = await runtime.qr.create_session(waiting_device)
        results = await asyncio.gather(
            runtime.qr.confirm(user, qr_token=created["qr_token"]),
            runtime.qr.confirm(user, qr_token=created["qr_token"]),
            return_exceptions=True,
        )
        successes = [r for r in results if isinstance(r, dict)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], AlreadyUsedError)

    async def test_confirm_used_session(self, runtime, user):
        created = await runtime.qr.create_session()
        await runtime.qr.confirm(user, session_id=created["session_id"])
        with pytest.raises(AlreadyUsedError) as exc_info:
            await runtime.qr.confirm(user, session_id=created["session_id"])
        assert exc_info.value.error_code == "ALREADY_USED"

    async def test_confirm_expired_token(self, runtime, user, clock):
        created = await runtime.qr.create_session()
        clock.advance(minutes=6)
        with pytest.raises(TokenExpiredError):
            await runtime.qr.confirm(user, qr_token=created["qr_token"])

    async def test_confirm_expired_session_by_id(self, runtime, user, clock):
        created = await runtime.qr.create_session()
        clock.advance(minutes=5)
        with pytest.raises(ChallengeExpiredError):
            await runtime.qr.confirm(user, session_id=created["session_id"])
        assert "qr_verification_failed" in runtime.analytics.names()

    async def test_confirm_rejects_foreign_token(self, runtime, user):
        pair = runtime.tokens.issue_pair(user, "dev-1")
        with pytest.raises(InvalidTokenError):
            await runtime.qr.confirm(user, qr_token=pair["access_token"])

    async def test_confirm_requires_reference(self, runtime, user):
        with pytest.raises(ValidationError):
            await runtime.qr.confirm(user)

    async def test_inactive_user_cannot_confirm(self, runtime, user):
        created = await runtime.qr.create_session()
        runtime.store.set_user_status(user.id, UserStatus.BLOCKED.value)
        blocked = runtime.store.get_user(user.id)
        with pytest.raises(UserInactiveError):
            await runtime.qr.confirm(blocked, session_id=created["session_id"])

    async def test_sweep_removes_expired_sessions(self, runtime, clock):
        from linkauth.service.sweeper import sweep_once

        await runtime.qr.create_session()
        clock.advance(minutes=10)
        removed = await sweep_once(runtime.cache, clock=clock)
        assert removed["qr"] == 1
