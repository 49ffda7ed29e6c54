from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, Optional

from linkauth.logging import get_logger, mask_phone_number
from linkauth.service.analytics import SYSTEM_ACTOR, AnalyticsSink
from linkauth.service.devices import DeviceRegistry
from linkauth.service.errors import (
    ConflictError,
    RateLimitedError,
    ServiceError,
    UserNotFoundError,
    retry_detail,
)
from linkauth.service.lockout import LockoutPolicy
from linkauth.service.otp import OTPChallengeEngine, normalize_phone
from linkauth.service.qr import QRHandshake
from linkauth.service.security_config import RateWindow, SecurityConfigProvider
from linkauth.service.session import SessionContext, SessionGate, ensure_user_allowed
from linkauth.service.tokens import TokenService
from linkauth.storage.errors import ConstraintViolation
from linkauth.storage.models import DeviceInfo, User, utcnow

logger = get_logger(__name__)


def public_user(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "phone_number": user.phone_number,
        "country_code": user.country_code,
        "display_name": user.display_name,
        "status": user.status,
        "is_verified": user.is_verified,
        "is_online": user.is_online,
        "last_seen": user.last_seen.isoformat() if user.last_seen else None,
        "devices": [
            {
                "device_id": d.device_id,
                "device_name": d.device_name,
                "platform": d.platform,
                "app_version": d.app_version,
                "last_active": d.last_active.isoformat(),
                "is_active": d.is_active,
            }
            for d in user.devices
        ],
    }


async def enforce_rate_limit(
    cache, key: str, window: RateWindow, *, now: Optional[datetime] = None
) -> int:
    """Consume one request from ``key``'s bucket or raise ``RateLimitedError``.

    Returns the number of requests still available in the window.
    """
    if window.max_requests <= 0:
        return window.max_requests
    allowed, remaining, reset_seconds = await cache.check_rate_limit(
        key, window.max_requests, window.window_seconds, now=now
    )
    if not allowed:
        logger.info("rate_limit_exceeded", key=key.split(":", 1)[0], retry_after=reset_seconds)
        raise RateLimitedError(
            "too many requests, please try again later",
            detail=retry_detail(reset_seconds),
        )
    return remaining


class AuthService:
    """Phone-number sign in, registration and device session flows."""

    def __init__(
        self,
        users,
        cache,
        config: SecurityConfigProvider,
        *,
        otp: OTPChallengeEngine,
        lockout: LockoutPolicy,
        devices: DeviceRegistry,
        tokens: TokenService,
        qr: QRHandshake,
        sessions: SessionGate,
        analytics: AnalyticsSink,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.users = users
        self.cache = cache
        self.config = config
        self.otp = otp
        self.lockout = lockout
        self.devices = devices
        self.tokens = tokens
        self.qr = qr
        self.sessions = sessions
        self.analytics = analytics
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    async def _throttle(self, key: str, window: RateWindow) -> None:
        await enforce_rate_limit(self.cache, key, window, now=self._now())

    def _mark_signed_in(self, user_id: str) -> User:
        now = self._now()

        def _apply(user: User) -> User:
            user.is_online = True
            user.last_seen = now
            return user

        return self.users.update_user(user_id, _apply)

    # ------------------------------------------------------------------
    # OTP
    # ------------------------------------------------------------------

    async def send_otp(self, phone_number: str, country_code: Optional[str] = None) -> Dict[str, Any]:
        key = normalize_phone(phone_number, country_code)
        await self._throttle(f"otp:{key}", self.config.get().rate_limiting.otp)
        issued = await self.otp.issue(key)
        self.analytics.track_event(
            SYSTEM_ACTOR, "auth", "otp_sent", {"phone": mask_phone_number(key)}
        )
        return issued.to_dict()

    async def resend_otp(self, phone_number: str, country_code: Optional[str] = None) -> Dict[str, Any]:
        key = normalize_phone(phone_number, country_code)
        await self._throttle(f"otp:{key}", self.config.get().rate_limiting.otp)
        issued = await self.otp.resend(key)
        self.analytics.track_event(
            SYSTEM_ACTOR,
            "auth",
            "otp_resent",
            {"phone": mask_phone_number(key), "resend_count": issued.resend_count},
        )
        return issued.to_dict()

    async def verify_otp(
        self, phone_number: str, code: str, country_code: Optional[str] = None
    ) -> Dict[str, Any]:
        result = await self.otp.validate(
            phone_number, code, delete_on_success=False, country_code=country_code
        )
        return {
            "verified": result.success,
            "is_new_user": result.is_new_user,
            "attempts_remaining": result.attempts_remaining,
        }

    async def otp_status(self, phone_number: str, country_code: Optional[str] = None) -> Dict[str, Any]:
        return await self.otp.status(phone_number, country_code)

    async def cancel_otp(self, phone_number: str, country_code: Optional[str] = None) -> bool:
        return await self.otp.cancel(phone_number, country_code)

    # ------------------------------------------------------------------
    # Sign in / registration
    # ------------------------------------------------------------------

    async def login(
        self,
        phone_number: str,
        code: str,
        device: DeviceInfo,
        country_code: Optional[str] = None,
    ) -> Dict[str, Any]:
        key = normalize_phone(phone_number, country_code)
        await self._throttle(f"login:{key}", self.config.get().rate_limiting.login)
        user = self.users.get_user_by_phone(key)
        try:
            if user is None:
                raise UserNotFoundError("no account for this phone number")
            self.lockout.ensure_not_locked(user.id)
            ensure_user_allowed(user)
            await self.otp.validate(key, code, delete_on_success=True)
        except ServiceError as exc:
            self.analytics.track_event(
                user.id if user else SYSTEM_ACTOR,
                "auth",
                "login_failed",
                {"reason": exc.error_code, "phone": mask_phone_number(key)},
            )
            raise

        self.lockout.record_success(user.id)
        record = self.devices.upsert_device(user.id, device)
        user = self._mark_signed_in(user.id)
        token_pair = self.tokens.issue_pair(user, record.device_id, device)
        logger.info("login_success", user_id=user.id, device_id=record.device_id)
        self.analytics.track_event(
            user.id,
            "auth",
            "login_success",
            {"device_id": record.device_id, "platform": record.platform},
        )
        return {"user": public_user(user), "tokens": token_pair}

    async def register(
        self,
        phone_number: str,
        code: str,
        device: DeviceInfo,
        *,
        display_name: Optional[str] = None,
        country_code: Optional[str] = None,
    ) -> Dict[str, Any]:
        key = normalize_phone(phone_number, country_code)
        await self._throttle(f"register:{key}", self.config.get().rate_limiting.login)
        if self.users.get_user_by_phone(key) is not None:
            raise ConflictError("an account already exists for this phone number")
        await self.otp.validate(key, code, delete_on_success=True)
        try:
            user = self.users.create_user(
                key,
                (country_code or "").lstrip("+"),
                display_name=display_name,
                is_verified=True,
            )
        except ConstraintViolation as exc:
            raise ConflictError(
                "an account already exists for this phone number", detail=exc.detail
            ) from exc
        record = self.devices.upsert_device(user.id, device)
        user = self._mark_signed_in(user.id)
        token_pair = self.tokens.issue_pair(user, record.device_id, device)
        logger.info("user_registered", user_id=user.id, device_id=record.device_id)
        self.analytics.track_event(
            user.id,
            "auth",
            "user_registered",
            {"device_id": record.device_id, "platform": record.platform},
        )
        return {"user": public_user(user), "tokens": token_pair}

    async def refresh(self, refresh_token: str) -> Dict[str, Any]:
        try:
            return self.tokens.refresh(refresh_token)
        except ServiceError as exc:
            self.analytics.track_event(
                SYSTEM_ACTOR, "auth", "refresh_failed", {"reason": exc.error_code}
            )
            raise

    async def logout(
        self,
        ctx: SessionContext,
        *,
        device_id: Optional[str] = None,
        all_devices: bool = False,
    ) -> Dict[str, Any]:
        if all_devices:
            count = self.devices.deactivate_all(ctx.user_id)
            logger.info("logout_all_devices", user_id=ctx.user_id, devices=count)
            result = {"logged_out_devices": count, "is_online": False}
        else:
            target = device_id or ctx.device_id
            still_active = self.devices.deactivate_device(ctx.user_id, target)
            logger.info("logout_device", user_id=ctx.user_id, device_id=target)
            result = {"logged_out_devices": 1, "is_online": still_active}
        self.analytics.track_event(
            ctx.user_id, "auth", "logout", {"all_devices": all_devices}
        )
        return result

    # ------------------------------------------------------------------
    # QR
    # ------------------------------------------------------------------

    async def create_qr_session(
        self,
        device: Optional[DeviceInfo],
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Dict[str, Any]:
        await self._throttle(
            f"qr:{ip_address or 'unknown'}", self.config.get().rate_limiting.qr_generate
        )
        return await self.qr.create_session(device, user_agent=user_agent, ip_address=ip_address)

    async def poll_qr_session(self, session_id: str, poll_token: Optional[str] = None) -> Dict[str, Any]:
        return await self.qr.poll_status(session_id, poll_token)

    async def confirm_qr_session(
        self,
        ctx: SessionContext,
        *,
        qr_token: Optional[str] = None,
        session_id: Optional[str] = None,
        device: Optional[DeviceInfo] = None,
    ) -> Dict[str, Any]:
        return await self.qr.confirm(
            ctx.user, qr_token=qr_token, session_id=session_id, device=device
        )
