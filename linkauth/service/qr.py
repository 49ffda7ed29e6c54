from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
import uuid
from datetime import datetime, timedelta
from io import BytesIO
from typing import Any, Callable, Dict, Optional

import qrcode
from qrcode.constants import ERROR_CORRECT_M

from linkauth.logging import get_logger
from linkauth.service.analytics import SYSTEM_ACTOR, AnalyticsSink
from linkauth.service.devices import DeviceRegistry
from linkauth.service.errors import (
    AlreadyUsedError,
    ChallengeExpiredError,
    InvalidTokenError,
    NotFoundError,
    TokenExpiredError,
    UserInactiveError,
    ValidationError,
)
from linkauth.service.security_config import SecurityConfigProvider
from linkauth.service.tokens import QR, TokenService
from linkauth.storage.models import DeviceInfo, QRSession, User, utcnow

logger = get_logger(__name__)


def render_qr_data_url(data: str, *, box_size: int = 8, border: int = 4) -> str:
    """Render ``data`` as a PNG QR code wrapped in a data URL."""
    qr = qrcode.QRCode(error_correction=ERROR_CORRECT_M, box_size=box_size, border=border)
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    bio = BytesIO()
    img.save(bio, format="PNG")
    return "data:image/png;base64," + base64.b64encode(bio.getvalue()).decode("ascii")


def _hash_poll_token(poll_token: str) -> str:
    return hashlib.sha256(poll_token.encode()).hexdigest()


def _device_from_fingerprint(fingerprint: Dict[str, Any]) -> Optional[DeviceInfo]:
    device = fingerprint.get("device") or {}
    if not device.get("device_id"):
        return None
    return DeviceInfo(
        device_id=device["device_id"],
        device_name=device.get("device_name") or "Unknown device",
        platform=device.get("platform") or "unknown",
        app_version=device.get("app_version"),
        user_agent=fingerprint.get("user_agent"),
    )


class QRHandshake:
    """Pending -> used | expired sessions that let a signed-in device admit a new one.

    The waiting device creates a session and shows the signed QR token; the
    signed-in device confirms it, which mints the new device's tokens and
    parks them on the session until the waiting device's next poll.
    """

    def __init__(
        self,
        cache,
        config: SecurityConfigProvider,
        tokens: TokenService,
        devices: DeviceRegistry,
        *,
        analytics: AnalyticsSink,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.cache = cache
        self.config = config
        self.tokens = tokens
        self.devices = devices
        self.analytics = analytics
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    async def create_session(
        self,
        device: Optional[DeviceInfo] = None,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Dict[str, Any]:
        now = self._now()
        expires_at = now + timedelta(minutes=self.config.get().qr.session_expiry_minutes)
        session_id = str(uuid.uuid4())
        qr_token = self.tokens.issue_qr_token(session_id, expires_at)
        poll_token = secrets.token_urlsafe(32)
        fingerprint: Dict[str, Any] = {"user_agent": user_agent, "ip_address": ip_address}
        if device is not None:
            fingerprint["device"] = {
                "device_id": device.device_id,
                "device_name": device.device_name,
                "platform": device.platform,
                "app_version": device.app_version,
            }
        session = QRSession(
            session_id=session_id,
            token=qr_token,
            created_at=now,
            expires_at=expires_at,
            fingerprint=fingerprint,
            poll_key_hash=_hash_poll_token(poll_token),
        )
        await self.cache.create_qr_session(session)
        logger.info("qr_session_created", session_id=session_id, ip_address=ip_address)
        self.analytics.track_event(
            SYSTEM_ACTOR,
            "auth",
            "qr_generated",
            {"session_id": session_id, "user_agent": user_agent, "ip_address": ip_address},
        )
        return {
            "session_id": session_id,
            "qr_token": qr_token,
            "qr_payload": render_qr_data_url(qr_token),
            "poll_token": poll_token,
            "expires_at": expires_at.isoformat(),
        }

    async def poll_status(
        self, session_id: str, poll_token: Optional[str] = None
    ) -> Dict[str, Any]:
        """Current state of a session; the first authorised poll after confirm gets the tokens."""
        claim = False
        if poll_token:
            current = await self.cache.get_qr_session(session_id)
            claim = bool(
                current
                and current.poll_key_hash
                and hmac.compare_digest(current.poll_key_hash, _hash_poll_token(poll_token))
            )
        status, session = await self.cache.poll_qr_session(
            session_id, now=self._now(), claim_tokens=claim
        )
        if status == "missing":
            raise NotFoundError("QR session not found")
        if status == "expired":
            logger.info("qr_session_expired", session_id=session_id)
            raise ChallengeExpiredError("QR session has expired")
        result: Dict[str, Any] = {
            "session_id": session.session_id,
            "is_used": session.is_used,
            "expires_at": session.expires_at.isoformat(),
        }
        if session.is_used:
            result["user_id"] = session.user_id
            result["device_id"] = session.device_id
        if session.pending_tokens:
            result["tokens"] = session.pending_tokens
            logger.info("qr_tokens_delivered", session_id=session_id)
        return result

    def _resolve_session_id(self, qr_token: Optional[str], session_id: Optional[str]) -> str:
        if qr_token:
            check = self.tokens.inspect(qr_token, QR)
            if check.reason == "expired":
                raise TokenExpiredError("QR code has expired")
            if check.payload is None or not check.payload.get("sub"):
                raise InvalidTokenError("invalid QR code")
            return str(check.payload["sub"])
        if session_id:
            return session_id
        raise ValidationError(
            "qr_token or session_id is required", detail={"field": "qr_token"}
        )

    async def confirm(
        self,
        user: User,
        *,
        qr_token: Optional[str] = None,
        session_id: Optional[str] = None,
        device: Optional[DeviceInfo] = None,
    ) -> Dict[str, Any]:
        sid = self._resolve_session_id(qr_token, session_id)
        try:
            return await self._confirm(user, sid, qr_token, device)
        except (AlreadyUsedError, ChallengeExpiredError, NotFoundError, UserInactiveError) as exc:
            self.analytics.track_event(
                user.id,
                "auth",
                "qr_verification_failed",
                {"session_id": sid, "reason": exc.error_code},
            )
            raise

    async def _confirm(
        self,
        user: User,
        sid: str,
        qr_token: Optional[str],
        device: Optional[DeviceInfo],
    ) -> Dict[str, Any]:
        now = self._now()
        session = await self.cache.get_qr_session(sid)
        if session is None:
            raise NotFoundError("QR session not found")
        if qr_token and not hmac.compare_digest(session.token, qr_token):
            raise InvalidTokenError("invalid QR code")
        if session.is_used:
            raise AlreadyUsedError("QR code has already been used")
        if session.is_expired(now):
            raise ChallengeExpiredError("QR session has expired")
        if not user.is_active:
            raise UserInactiveError("user is not active", detail={"status": user.status})

        info = device or _device_from_fingerprint(session.fingerprint)
        if info is None:
            info = DeviceInfo(device_id=f"qr-{uuid.uuid4().hex[:12]}")
        token_pair = self.tokens.issue_pair(user, info.device_id, info)

        status, _ = await self.cache.mark_qr_used(
            sid, user_id=user.id, device_id=info.device_id, tokens=token_pair, now=now
        )
        if status == "missing":
            raise NotFoundError("QR session not found")
        if status == "used":
            raise AlreadyUsedError("QR code has already been used")
        if status == "expired":
            raise ChallengeExpiredError("QR session has expired")

        record = self.devices.upsert_device(user.id, info)
        logger.info(
            "qr_session_confirmed",
            session_id=sid,
            user_id=user.id,
            device_id=record.device_id,
        )
        self.analytics.track_event(
            user.id,
            "auth",
            "qr_verification_success",
            {"session_id": sid, "device_id": record.device_id, "platform": record.platform},
        )
        return {"session_id": sid, "user_id": user.id, "device_id": record.device_id}
