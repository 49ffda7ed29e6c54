from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from linkauth.config import Settings
from linkauth.logging import get_logger
from linkauth.service.errors import (
    InvalidTokenError,
    SessionExpiredError,
    UserInactiveError,
    UserNotFoundError,
)
from linkauth.service.security_config import SecurityConfigProvider
from linkauth.storage.errors import RecordNotFound
from linkauth.storage.models import DeviceInfo, User, utcnow

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
QR = "qr"


@dataclass(frozen=True)
class TokenCheck:
    payload: Optional[dict[str, Any]]
    # "ok", "malformed", "bad_algorithm", "bad_signature", "bad_claims", "expired", "wrong_kind"
    reason: str


def idle_expired(user: User, timeout_minutes: int, now: datetime) -> bool:
    if user.last_seen is None:
        return False
    return now - user.last_seen > timedelta(minutes=timeout_minutes)


class TokenService:
    """Stateless HS256 tokens scoped to a (user, device) pair.

    Lifetimes are read from the security configuration at issue time, so a
    configuration change only affects tokens minted afterwards.
    """

    def __init__(
        self,
        settings: Settings,
        config: SecurityConfigProvider,
        users,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.config = config
        self.users = users
        self._clock = clock
        self._clock_skew_leeway = timedelta(seconds=settings.jwt_clock_skew_seconds)

    def _now(self) -> datetime:
        return self._clock()

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> TokenCheck:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return TokenCheck(None, "malformed")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            return TokenCheck(None, "malformed")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            return TokenCheck(None, "bad_algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        # compare_digest raises TypeError on non-ASCII str, so compare bytes
        if not hmac.compare_digest(
            expected_sig.encode(), sig_b64.encode("utf-8", "surrogatepass")
        ):
            return TokenCheck(None, "bad_signature")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError):
            return TokenCheck(None, "malformed")
        if not isinstance(payload, dict):
            return TokenCheck(None, "malformed")
        if payload.get("iss") != self.settings.jwt_issuer:
            return TokenCheck(None, "bad_claims")
        if payload.get("aud") != self.settings.jwt_audience:
            return TokenCheck(None, "bad_claims")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return TokenCheck(None, "malformed")
        if exp_ts <= self._now().timestamp() - self._clock_skew_leeway.total_seconds():
            return TokenCheck(None, "expired")
        return TokenCheck(payload, "ok")

    def _issue(
        self, kind: str, subject: str, lifetime: timedelta, **claims: Any
    ) -> tuple[str, datetime]:
        now = self._now()
        expires_at = now + lifetime
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": subject,
            "typ": kind,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": str(uuid.uuid4()),
            **claims,
        }
        return self._encode_jwt(payload), expires_at

    def issue_access_token(self, user: User, device_id: str) -> tuple[str, datetime]:
        minutes = self.config.get().tokens.access_token_minutes
        return self._issue(ACCESS, user.id, timedelta(minutes=minutes), did=device_id)

    def issue_refresh_token(
        self, user: User, device_id: str, device_info: Optional[DeviceInfo] = None
    ) -> tuple[str, datetime]:
        minutes = self.config.get().tokens.refresh_token_minutes
        claims: dict[str, Any] = {"did": device_id}
        if device_info is not None:
            claims["plt"] = device_info.platform
        return self._issue(REFRESH, user.id, timedelta(minutes=minutes), **claims)

    def issue_pair(
        self, user: User, device_id: str, device_info: Optional[DeviceInfo] = None
    ) -> dict[str, Any]:
        access_token, access_exp = self.issue_access_token(user, device_id)
        refresh_token, refresh_exp = self.issue_refresh_token(user, device_id, device_info)
        return {
            "access_token": access_token,
            "refresh_token": refresh_token,
            "token_type": "bearer",
            "expires_at": access_exp.isoformat(),
            "refresh_expires_at": refresh_exp.isoformat(),
            "device_id": device_id,
        }

    def issue_qr_token(self, session_id: str, expires_at: datetime) -> str:
        lifetime = max(timedelta(seconds=1), expires_at - self._now())
        token, _ = self._issue(QR, session_id, lifetime, nonce=uuid.uuid4().hex)
        return token

    def inspect(self, token: str, kind: str) -> TokenCheck:
        check = self._decode_jwt(token)
        if check.payload is not None and check.payload.get("typ") != kind:
            check = TokenCheck(None, "wrong_kind")
        if check.payload is None:
            logger.info("jwt_rejected", reason=check.reason, expected_kind=kind)
        return check

    def verify(self, token: str, kind: str) -> Optional[dict[str, Any]]:
        """Return the payload of a valid ``kind`` token, otherwise ``None``."""
        return self.inspect(token, kind).payload

    def refresh(self, refresh_token: str) -> dict[str, Any]:
        payload = self.verify(refresh_token, REFRESH)
        if payload is None:
            raise InvalidTokenError("invalid or expired refresh token")
        user_id = payload.get("sub")
        device_id = payload.get("did")
        if not user_id or not device_id:
            raise InvalidTokenError("invalid or expired refresh token")
        now = self._now()
        timeout = self.config.get().security.session_timeout_minutes

        def _touch(record: User) -> User:
            if not record.is_active:
                raise UserInactiveError("user is not active", detail={"status": record.status})
            if idle_expired(record, timeout, now):
                raise SessionExpiredError("session expired due to inactivity")
            record.is_online = True
            record.last_seen = now
            device = record.find_device(device_id)
            if device is not None:
                device.last_active = now
            return record

        try:
            user = self.users.update_user(user_id, _touch)
        except RecordNotFound:
            raise UserNotFoundError("user not found")
        except SessionExpiredError:
            logger.info("refresh_session_idle_expired", user_id=user_id)
            raise
        access_token, access_exp = self.issue_access_token(user, device_id)
        return {
            "access_token": access_token,
            "token_type": "bearer",
            "expires_at": access_exp.isoformat(),
            "device_id": device_id,
        }
