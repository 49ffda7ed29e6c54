from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from linkauth.logging import get_logger
from linkauth.service.errors import (
    AuthenticationError,
    InvalidTokenError,
    SessionExpiredError,
    UserBlockedError,
    UserNotFoundError,
    UserSuspendedError,
    VerificationRequiredError,
)
from linkauth.service.security_config import SecurityConfigProvider
from linkauth.service.tokens import ACCESS, TokenService, idle_expired
from linkauth.storage.errors import RecordNotFound
from linkauth.storage.models import User, UserStatus, utcnow

logger = get_logger(__name__)


@dataclass
class SessionContext:
    user: User
    user_id: str
    device_id: str
    payload: dict[str, Any] = field(default_factory=dict)


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    if not header.lower().startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


def ensure_user_allowed(user: User) -> None:
    if user.is_active:
        return
    if user.status == UserStatus.SUSPENDED.value:
        raise UserSuspendedError("account has been suspended")
    raise UserBlockedError("account has been blocked", detail={"status": user.status})


class SessionGate:
    """Per-request check of the bearer token against current user state.

    Every user-state check runs inside the store's per-user update, so the
    last-seen stamp is only committed when all of them pass.
    """

    def __init__(
        self,
        tokens: TokenService,
        users,
        config: SecurityConfigProvider,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.tokens = tokens
        self.users = users
        self.config = config
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    def authenticate(
        self, authorization: Optional[str], *, require_verified: bool = False
    ) -> SessionContext:
        token = _extract_bearer(authorization)
        if token is None:
            raise AuthenticationError("missing or invalid authorization header")
        payload = self.tokens.verify(token, ACCESS)
        if payload is None:
            raise InvalidTokenError("invalid token")
        user_id = payload.get("sub")
        device_id = payload.get("did")
        if not user_id or not device_id:
            raise InvalidTokenError("invalid token")

        now = self._now()
        timeout = self.config.get().security.session_timeout_minutes

        def _gate(user: User) -> User:
            ensure_user_allowed(user)
            if require_verified and not user.is_verified:
                raise VerificationRequiredError("phone verification required")
            if idle_expired(user, timeout, now):
                raise SessionExpiredError("session expired due to inactivity")
            user.last_seen = now
            user.is_online = True
            return user

        try:
            user = self.users.update_user(user_id, _gate)
        except RecordNotFound:
            raise UserNotFoundError("user not found")
        except SessionExpiredError:
            logger.info("session_idle_expired", user_id=user_id, device_id=device_id)
            raise
        return SessionContext(user=user, user_id=user.id, device_id=device_id, payload=payload)
