from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from linkauth.logging import get_logger
from linkauth.service.errors import AccountLockedError, retry_detail
from linkauth.service.security_config import SecurityConfigProvider
from linkauth.storage.models import User, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class LockoutStatus:
    locked: bool
    retry_after: Optional[timedelta] = None
    # True when the lockout window has elapsed and the counters should be cleared
    expired: bool = False


def evaluate_lockout(
    login_attempts: int,
    last_failed_login: Optional[datetime],
    *,
    max_attempts: int,
    lockout_duration: timedelta,
    now: datetime,
) -> LockoutStatus:
    if login_attempts < max_attempts:
        return LockoutStatus(locked=False)
    if last_failed_login is None:
        return LockoutStatus(locked=False, expired=True)
    unlock_at = last_failed_login + lockout_duration
    if now < unlock_at:
        return LockoutStatus(locked=True, retry_after=unlock_at - now)
    return LockoutStatus(locked=False, expired=True)


class LockoutPolicy:
    """Failed-login counting on the user record with a timed lockout.

    All mutations run through the store's per-user update so concurrent
    failures from two devices are never lost.
    """

    def __init__(
        self,
        users,
        config: SecurityConfigProvider,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.users = users
        self.config = config
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    def _evaluate(self, user: User, now: datetime) -> LockoutStatus:
        settings = self.config.get().security
        return evaluate_lockout(
            user.login_attempts,
            user.last_failed_login,
            max_attempts=settings.max_login_attempts,
            lockout_duration=timedelta(minutes=settings.lockout_duration_minutes),
            now=now,
        )

    def check_locked(self, user_id: str) -> LockoutStatus:
        now = self._now()

        def _check(user: User) -> LockoutStatus:
            status = self._evaluate(user, now)
            if status.expired:
                user.login_attempts = 0
                user.last_failed_login = None
            return status

        status = self.users.update_user(user_id, _check)
        if status.expired:
            logger.info("lockout_window_elapsed", user_id=user_id)
        return status

    def ensure_not_locked(self, user_id: str) -> None:
        status = self.check_locked(user_id)
        if status.locked:
            raise AccountLockedError(
                "account temporarily locked after repeated failed attempts",
                detail=retry_detail(status.retry_after.total_seconds()),
            )

    def record_failure(self, user_id: str) -> LockoutStatus:
        now = self._now()

        def _fail(user: User) -> LockoutStatus:
            if self._evaluate(user, now).expired:
                user.login_attempts = 0
            user.login_attempts += 1
            user.last_failed_login = now
            return self._evaluate(user, now)

        status = self.users.update_user(user_id, _fail)
        if status.locked:
            logger.warning(
                "account_locked",
                user_id=user_id,
                retry_after_seconds=int(status.retry_after.total_seconds()),
            )
        return status

    def record_success(self, user_id: str) -> None:
        def _reset(user: User) -> None:
            user.login_attempts = 0
            user.last_failed_login = None

        self.users.update_user(user_id, _reset)
