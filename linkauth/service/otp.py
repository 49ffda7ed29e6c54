from __future__ import annotations

import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from linkauth.config import Settings
from linkauth.logging import get_logger, mask_phone_number
from linkauth.service.errors import (
    AccountLockedError,
    ChallengeExpiredError,
    InvalidCodeError,
    NotFoundError,
    RateLimitedError,
    TooManyAttemptsError,
    ValidationError,
    retry_detail,
)
from linkauth.service.security_config import SecurityConfigProvider
from linkauth.storage.models import OTPChallenge, User, utcnow

logger = get_logger(__name__)

OTPDelivery = Callable[[str, str], None]

_PHONE_STRIP = re.compile(r"[\s\-().]")
_PHONE_VALID = re.compile(r"^\+?[1-9]\d{6,14}$")


def normalize_phone(phone_number: str, country_code: Optional[str] = None) -> str:
    """Canonical challenge identity for a phone number.

    Formatting characters are dropped; a separately supplied country code is
    prepended unless the number already carries it.
    """
    if not phone_number or not phone_number.strip():
        raise ValidationError("phone number is required", detail={"field": "phone_number"})
    digits = _PHONE_STRIP.sub("", phone_number.strip())
    if country_code and not digits.startswith("+"):
        cc = _PHONE_STRIP.sub("", country_code.strip()).lstrip("+")
        if not digits.startswith(cc):
            digits = f"{cc}{digits}"
    if not _PHONE_VALID.match(digits):
        raise ValidationError("invalid phone number", detail={"field": "phone_number"})
    if not digits.startswith("+"):
        digits = f"+{digits}"
    return digits


def log_delivery(phone_key: str, code: str) -> None:
    logger.info("otp_delivery_requested", phone=mask_phone_number(phone_key), length=len(code))


@dataclass
class IssuedChallenge:
    challenge_id: str
    phone_key: str
    expires_at: datetime
    resend_available_at: Optional[datetime]
    resend_count: int
    # Plaintext only in test mode
    code: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data = {
            "challenge_id": self.challenge_id,
            "expires_at": self.expires_at.isoformat(),
            "resend_available_at": (
                self.resend_available_at.isoformat() if self.resend_available_at else None
            ),
            "resend_count": self.resend_count,
        }
        if self.code is not None:
            data["code"] = self.code
        return data


@dataclass
class ValidationResult:
    success: bool
    phone_key: str
    attempts_remaining: int
    is_new_user: bool
    user: Optional[User] = None


class OTPChallengeEngine:
    """Issue, resend and validate hashed one-time codes.

    One challenge exists per phone key; storing a new one replaces the
    previous hash in the same atomic step that checks the resend cooldown.
    """

    def __init__(
        self,
        cache,
        config: SecurityConfigProvider,
        settings: Settings,
        *,
        users=None,
        lockout=None,
        delivery: OTPDelivery = log_delivery,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.cache = cache
        self.config = config
        self.settings = settings
        self.users = users
        self.lockout = lockout
        self.delivery = delivery
        self._clock = clock
        self._hasher = PasswordHasher(
            time_cost=settings.otp_hash_time_cost,
            memory_cost=settings.otp_hash_memory_cost,
            parallelism=1,
            type=Type.ID,
        )

    def _now(self) -> datetime:
        return self._clock()

    def _generate_code(self, digits: int) -> str:
        code_int = secrets.randbelow(10**digits)
        return str(code_int).zfill(digits)

    def _matches(self, code_hash: Optional[str], code: str) -> bool:
        if not code_hash:
            return False
        try:
            return self._hasher.verify(code_hash, code)
        except (InvalidHash, VerificationError):
            return False

    async def _store(
        self, phone_number: str, country_code: Optional[str], *, resend: bool
    ) -> IssuedChallenge:
        key = normalize_phone(phone_number, country_code)
        otp_cfg = self.config.get().otp
        now = self._now()
        code = self._generate_code(otp_cfg.length)
        challenge = OTPChallenge(
            phone_key=key,
            code_hash=self._hasher.hash(code),
            issued_at=now,
            expires_at=now + timedelta(minutes=otp_cfg.expiry_minutes),
            resend_cooldown_until=now + timedelta(seconds=otp_cfg.resend_cooldown_seconds),
        )
        status, stored = await self.cache.store_challenge(
            challenge, now=now, resend=resend, max_resends=otp_cfg.max_resends
        )
        if status == "cooldown":
            wait = (stored.resend_cooldown_until - now).total_seconds()
            logger.info("otp_cooldown_active", phone=mask_phone_number(key), wait_seconds=int(wait))
            raise RateLimitedError(
                "please wait before requesting another code",
                detail=retry_detail(wait),
            )
        if status == "resend_cap":
            logger.info("otp_resend_cap_reached", phone=mask_phone_number(key))
            raise RateLimitedError(
                "maximum resend attempts reached",
                detail=retry_detail(
                    (stored.expires_at - now).total_seconds(),
                    max_resends=otp_cfg.max_resends,
                ),
            )
        self.delivery(key, code)
        logger.info(
            "otp_issued",
            phone=mask_phone_number(key),
            resend=resend,
            resend_count=stored.resend_count,
        )
        return IssuedChallenge(
            challenge_id=stored.challenge_id,
            phone_key=key,
            expires_at=stored.expires_at,
            resend_available_at=stored.resend_cooldown_until,
            resend_count=stored.resend_count,
            code=code if self.settings.test_mode else None,
        )

    async def issue(
        self, phone_number: str, country_code: Optional[str] = None
    ) -> IssuedChallenge:
        return await self._store(phone_number, country_code, resend=False)

    async def resend(
        self, phone_number: str, country_code: Optional[str] = None
    ) -> IssuedChallenge:
        return await self._store(phone_number, country_code, resend=True)

    def _existing_user(self, key: str) -> Optional[User]:
        if self.users is None:
            return None
        return self.users.get_user_by_phone(key)

    async def validate(
        self,
        phone_number: str,
        code: str,
        *,
        delete_on_success: bool = True,
        country_code: Optional[str] = None,
    ) -> ValidationResult:
        key = normalize_phone(phone_number, country_code)
        if not code or not code.strip().isdigit():
            raise ValidationError("code must be numeric", detail={"field": "code"})
        code = code.strip()
        max_attempts = self.config.get().otp.max_attempts
        now = self._now()
        user = self._existing_user(key)

        if user is not None and self.lockout is not None:
            lock = self.lockout.check_locked(user.id)
            if lock.locked:
                raise AccountLockedError(
                    "account temporarily locked after repeated failed attempts",
                    detail=retry_detail(lock.retry_after.total_seconds()),
                )

        challenge = await self.cache.get_challenge(key)
        if challenge is None:
            raise NotFoundError("no active verification code for this number")
        if challenge.is_expired(now):
            await self.cache.consume_challenge(
                key, challenge.challenge_id, allow_exhausted=True
            )
            logger.info("otp_expired", phone=mask_phone_number(key))
            raise ChallengeExpiredError("verification code has expired")
        if challenge.exhausted:
            raise TooManyAttemptsError(
                "too many failed attempts; request a new code",
                detail={"attempts_remaining": 0},
            )

        if not self._matches(challenge.code_hash, code):
            status, updated = await self.cache.record_failed_attempt(
                key, challenge.challenge_id, max_attempts
            )
            if status == "missing":
                raise NotFoundError("no active verification code for this number")
            if status == "exhausted":
                raise TooManyAttemptsError(
                    "too many failed attempts; request a new code",
                    detail={"attempts_remaining": 0},
                )
            if user is not None and self.lockout is not None:
                self.lockout.record_failure(user.id)
            remaining = max(0, max_attempts - updated.attempts)
            logger.info(
                "otp_invalid_code",
                phone=mask_phone_number(key),
                attempts_remaining=remaining,
                superseded=status == "superseded",
            )
            raise InvalidCodeError(
                "invalid verification code",
                detail={"attempts_remaining": remaining},
            )

        if delete_on_success:
            if not await self.cache.consume_challenge(key, challenge.challenge_id):
                # Another caller consumed or replaced it between read and delete
                raise NotFoundError("no active verification code for this number")
        else:
            logger.info("otp_retained_for_followup", phone=mask_phone_number(key))
        logger.info("otp_verified", phone=mask_phone_number(key), is_new_user=user is None)
        return ValidationResult(
            success=True,
            phone_key=key,
            attempts_remaining=max(0, max_attempts - challenge.attempts),
            is_new_user=user is None,
            user=user,
        )

    async def cancel(self, phone_number: str, country_code: Optional[str] = None) -> bool:
        key = normalize_phone(phone_number, country_code)
        removed = await self.cache.delete_challenge(key)
        if removed:
            logger.info("otp_cancelled", phone=mask_phone_number(key))
        return removed

    async def status(
        self, phone_number: str, country_code: Optional[str] = None
    ) -> dict[str, Any]:
        key = normalize_phone(phone_number, country_code)
        challenge = await self.cache.get_challenge(key)
        now = self._now()
        if challenge is None or challenge.is_expired(now):
            return {
                "has_active_otp": False,
                "expires_at": None,
                "attempts_remaining": 0,
                "resend_available_at": None,
            }
        max_attempts = self.config.get().otp.max_attempts
        cooldown = challenge.resend_cooldown_until
        return {
            "has_active_otp": not challenge.exhausted,
            "expires_at": challenge.expires_at.isoformat(),
            "attempts_remaining": (
                0 if challenge.exhausted else max(0, max_attempts - challenge.attempts)
            ),
            "resend_available_at": cooldown.isoformat() if cooldown and cooldown > now else None,
        }
