from __future__ import annotations

import math
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer failures carrying a stable error code.

    The codes are transport-agnostic; ``status_code`` is the HTTP mapping used
    by the API layer. Subclasses fix both so callers only choose the class.
    """

    status_code: int = 400
    error_code: str = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "VALIDATION_ERROR"


class AuthenticationError(ServiceError):
    """Credential missing or malformed (401)."""
    status_code = 401
    error_code = "UNAUTHORIZED"


class InvalidTokenError(AuthenticationError):
    error_code = "INVALID_TOKEN"


class TokenExpiredError(AuthenticationError):
    error_code = "TOKEN_EXPIRED"


class SessionExpiredError(AuthenticationError):
    """Idle window elapsed since the user's last recorded activity (401)."""
    error_code = "SESSION_EXPIRED"


class InvalidCodeError(ServiceError):
    """OTP did not match; ``detail`` carries ``attempts_remaining``."""
    status_code = 400
    error_code = "INVALID_CODE"


class ChallengeExpiredError(ServiceError):
    """OTP challenge or QR session is past its TTL (410)."""
    status_code = 410
    error_code = "EXPIRED"


class RateLimitedError(ServiceError):
    """Rate limit or resend cooldown in effect (429)."""
    status_code = 429
    error_code = "RATE_LIMIT_EXCEEDED"


class TooManyAttemptsError(RateLimitedError):
    """Challenge exhausted its guesses; terminal until a new challenge is issued."""
    error_code = "TOO_MANY_ATTEMPTS"


class AccountLockedError(ServiceError):
    status_code = 423
    error_code = "ACCOUNT_LOCKED"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "FORBIDDEN"


class UserBlockedError(ForbiddenError):
    error_code = "USER_BLOCKED"


class UserSuspendedError(ForbiddenError):
    error_code = "USER_SUSPENDED"


class UserInactiveError(ForbiddenError):
    error_code = "USER_INACTIVE"


class VerificationRequiredError(ForbiddenError):
    error_code = "VERIFICATION_REQUIRED"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "NOT_FOUND"


class UserNotFoundError(NotFoundError):
    error_code = "USER_NOT_FOUND"


class AlreadyUsedError(ServiceError):
    """Single-use resource was already consumed (409)."""
    status_code = 409
    error_code = "ALREADY_USED"


class ConflictError(ServiceError):
    """Resource conflict, e.g., registering a phone that already has an account (409)."""
    status_code = 409
    error_code = "USER_ALREADY_EXISTS"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "INTERNAL_ERROR"


def retry_detail(retry_after_seconds: float, **extra) -> dict:
    """Build the ``detail`` payload for rate and lockout errors."""
    detail = {"retry_after_seconds": max(0, math.ceil(retry_after_seconds))}
    detail.update(extra)
    return detail


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidTokenError",
    "TokenExpiredError",
    "SessionExpiredError",
    "InvalidCodeError",
    "ChallengeExpiredError",
    "RateLimitedError",
    "TooManyAttemptsError",
    "AccountLockedError",
    "ForbiddenError",
    "UserBlockedError",
    "UserSuspendedError",
    "UserInactiveError",
    "VerificationRequiredError",
    "NotFoundError",
    "UserNotFoundError",
    "AlreadyUsedError",
    "ConflictError",
    "ServerError",
    "retry_detail",
]
