from __future__ import annotations

import re
import unicodedata
from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from linkauth.storage.models import DeviceInfo

_PHONE_CHARS = re.compile(r"^[0-9+\-\s().]+$")
_COUNTRY_CODE = re.compile(r"^\+?[1-9]\d{0,3}$")
_DEVICE_ID = re.compile(r"^[A-Za-z0-9._:-]+$")

# Zero-width and bidi override characters are dropped from display names so
# two visually identical names cannot differ invisibly.
_ZERO_WIDTH = "​‌‍﻿"
_BIDI_OVERRIDES = frozenset(
    [chr(c) for c in range(0x202A, 0x202F)] + [chr(c) for c in range(0x2066, 0x206A)]
)


def _normalize_display_name(value: str) -> str:
    cleaned = "".join(
        c for c in value if c not in _ZERO_WIDTH and c not in _BIDI_OVERRIDES
    )
    return unicodedata.normalize("NFKC", cleaned).strip()


_VALID_ERROR_CODES = frozenset({
    "VALIDATION_ERROR",
    "UNAUTHORIZED",
    "INVALID_TOKEN",
    "TOKEN_EXPIRED",
    "SESSION_EXPIRED",
    "INVALID_CODE",
    "EXPIRED",
    "TOO_MANY_ATTEMPTS",
    "RATE_LIMIT_EXCEEDED",
    "ACCOUNT_LOCKED",
    "FORBIDDEN",
    "USER_BLOCKED",
    "USER_SUSPENDED",
    "USER_INACTIVE",
    "VERIFICATION_REQUIRED",
    "NOT_FOUND",
    "USER_NOT_FOUND",
    "ALREADY_USED",
    "USER_ALREADY_EXISTS",
    "CONFLICT",
    "INTERNAL_ERROR",
})


class ErrorBody(BaseModel):
    """Error envelope body; ``code`` is one of the stable service error codes."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class PhoneRequest(BaseModel):
    phone_number: str = Field(..., min_length=7, max_length=32)
    country_code: Optional[str] = Field(default=None, max_length=5)

    @field_validator("phone_number")
    @classmethod
    def _validate_phone_chars(cls, value: str) -> str:
        if not _PHONE_CHARS.match(value):
            raise ValueError("phone_number may only contain digits, '+', spaces, dashes, dots and parentheses")
        return value

    @field_validator("country_code")
    @classmethod
    def _validate_country_code(cls, value: Optional[str]) -> Optional[str]:
        if value is None or value == "":
            return None
        if not _COUNTRY_CODE.match(value):
            raise ValueError("country_code must be 1-4 digits with an optional '+'")
        return value


class SendOTPRequest(PhoneRequest):
    pass


class VerifyOTPRequest(PhoneRequest):
    code: str = Field(..., min_length=4, max_length=10)


class DeviceRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    device_id: str = Field(..., min_length=1, max_length=128)
    device_name: str = Field(default="Unknown device", max_length=128)
    platform: str = Field(default="unknown", max_length=32)
    app_version: Optional[str] = Field(default=None, max_length=32)
    push_token: Optional[str] = Field(default=None, max_length=4096)

    @field_validator("device_id")
    @classmethod
    def _validate_device_id(cls, value: str) -> str:
        if not _DEVICE_ID.match(value):
            raise ValueError("device_id must contain only letters, digits, '.', '_', ':' and '-'")
        return value

    @field_validator("platform")
    @classmethod
    def _normalize_platform(cls, value: str) -> str:
        return (value or "unknown").lower()

    def to_info(self, user_agent: Optional[str] = None) -> DeviceInfo:
        return DeviceInfo(
            device_id=self.device_id,
            device_name=self.device_name,
            platform=self.platform,
            app_version=self.app_version,
            push_token=self.push_token,
            user_agent=user_agent,
        )


class LoginRequest(VerifyOTPRequest):
    device: DeviceRequest


class RegisterRequest(LoginRequest):
    display_name: Optional[str] = Field(default=None, max_length=64)

    @field_validator("display_name")
    @classmethod
    def _clean_display_name(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        normalized = _normalize_display_name(value)
        return normalized or None


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=4096)


class LogoutRequest(BaseModel):
    device_id: Optional[str] = Field(default=None, max_length=128)
    all_devices: bool = False


class QRCreateRequest(BaseModel):
    device: Optional[DeviceRequest] = None


class QRConfirmRequest(BaseModel):
    qr_token: Optional[str] = Field(default=None, max_length=4096)
    session_id: Optional[str] = Field(default=None, max_length=64)
    device: Optional[DeviceRequest] = None

    @model_validator(mode="after")
    def _require_session_reference(self):
        if not self.qr_token and not self.session_id:
            raise ValueError("qr_token or session_id is required")
        return self


class SecurityConfigPatch(BaseModel):
    """Partial security configuration; sections are deep-merged over the current one."""

    model_config = ConfigDict(extra="forbid")

    otp: Optional[Dict[str, Any]] = None
    qr: Optional[Dict[str, Any]] = None
    security: Optional[Dict[str, Any]] = None
    rate_limiting: Optional[Dict[str, Any]] = None
    tokens: Optional[Dict[str, Any]] = None

    def to_patch(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "bearer"
    expires_at: str
    refresh_expires_at: Optional[str] = None
    device_id: Optional[str] = None


class AuthResponse(BaseModel):
    user: Dict[str, Any]
    tokens: TokenPairResponse


class QRSessionResponse(BaseModel):
    session_id: str
    qr_token: str
    qr_payload: str
    poll_token: str
    expires_at: str
