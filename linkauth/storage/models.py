from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ts(value: Optional[datetime]) -> Optional[float]:
    return value.timestamp() if value is not None else None


def _from_ts(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


def _from_iso(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class UserStatus(str, Enum):
    ACTIVE = "active"
    BLOCKED = "blocked"
    SUSPENDED = "suspended"
    DELETED = "deleted"


@dataclass
class DeviceInfo:
    """Client-supplied description of a device, as sent on login or QR confirm."""

    device_id: str
    device_name: str = "Unknown device"
    platform: str = "unknown"
    app_version: Optional[str] = None
    push_token: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class DeviceRecord:
    device_id: str
    device_name: str = "Unknown device"
    platform: str = "unknown"
    app_version: Optional[str] = None
    push_token: Optional[str] = None
    user_agent: Optional[str] = None
    last_active: datetime = field(default_factory=utcnow)
    is_active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "device_id": self.device_id,
            "device_name": self.device_name,
            "platform": self.platform,
            "app_version": self.app_version,
            "push_token": self.push_token,
            "user_agent": self.user_agent,
            "last_active": self.last_active.isoformat(),
            "is_active": self.is_active,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeviceRecord":
        return cls(
            device_id=str(data["device_id"]),
            device_name=data.get("device_name") or "Unknown device",
            platform=data.get("platform") or "unknown",
            app_version=data.get("app_version"),
            push_token=data.get("push_token"),
            user_agent=data.get("user_agent"),
            last_active=_from_iso(data.get("last_active")) or utcnow(),
            is_active=bool(data.get("is_active", True)),
        )


@dataclass
class User:
    id: str
    phone_number: str
    country_code: str = ""
    display_name: Optional[str] = None
    status: str = UserStatus.ACTIVE.value
    is_verified: bool = False
    is_online: bool = False
    last_seen: Optional[datetime] = None
    login_attempts: int = 0
    last_failed_login: Optional[datetime] = None
    devices: List[DeviceRecord] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    meta: Dict | None = None

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE.value

    def find_device(self, device_id: str) -> Optional[DeviceRecord]:
        return next((d for d in self.devices if d.device_id == device_id), None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "phone_number": self.phone_number,
            "country_code": self.country_code,
            "display_name": self.display_name,
            "status": self.status,
            "is_verified": self.is_verified,
            "is_online": self.is_online,
            "last_seen": self.last_seen.isoformat() if self.last_seen else None,
            "login_attempts": self.login_attempts,
            "last_failed_login": (
                self.last_failed_login.isoformat() if self.last_failed_login else None
            ),
            "devices": [d.to_dict() for d in self.devices],
            "created_at": self.created_at.isoformat(),
            "meta": self.meta,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "User":
        return cls(
            id=str(data["id"]),
            phone_number=data["phone_number"],
            country_code=data.get("country_code") or "",
            display_name=data.get("display_name"),
            status=data.get("status") or UserStatus.ACTIVE.value,
            is_verified=bool(data.get("is_verified", False)),
            is_online=bool(data.get("is_online", False)),
            last_seen=_from_iso(data.get("last_seen")),
            login_attempts=int(data.get("login_attempts") or 0),
            last_failed_login=_from_iso(data.get("last_failed_login")),
            devices=[DeviceRecord.from_dict(d) for d in data.get("devices") or []],
            created_at=_from_iso(data.get("created_at")) or utcnow(),
            meta=data.get("meta"),
        )


@dataclass
class OTPChallenge:
    """Hashed one-time code bound to a normalised phone number.

    An exhausted challenge keeps no hash; it only remembers that the guesses
    ran out so the next validation reports that instead of "not found".
    """

    phone_key: str
    code_hash: Optional[str]
    issued_at: datetime
    expires_at: datetime
    attempts: int = 0
    resend_count: int = 0
    resend_cooldown_until: Optional[datetime] = None
    exhausted: bool = False
    challenge_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        # Epoch seconds so Lua scripts can compare without parsing
        return {
            "phone_key": self.phone_key,
            "challenge_id": self.challenge_id,
            "code_hash": self.code_hash,
            "issued_at": _ts(self.issued_at),
            "expires_at": _ts(self.expires_at),
            "attempts": self.attempts,
            "resend_count": self.resend_count,
            "resend_cooldown_until": _ts(self.resend_cooldown_until),
            "exhausted": self.exhausted,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OTPChallenge":
        return cls(
            phone_key=data["phone_key"],
            challenge_id=data["challenge_id"],
            code_hash=data.get("code_hash") or None,
            issued_at=_from_ts(data["issued_at"]),
            expires_at=_from_ts(data["expires_at"]),
            attempts=int(data.get("attempts") or 0),
            resend_count=int(data.get("resend_count") or 0),
            resend_cooldown_until=_from_ts(data.get("resend_cooldown_until")),
            exhausted=bool(data.get("exhausted", False)),
        )


@dataclass
class QRSession:
    session_id: str
    token: str
    created_at: datetime
    expires_at: datetime
    is_used: bool = False
    user_id: Optional[str] = None
    device_id: Optional[str] = None
    used_at: Optional[datetime] = None
    fingerprint: Dict[str, Any] = field(default_factory=dict)
    # sha256 of the poll token handed to the waiting device
    poll_key_hash: Optional[str] = None
    # Token pair minted for the waiting device, handed out once by poll
    pending_tokens: Optional[Dict[str, Any]] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "token": self.token,
            "created_at": _ts(self.created_at),
            "expires_at": _ts(self.expires_at),
            "is_used": self.is_used,
            "user_id": self.user_id,
            "device_id": self.device_id,
            "used_at": _ts(self.used_at),
            "fingerprint": self.fingerprint,
            "poll_key_hash": self.poll_key_hash,
            "pending_tokens": self.pending_tokens,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QRSession":
        return cls(
            session_id=data["session_id"],
            token=data["token"],
            created_at=_from_ts(data["created_at"]),
            expires_at=_from_ts(data["expires_at"]),
            is_used=bool(data.get("is_used", False)),
            user_id=data.get("user_id") or None,
            device_id=data.get("device_id") or None,
            used_at=_from_ts(data.get("used_at")),
            fingerprint=data.get("fingerprint") or {},
            poll_key_hash=data.get("poll_key_hash") or None,
            pending_tokens=data.get("pending_tokens") or None,
        )
