from __future__ import annotations

import copy
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError

from linkauth.logging import get_logger
from linkauth.service.errors import ValidationError
from linkauth.storage.models import utcnow

logger = get_logger(__name__)


class OTPSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    length: int = Field(6, ge=4, le=10)
    expiry_minutes: int = Field(5, ge=1, le=60)
    max_attempts: int = Field(3, ge=1, le=20)
    resend_cooldown_seconds: int = Field(60, ge=0, le=3600)
    max_resends: int = Field(3, ge=0, le=20)


class QRSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    session_expiry_minutes: int = Field(5, ge=1, le=60)


class AccountSecuritySettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_login_attempts: int = Field(5, ge=1)
    lockout_duration_minutes: int = Field(15, ge=1)
    session_timeout_minutes: int = Field(60, ge=1)
    require_two_factor: bool = False
    allowed_devices_per_user: int = Field(5, ge=1, le=50)


class RateWindow(BaseModel):
    model_config = ConfigDict(extra="forbid")

    window_minutes: int = Field(..., ge=1)
    max_requests: int = Field(..., ge=1)

    @property
    def window_seconds(self) -> int:
        return self.window_minutes * 60


class RateLimitSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    login: RateWindow = Field(
        default_factory=lambda: RateWindow(window_minutes=15, max_requests=5)
    )
    otp: RateWindow = Field(
        default_factory=lambda: RateWindow(window_minutes=5, max_requests=3)
    )
    qr_generate: RateWindow = Field(
        default_factory=lambda: RateWindow(window_minutes=10, max_requests=10)
    )


class TokenSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    access_token_minutes: int = Field(60, ge=1)
    refresh_token_minutes: int = Field(30 * 24 * 60, ge=1)


class SecurityConfig(BaseModel):
    """Versioned, administrator-tunable security parameters."""

    model_config = ConfigDict(extra="forbid")

    otp: OTPSettings = Field(default_factory=OTPSettings)
    qr: QRSettings = Field(default_factory=QRSettings)
    security: AccountSecuritySettings = Field(default_factory=AccountSecuritySettings)
    rate_limiting: RateLimitSettings = Field(default_factory=RateLimitSettings)
    tokens: TokenSettings = Field(default_factory=TokenSettings)
    version: int = Field(1, ge=1)


class SecuritySettingsStore(Protocol):
    def get_security_settings(self) -> Optional[dict]: ...

    def save_security_settings(self, config: dict) -> None: ...


def _deep_merge(base: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class SecurityConfigProvider:
    """Serve the current ``SecurityConfig`` snapshot, reloading on demand.

    Consumers call ``get()`` at the point of use instead of holding on to a
    snapshot, so an update or reload is picked up by the next operation. A
    store that cannot be read never takes the service down: the last good
    snapshot (or the defaults) keeps being served and the failure is logged.
    """

    def __init__(
        self,
        store: SecuritySettingsStore,
        *,
        cache_seconds: int = 300,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.cache_seconds = cache_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._snapshot: Optional[SecurityConfig] = None
        self._loaded_at: Optional[datetime] = None

    def _stale(self, now: datetime) -> bool:
        if self._snapshot is None or self._loaded_at is None:
            return True
        return now - self._loaded_at >= timedelta(seconds=self.cache_seconds)

    def _load(self) -> SecurityConfig:
        try:
            raw = self.store.get_security_settings()
        except Exception as exc:
            logger.error("security_config_load_failed", error=str(exc))
            return self._snapshot or SecurityConfig()
        if not raw:
            return SecurityConfig()
        try:
            return SecurityConfig.model_validate(raw)
        except PydanticValidationError as exc:
            logger.error(
                "security_config_invalid", error_count=exc.error_count()
            )
            return self._snapshot or SecurityConfig()

    def get(self) -> SecurityConfig:
        now = self._clock()
        with self._lock:
            if self._stale(now):
                self._snapshot = self._load()
                self._loaded_at = now
            return self._snapshot

    def reload(self) -> SecurityConfig:
        with self._lock:
            # Keep the snapshot as the fallback if the re-read fails
            self._loaded_at = None
        config = self.get()
        logger.info("security_config_reloaded", version=config.version)
        return config

    def update(self, patch: Dict[str, Any]) -> SecurityConfig:
        if "version" in patch:
            raise ValidationError(
                "version is managed by the server", detail={"field": "version"}
            )
        current = self.get()
        merged = _deep_merge(current.model_dump(), patch)
        merged["version"] = current.version + 1
        try:
            updated = SecurityConfig.model_validate(merged)
        except PydanticValidationError as exc:
            raise ValidationError(
                "invalid security configuration",
                detail={
                    "errors": [
                        {"loc": ".".join(str(p) for p in err["loc"]), "msg": err["msg"]}
                        for err in exc.errors()
                    ]
                },
            ) from exc
        self.store.save_security_settings(updated.model_dump())
        logger.info(
            "security_config_updated",
            version=updated.version,
            sections=sorted(patch.keys()),
        )
        return self.reload()

    def public_view(self) -> Dict[str, Any]:
        config = self.get()
        return {
            "otp": {
                "length": config.otp.length,
                "expiry_minutes": config.otp.expiry_minutes,
                "resend_cooldown_seconds": config.otp.resend_cooldown_seconds,
            },
            "qr": {"session_expiry_minutes": config.qr.session_expiry_minutes},
            "security": {
                "allowed_devices_per_user": config.security.allowed_devices_per_user,
                "require_two_factor": config.security.require_two_factor,
            },
            "rate_limiting": config.rate_limiting.model_dump(),
            "version": config.version,
        }
