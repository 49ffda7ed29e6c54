from __future__ import annotations

import asyncio
import threading
from datetime import datetime
from typing import Callable, Optional
from urllib.parse import urlparse, urlunparse

from linkauth.config import Settings, get_settings, reset_settings_cache
from linkauth.logging import get_logger
from linkauth.service.analytics import AnalyticsSink, LogAnalyticsSink, MemoryAnalyticsSink
from linkauth.service.auth import AuthService
from linkauth.service.devices import DeviceRegistry
from linkauth.service.lockout import LockoutPolicy
from linkauth.service.otp import OTPChallengeEngine, OTPDelivery, log_delivery
from linkauth.service.qr import QRHandshake
from linkauth.service.security_config import SecurityConfigProvider
from linkauth.service.session import SessionGate
from linkauth.service.tokens import TokenService
from linkauth.storage.memory import MemoryCache, MemoryStore
from linkauth.storage.models import utcnow
from linkauth.storage.postgres import PostgresStore
from linkauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
        delivery: OTPDelivery = log_delivery,
        analytics: Optional[AnalyticsSink] = None,
    ):
        self.settings = settings or get_settings()
        self.clock = clock
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(
                    fs_root=None if self.settings.test_mode else self.settings.shared_fs_root
                )
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = self._init_cache()

        self.analytics = analytics or (
            MemoryAnalyticsSink() if self.settings.test_mode else LogAnalyticsSink()
        )
        self.security_config = SecurityConfigProvider(
            self.store,
            cache_seconds=self.settings.security_config_cache_seconds,
            clock=clock,
        )
        self.lockout = LockoutPolicy(self.store, self.security_config, clock=clock)
        self.devices = DeviceRegistry(self.store, self.security_config, clock=clock)
        self.tokens = TokenService(
            self.settings, self.security_config, self.store, clock=clock
        )
        self.otp = OTPChallengeEngine(
            self.cache,
            self.security_config,
            self.settings,
            users=self.store,
            lockout=self.lockout,
            delivery=delivery,
            clock=clock,
        )
        self.qr = QRHandshake(
            self.cache,
            self.security_config,
            self.tokens,
            self.devices,
            analytics=self.analytics,
            clock=clock,
        )
        self.sessions = SessionGate(
            self.tokens, self.store, self.security_config, clock=clock
        )
        self.auth = AuthService(
            self.store,
            self.cache,
            self.security_config,
            otp=self.otp,
            lockout=self.lockout,
            devices=self.devices,
            tokens=self.tokens,
            qr=self.qr,
            sessions=self.sessions,
            analytics=self.analytics,
            clock=clock,
        )
        logger.info(
            "runtime_initialized",
            redis_enabled=isinstance(self.cache, RedisCache),
            analytics=type(self.analytics).__name__,
        )

    def _init_cache(self):
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for OTP challenges, QR sessions and rate limits; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; OTP challenges, QR sessions "
                "and rate limits are process-local only."
            ),
            mode=fallback_mode,
        )
        return MemoryCache()

    async def close(self) -> None:
        await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the fast path skips the lock once a runtime exists.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None and isinstance(runtime.cache, RedisCache):
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(runtime.cache.close())
            else:
                logger.warning("runtime_reset_inside_event_loop", cache="redis")
        runtime = Runtime(settings)
        return runtime
