from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Callable, Dict

from linkauth.logging import get_logger
from linkauth.storage.models import utcnow

logger = get_logger(__name__)


async def sweep_once(cache, *, clock: Callable[[], datetime] = utcnow) -> Dict[str, int]:
    removed = await cache.sweep_expired(clock())
    if removed.get("otp") or removed.get("qr"):
        logger.info("expired_records_swept", otp=removed.get("otp", 0), qr=removed.get("qr", 0))
    return removed


async def run_sweeper(
    cache, interval_seconds: int, *, clock: Callable[[], datetime] = utcnow
) -> None:
    """Background loop removing OTP challenges and QR sessions past expiry.

    Foreground reads re-check expiry on their own, so a missed or failed
    sweep only delays cleanup.
    """
    interval = max(interval_seconds, 1)
    try:
        while True:
            try:
                await sweep_once(cache, clock=clock)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - best-effort cleanup
                logger.warning("expired_sweep_failed", error=str(exc))
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info("expired_sweep_task_cancelled")
