from __future__ import annotations

from datetime import datetime
from typing import Callable, List, Optional

from linkauth.logging import get_logger
from linkauth.service.security_config import SecurityConfigProvider
from linkauth.storage.models import DeviceInfo, DeviceRecord, User, utcnow

logger = get_logger(__name__)


def apply_device(
    devices: List[DeviceRecord], info: DeviceInfo, *, max_devices: int, now: datetime
) -> tuple[DeviceRecord, List[DeviceRecord]]:
    """Upsert ``info`` into ``devices`` in place.

    Returns the touched record and the records evicted to stay within
    ``max_devices``. Eviction order is a stable sort on ``last_active`` so
    ties keep their list order.
    """
    existing = next((d for d in devices if d.device_id == info.device_id), None)
    if existing is not None:
        existing.last_active = now
        existing.is_active = True
        if info.push_token:
            existing.push_token = info.push_token
        if info.user_agent:
            existing.user_agent = info.user_agent
        if info.app_version:
            existing.app_version = info.app_version
        return existing, []

    evicted: List[DeviceRecord] = []
    if len(devices) >= max_devices:
        ordered = sorted(devices, key=lambda d: d.last_active)
        while len(ordered) >= max_devices:
            evicted.append(ordered.pop(0))
        evicted_ids = {d.device_id for d in evicted}
        devices[:] = [d for d in devices if d.device_id not in evicted_ids]

    record = DeviceRecord(
        device_id=info.device_id,
        device_name=info.device_name,
        platform=info.platform,
        app_version=info.app_version,
        push_token=info.push_token,
        user_agent=info.user_agent,
        last_active=now,
        is_active=True,
    )
    devices.append(record)
    return record, evicted


class DeviceRegistry:
    """Bounded per-user device list; the only mutation path for ``User.devices``."""

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

    def upsert_device(self, user_id: str, info: DeviceInfo) -> DeviceRecord:
        max_devices = self.config.get().security.allowed_devices_per_user
        now = self._now()

        def _apply(user: User):
            return apply_device(user.devices, info, max_devices=max_devices, now=now)

        record, evicted = self.users.update_user(user_id, _apply)
        for old in evicted:
            logger.info(
                "device_evicted",
                user_id=user_id,
                device_id=old.device_id,
                last_active=old.last_active.isoformat(),
            )
        return record

    def deactivate_device(self, user_id: str, device_id: str) -> bool:
        """Mark one device inactive and drop its push token.

        Returns whether any device is still active afterwards.
        """
        now = self._now()

        def _apply(user: User) -> bool:
            device: Optional[DeviceRecord] = user.find_device(device_id)
            if device is not None:
                device.is_active = False
                device.push_token = None
            still_active = any(d.is_active for d in user.devices)
            if not still_active:
                user.is_online = False
                user.last_seen = now
            return still_active

        return self.users.update_user(user_id, _apply)

    def deactivate_all(self, user_id: str) -> int:
        now = self._now()

        def _apply(user: User) -> int:
            count = 0
            for device in user.devices:
                if device.is_active:
                    count += 1
                device.is_active = False
                device.push_token = None
            user.is_online = False
            user.last_seen = now
            return count

        return self.users.update_user(user_id, _apply)
