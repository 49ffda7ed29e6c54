from __future__ import annotations

import copy
import json
import threading
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from linkauth.logging import get_logger
from linkauth.storage.errors import ConstraintViolation, RecordNotFound
from linkauth.storage.models import OTPChallenge, QRSession, User, UserStatus

R = TypeVar("R")


class MemoryStore:
    """In-memory user and settings store for tests and single-process dev.

    Every read hands out a copy and every write goes through the data lock, so
    ``update_user`` gives the same per-document serialisation as the Postgres
    row lock.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self._phone_index: Dict[str, str] = {}
        self.security_settings: Optional[dict] = None
        # RLock so a mutator may call back into read helpers
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [u.to_dict() for u in self.users.values()],
            "security_settings": self.security_settings,
        }
        path = self._state_path()
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(state))
        tmp.replace(path)

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.warning("memory_store_state_corrupt", error=str(exc))
            return False
        self.users = {u["id"]: User.from_dict(u) for u in data.get("users", [])}
        self._phone_index = {u.phone_number: u.id for u in self.users.values()}
        self.security_settings = data.get("security_settings")
        return True

    def create_user(
        self,
        phone_number: str,
        country_code: str = "",
        *,
        display_name: Optional[str] = None,
        status: str = UserStatus.ACTIVE.value,
        is_verified: bool = False,
        meta: Optional[Dict] = None,
    ) -> User:
        with self._data_lock:
            if phone_number in self._phone_index:
                raise ConstraintViolation(
                    "phone number already registered", {"field": "phone_number"}
                )
            user = User(
                id=str(uuid.uuid4()),
                phone_number=phone_number,
                country_code=country_code,
                display_name=display_name,
                status=status,
                is_verified=is_verified,
                meta=meta.copy() if meta else {},
            )
            self.users[user.id] = user
            self._phone_index[phone_number] = user.id
            self._persist_state()
            return copy.deepcopy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.deepcopy(user) if user else None

    def get_user_by_phone(self, phone_number: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._phone_index.get(phone_number)
            return self.get_user(user_id) if user_id else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            ordered = sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)
            return [copy.deepcopy(u) for u in ordered[:limit]]

    def update_user(self, user_id: str, mutator: Callable[[User], R]) -> R:
        """Apply ``mutator`` to a working copy and commit it only if it returns.

        A mutator that raises leaves the stored record untouched.
        """
        with self._data_lock:
            current = self.users.get(user_id)
            if current is None:
                raise RecordNotFound("user", user_id)
            working = copy.deepcopy(current)
            result = mutator(working)
            working.id = current.id
            working.phone_number = current.phone_number
            self.users[user_id] = copy.deepcopy(working)
            self._persist_state()
            return result

    def set_user_status(self, user_id: str, status: str) -> Optional[User]:
        UserStatus(status)

        def _apply(user: User) -> User:
            user.status = status
            return copy.deepcopy(user)

        try:
            return self.update_user(user_id, _apply)
        except RecordNotFound:
            return None

    def get_security_settings(self) -> Optional[dict]:
        with self._data_lock:
            return copy.deepcopy(self.security_settings)

    def save_security_settings(self, config: dict) -> None:
        with self._data_lock:
            self.security_settings = copy.deepcopy(config)
            self._persist_state()


def _epoch(value: datetime | float | None) -> float:
    if value is None:
        return time.time()
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp()
    return float(value)


class MemoryCache:
    """Process-local stand-in for ``RedisCache``.

    Implements the same compare-and-set contracts under a single lock. Only
    valid for one process; the runtime uses it under TEST_MODE or
    ALLOW_REDIS_FALLBACK_DEV.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._challenges: Dict[str, dict] = {}
        self._qr_sessions: Dict[str, dict] = {}
        # key -> (tokens, last refill ts, ts at which the bucket is full again)
        self._rate_limits: Dict[str, Tuple[float, float, float]] = {}

    def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        return None

    # ------------------------------------------------------------------
    # OTP challenges
    # ------------------------------------------------------------------

    async def store_challenge(
        self,
        challenge: OTPChallenge,
        *,
        now: datetime,
        resend: bool,
        max_resends: int,
    ) -> Tuple[str, Optional[OTPChallenge]]:
        now_ts = _epoch(now)
        incoming = challenge.to_dict()
        with self._lock:
            existing = self._challenges.get(challenge.phone_key)
            if existing and existing["expires_at"] > now_ts:
                cooldown = existing.get("resend_cooldown_until")
                if cooldown is not None and cooldown > now_ts:
                    return "cooldown", OTPChallenge.from_dict(existing)
                count = int(existing.get("resend_count") or 0)
                if resend:
                    if count >= max_resends:
                        return "resend_cap", OTPChallenge.from_dict(existing)
                    count += 1
                incoming["resend_count"] = count
            self._challenges[challenge.phone_key] = incoming
            return "stored", OTPChallenge.from_dict(incoming)

    async def get_challenge(self, phone_key: str) -> Optional[OTPChallenge]:
        with self._lock:
            raw = self._challenges.get(phone_key)
            return OTPChallenge.from_dict(raw) if raw else None

    async def record_failed_attempt(
        self, phone_key: str, challenge_id: str, max_attempts: int
    ) -> Tuple[str, Optional[OTPChallenge]]:
        with self._lock:
            raw = self._challenges.get(phone_key)
            if raw is None:
                return "missing", None
            if raw["challenge_id"] != challenge_id:
                return "superseded", OTPChallenge.from_dict(raw)
            if raw.get("exhausted"):
                return "exhausted", OTPChallenge.from_dict(raw)
            updated = dict(raw)
            updated["attempts"] = int(raw.get("attempts") or 0) + 1
            if updated["attempts"] >= max_attempts:
                updated["exhausted"] = True
                updated["code_hash"] = None
            self._challenges[phone_key] = updated
            return "ok", OTPChallenge.from_dict(updated)

    async def consume_challenge(
        self, phone_key: str, challenge_id: str, *, allow_exhausted: bool = False
    ) -> bool:
        with self._lock:
            raw = self._challenges.get(phone_key)
            if not raw or raw["challenge_id"] != challenge_id:
                return False
            if raw.get("exhausted") and not allow_exhausted:
                return False
            del self._challenges[phone_key]
            return True

    async def delete_challenge(self, phone_key: str) -> bool:
        with self._lock:
            return self._challenges.pop(phone_key, None) is not None

    # ------------------------------------------------------------------
    # QR sessions
    # ------------------------------------------------------------------

    async def create_qr_session(self, session: QRSession) -> None:
        with self._lock:
            self._qr_sessions[session.session_id] = session.to_dict()

    async def get_qr_session(self, session_id: str) -> Optional[QRSession]:
        with self._lock:
            raw = self._qr_sessions.get(session_id)
            return QRSession.from_dict(raw) if raw else None

    async def poll_qr_session(
        self, session_id: str, *, now: datetime, claim_tokens: bool = False
    ) -> Tuple[str, Optional[QRSession]]:
        now_ts = _epoch(now)
        with self._lock:
            raw = self._qr_sessions.get(session_id)
            if raw is None:
                return "missing", None
            if raw["expires_at"] <= now_ts:
                del self._qr_sessions[session_id]
                return "expired", QRSession.from_dict(raw)
            snapshot = QRSession.from_dict(copy.deepcopy(raw))
            if not claim_tokens:
                snapshot.pending_tokens = None
            elif raw.get("pending_tokens"):
                raw["pending_tokens"] = None
            return "ok", snapshot

    async def mark_qr_used(
        self,
        session_id: str,
        *,
        user_id: str,
        device_id: str,
        tokens: Dict[str, Any],
        now: datetime,
    ) -> Tuple[str, Optional[QRSession]]:
        now_ts = _epoch(now)
        with self._lock:
            raw = self._qr_sessions.get(session_id)
            if raw is None:
                return "missing", None
            if raw.get("is_used"):
                return "used", QRSession.from_dict(raw)
            if raw["expires_at"] <= now_ts:
                del self._qr_sessions[session_id]
                return "expired", QRSession.from_dict(raw)
            raw.update(
                {
                    "is_used": True,
                    "user_id": user_id,
                    "device_id": device_id,
                    "used_at": now_ts,
                    "pending_tokens": dict(tokens),
                }
            )
            return "ok", QRSession.from_dict(copy.deepcopy(raw))

    async def delete_qr_session(self, session_id: str) -> bool:
        with self._lock:
            return self._qr_sessions.pop(session_id, None) is not None

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    async def sweep_expired(self, now: datetime) -> Dict[str, int]:
        now_ts = _epoch(now)
        with self._lock:
            stale_otp = [
                key for key, raw in self._challenges.items() if raw["expires_at"] <= now_ts
            ]
            for key in stale_otp:
                self._challenges.pop(key, None)
            stale_qr = [
                key for key, raw in self._qr_sessions.items() if raw["expires_at"] <= now_ts
            ]
            for key in stale_qr:
                self._qr_sessions.pop(key, None)
            # A refilled bucket is indistinguishable from an absent one
            for key in [k for k, entry in self._rate_limits.items() if entry[2] <= now_ts]:
                self._rate_limits.pop(key, None)
        return {"otp": len(stale_otp), "qr": len(stale_qr)}

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        now: datetime | float | None = None,
        cost: int = 1,
    ) -> Tuple[bool, int, int]:
        """Token bucket with the same refill maths as the Redis script."""
        now_ts = _epoch(now)
        refill_rate = float(limit) / float(window_seconds)
        with self._lock:
            tokens, last_ts, _ = self._rate_limits.get(key, (float(limit), now_ts, now_ts))
            elapsed = max(0.0, now_ts - last_ts)
            tokens = min(float(limit), tokens + elapsed * refill_rate)
            allowed = tokens >= cost
            if allowed:
                tokens -= cost
            full_at = now_ts + (float(limit) - tokens) / refill_rate
            self._rate_limits[key] = (tokens, now_ts, full_at)
            reset_seconds = (
                int(-(-(cost - tokens) // refill_rate)) if not allowed else 0
            )
            return allowed, int(tokens), reset_seconds
