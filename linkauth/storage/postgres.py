from __future__ import annotations

import json
import uuid
from typing import Any, Callable, Dict, List, Optional, TypeVar

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from linkauth.logging import get_logger
from linkauth.storage.errors import ConstraintViolation, RecordNotFound
from linkauth.storage.models import User, UserStatus, utcnow

R = TypeVar("R")

_SECURITY_CONFIG_NAME = "security"

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        phone_number TEXT NOT NULL UNIQUE,
        country_code TEXT NOT NULL DEFAULT '',
        display_name TEXT,
        status TEXT NOT NULL DEFAULT 'active',
        is_verified BOOLEAN NOT NULL DEFAULT FALSE,
        is_online BOOLEAN NOT NULL DEFAULT FALSE,
        last_seen TIMESTAMPTZ,
        login_attempts INTEGER NOT NULL DEFAULT 0,
        last_failed_login TIMESTAMPTZ,
        devices JSONB NOT NULL DEFAULT '[]'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        meta JSONB
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS instance_config (
        name TEXT PRIMARY KEY,
        config JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


def _user_from_row(row: Dict[str, Any]) -> User:
    data = dict(row)
    devices = data.get("devices")
    if isinstance(devices, str):
        data["devices"] = json.loads(devices)
    meta = data.get("meta")
    if isinstance(meta, str):
        data["meta"] = json.loads(meta)
    return User.from_dict(data)


class PostgresStore:
    """Durable user and security-settings store.

    Per-user updates run under ``SELECT ... FOR UPDATE`` so concurrent login,
    logout and QR confirm never interleave on the same device list.
    """

    def __init__(self, dsn: str, *, pool: Optional[ConnectionPool] = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    def create_user(
        self,
        phone_number: str,
        country_code: str = "",
        *,
        display_name: Optional[str] = None,
        status: str = UserStatus.ACTIVE.value,
        is_verified: bool = False,
        meta: Optional[dict] = None,
    ) -> User:
        user = User(
            id=str(uuid.uuid4()),
            phone_number=phone_number,
            country_code=country_code,
            display_name=display_name,
            status=status,
            is_verified=is_verified,
            created_at=utcnow(),
            meta=meta.copy() if meta else {},
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, phone_number, country_code, display_name, status, is_verified, created_at, meta)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.phone_number,
                        user.country_code,
                        user.display_name,
                        user.status,
                        user.is_verified,
                        user.created_at,
                        json.dumps(user.meta) if user.meta else None,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "phone number already registered", {"field": "phone_number"}
            )
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return _user_from_row(row) if row else None

    def get_user_by_phone(self, phone_number: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE phone_number = %s", (phone_number,)
            ).fetchone()
        return _user_from_row(row) if row else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [_user_from_row(row) for row in rows]

    def update_user(self, user_id: str, mutator: Callable[[User], R]) -> R:
        """Lock the row, apply ``mutator`` and write back every mutable column."""
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    "SELECT * FROM app_user WHERE id = %s FOR UPDATE", (user_id,)
                ).fetchone()
                if not row:
                    raise RecordNotFound("user", user_id)
                user = _user_from_row(row)
                result = mutator(user)
                conn.execute(
                    """
                    UPDATE app_user
                    SET display_name = %s, status = %s, is_verified = %s, is_online = %s,
                        last_seen = %s, login_attempts = %s, last_failed_login = %s,
                        devices = %s, meta = %s
                    WHERE id = %s
                    """,
                    (
                        user.display_name,
                        user.status,
                        user.is_verified,
                        user.is_online,
                        user.last_seen,
                        user.login_attempts,
                        user.last_failed_login,
                        json.dumps([d.to_dict() for d in user.devices]),
                        json.dumps(user.meta) if user.meta else None,
                        user_id,
                    ),
                )
        return result

    def set_user_status(self, user_id: str, status: str) -> Optional[User]:
        UserStatus(status)

        def _apply(user: User) -> User:
            user.status = status
            return user

        try:
            return self.update_user(user_id, _apply)
        except RecordNotFound:
            return None

    def get_security_settings(self) -> Optional[dict]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT config FROM instance_config WHERE name = %s",
                (_SECURITY_CONFIG_NAME,),
            ).fetchone()
        if not row:
            return None
        config = row["config"]
        return json.loads(config) if isinstance(config, str) else config

    def save_security_settings(self, config: dict) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO instance_config (name, config, created_at, updated_at)
                VALUES (%s, %s, now(), now())
                ON CONFLICT (name) DO UPDATE SET config = EXCLUDED.config, updated_at = now()
                """,
                (_SECURITY_CONFIG_NAME, json.dumps(config)),
            )
