"""Storage tests: memory store and cache contracts, Postgres SQL shape, Redis scripts.

The Redis section only runs when a server is reachable at TEST_REDIS_URL.
"""

import asyncio
import json
import os
from contextlib import contextmanager, nullcontext
from datetime import timedelta

import pytest
from psycopg import errors as pg_errors

from linkauth.storage.errors import ConstraintViolation, RecordNotFound
from linkauth.storage.memory import MemoryCache, MemoryStore
from linkauth.storage.models import OTPChallenge, QRSession, utcnow
from linkauth.storage.postgres import PostgresStore

PHONE = "+15551234567"


def _challenge(now, **overrides):
    fields = dict(
        phone_key=PHONE,
        code_hash="hash",
        issued_at=now,
        expires_at=now + timedelta(minutes=5),
        resend_cooldown_until=now + timedelta(seconds=60),
    )
    fields.update(overrides)
    return OTPChallenge(**fields)


def _qr_session(now, session_id="sess-1"):
    return QRSession(
        session_id=session_id,
        token="qr-token",
        created_at=now,
        expires_at=now + timedelta(minutes=5),
        poll_key_hash="abc",
    )


class TestMemoryStore:
    def test_duplicate_phone_is_constraint_violation(self):
        store = MemoryStore()
        store.create_user(PHONE)
        with pytest.raises(ConstraintViolation):
            store.create_user(PHONE)

    def test_returned_users_are_copies(self):
        store = MemoryStore()
        user = store.create_user(PHONE)
        user.display_name = "mutated"
        assert store.get_user(user.id).display_name is None

    def test_failing_mutator_leaves_record_untouched(self):
        store = MemoryStore()
        user = store.create_user(PHONE)

        def _boom(record):
            record.login_attempts = 99
            raise RuntimeError("nope")

        with pytest.raises(RuntimeError):
            store.update_user(user.id, _boom)
        assert store.get_user(user.id).login_attempts == 0

    def test_update_missing_user(self):
        with pytest.raises(RecordNotFound):
            MemoryStore().update_user("missing", lambda u: u)

    def test_state_persists_under_fs_root(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = store.create_user(PHONE, "1", is_verified=True)
        store.save_security_settings({"version": 4})

        reloaded = MemoryStore(fs_root=str(tmp_path))
        assert reloaded.get_user_by_phone(PHONE).id == user.id
        assert reloaded.get_security_settings() == {"version": 4}


class TestMemoryCache:
    async def test_store_challenge_checks_cooldown(self, clock):
        cache = MemoryCache()
        now = clock()
        status, _ = await cache.store_challenge(
            _challenge(now), now=now, resend=False, max_resends=3
        )
        assert status == "stored"
        later = clock.advance(seconds=30)
        status, existing = await cache.store_challenge(
            _challenge(later), now=later, resend=True, max_resends=3
        )
        assert status == "cooldown"
        assert existing.resend_cooldown_until == now + timedelta(seconds=60)

    async def test_failed_attempt_on_superseded_challenge(self, clock):
        """A miss against a replaced challenge does not count against the new one."""
        cache = MemoryCache()
        now = clock()
        old = _challenge(now)
        await cache.store_challenge(old, now=now, resend=False, max_resends=3)
        later = clock.advance(seconds=61)
        await cache.store_challenge(_challenge(later), now=later, resend=False, max_resends=3)

        status, current = await cache.record_failed_attempt(PHONE, old.challenge_id, 3)
        assert status == "superseded"
        assert current.attempts == 0
        assert await cache.consume_challenge(PHONE, old.challenge_id) is False

    async def test_concurrent_consume_succeeds_once(self, clock):
        cache = MemoryCache()
        now = clock()
        challenge = _challenge(now)
        await cache.store_challenge(challenge, now=now, resend=False, max_resends=3)
        results = await asyncio.gather(
            *[cache.consume_challenge(PHONE, challenge.challenge_id) for _ in range(5)]
        )
        assert sorted(results) == [False, False, False, False, True]

    async def test_mark_qr_used_is_compare_and_set(self, clock):
        cache = MemoryCache()
        await cache.create_qr_session(_qr_session(clock()))
        first, _ = await cache.mark_qr_used(
            "sess-1", user_id="u1", device_id="d1", tokens={"a": 1}, now=clock()
        )
        second, session = await cache.mark_qr_used(
            "sess-1", user_id="u2", device_id="d2", tokens={"a": 2}, now=clock()
        )
        assert (first, second) == ("ok", "used")
        assert session.user_id == "u1"

    async def test_tokens_claimed_once(self, clock):
        cache = MemoryCache()
        await cache.create_qr_session(_qr_session(clock()))
        await cache.mark_qr_used(
            "sess-1", user_id="u1", device_id="d1", tokens={"a": 1}, now=clock()
        )
        _, peek = await cache.poll_qr_session("sess-1", now=clock())
        assert peek.pending_tokens is None
        _, claimed = await cache.poll_qr_session("sess-1", now=clock(), claim_tokens=True)
        assert claimed.pending_tokens == {"a": 1}
        _, again = await cache.poll_qr_session("sess-1", now=clock(), claim_tokens=True)
        assert again.pending_tokens is None

    async def test_rate_limit_bucket_refills(self, clock):
        cache = MemoryCache()
        results = [
            await cache.check_rate_limit("k", 3, 300, now=clock()) for _ in range(4)
        ]
        assert [r[0] for r in results] == [True, True, True, False]
        assert results[-1][2] == 100
        clock.advance(seconds=100)
        allowed, _, _ = await cache.check_rate_limit("k", 3, 300, now=clock())
        assert allowed

    async def test_sweep_prunes_refilled_buckets(self, clock):
        cache = MemoryCache()
        for _ in range(2):
            await cache.check_rate_limit("otp:a", 3, 300, now=clock())
        await cache.check_rate_limit("otp:b", 3, 300, now=clock())

        await cache.sweep_expired(clock.advance(seconds=150))
        assert set(cache._rate_limits) == {"otp:a"}
        await cache.sweep_expired(clock.advance(seconds=60))
        assert cache._rate_limits == {}

        allowed, remaining, _ = await cache.check_rate_limit("otp:a", 3, 300, now=clock())
        assert allowed and remaining == 2

    async def test_sweep_is_idempotent(self, clock):
        cache = MemoryCache()
        now = clock()
        await cache.store_challenge(_challenge(now), now=now, resend=False, max_resends=3)
        await cache.create_qr_session(_qr_session(now))
        later = clock.advance(minutes=6)
        assert await cache.sweep_expired(later) == {"otp": 1, "qr": 1}
        assert await cache.sweep_expired(later) == {"otp": 0, "qr": 0}


class FakeCursor:
    def __init__(self, row=None, rows=None):
        self._row = row
        self._rows = rows or []

    def fetchone(self):
        return self._row

    def fetchall(self):
        return self._rows


class FakeConnection:
    def __init__(self, responses):
        self.responses = responses
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        handler = self.responses.get("raise")
        if handler and "INSERT INTO app_user" in sql:
            raise handler
        for fragment, row in self.responses.items():
            if fragment != "raise" and fragment in sql:
                return FakeCursor(row=row)
        return FakeCursor()

    def transaction(self):
        return nullcontext()


class FakePool:
    def __init__(self, responses=None):
        self.conn = FakeConnection(responses or {})

    @contextmanager
    def connection(self):
        yield self.conn

    def close(self):
        pass


def _user_row(**overrides):
    row = {
        "id": "user-1",
        "phone_number": PHONE,
        "country_code": "1",
        "display_name": None,
        "status": "active",
        "is_verified": True,
        "is_online": False,
        "last_seen": None,
        "login_attempts": 2,
        "last_failed_login": None,
        "devices": "[]",
        "created_at": utcnow(),
        "meta": None,
    }
    row.update(overrides)
    return row


class TestPostgresStore:
    def test_schema_created_on_start(self):
        pool = FakePool()
        PostgresStore("postgresql://unused", pool=pool)
        created = [sql for sql, _ in pool.conn.statements]
        assert any("CREATE TABLE IF NOT EXISTS app_user" in sql for sql in created)
        assert any("CREATE TABLE IF NOT EXISTS instance_config" in sql for sql in created)

    def test_update_user_locks_row_and_writes_back(self):
        pool = FakePool({"FOR UPDATE": _user_row()})
        store = PostgresStore("postgresql://unused", pool=pool)

        def _reset(user):
            user.login_attempts = 0
            return "done"

        assert store.update_user("user-1", _reset) == "done"
        sqls = [sql for sql, _ in pool.conn.statements]
        assert any(sql.endswith("FOR UPDATE") for sql in sqls)
        update_sql, params = pool.conn.statements[-1]
        assert update_sql.startswith("UPDATE app_user")
        assert params[5] == 0
        assert params[-1] == "user-1"

    def test_update_missing_user(self):
        store = PostgresStore("postgresql://unused", pool=FakePool())
        with pytest.raises(RecordNotFound):
            store.update_user("missing", lambda u: u)

    def test_duplicate_phone_maps_to_constraint_violation(self):
        pool = FakePool({"raise": pg_errors.UniqueViolation("duplicate key")})
        store = PostgresStore("postgresql://unused", pool=pool)
        with pytest.raises(ConstraintViolation):
            store.create_user(PHONE, "1")

    def test_security_settings_round_trip_json(self):
        pool = FakePool({"SELECT config FROM instance_config": {"config": '{"version": 3}'}})
        store = PostgresStore("postgresql://unused", pool=pool)
        assert store.get_security_settings() == {"version": 3}
        store.save_security_settings({"version": 4})
        sql, params = pool.conn.statements[-1]
        assert "ON CONFLICT (name)" in sql
        assert json.loads(params[1]) == {"version": 4}


def _redis_url():
    return os.environ.get("TEST_REDIS_URL")


@pytest.fixture
def redis_cache():
    url = _redis_url()
    if not url:
        pytest.skip("TEST_REDIS_URL not set")
    from redis.exceptions import RedisError

    from linkauth.storage.redis_cache import RedisCache

    cache = RedisCache(url)
    try:
        cache.verify_connection()
    except (RedisError, OSError):
        pytest.skip("redis not reachable at TEST_REDIS_URL")
    return cache


class TestRedisCache:
    async def test_challenge_lifecycle(self, redis_cache):
        now = utcnow()
        challenge = _challenge(now, phone_key=f"+1555{os.getpid():07d}"[:13])
        key = challenge.phone_key
        await redis_cache.delete_challenge(key)
        try:
            status, _ = await redis_cache.store_challenge(
                challenge, now=now, resend=False, max_resends=3
            )
            assert status == "stored"
            status, _ = await redis_cache.store_challenge(
                _challenge(now, phone_key=key), now=now, resend=True, max_resends=3
            )
            assert status == "cooldown"
            for expected in ("ok", "ok", "ok"):
                status, updated = await redis_cache.record_failed_attempt(
                    key, challenge.challenge_id, 3
                )
                assert status == expected
            assert updated.exhausted
            assert updated.code_hash is None
            assert await redis_cache.consume_challenge(key, challenge.challenge_id) is False
            assert await redis_cache.consume_challenge(
                key, challenge.challenge_id, allow_exhausted=True
            )
        finally:
            await redis_cache.delete_challenge(key)
            await redis_cache.close()

    async def test_concurrent_consume_succeeds_once(self, redis_cache):
        now = utcnow()
        challenge = _challenge(now, phone_key=f"+1666{os.getpid():07d}"[:13])
        key = challenge.phone_key
        await redis_cache.delete_challenge(key)
        try:
            await redis_cache.store_challenge(challenge, now=now, resend=False, max_resends=3)
            results = await asyncio.gather(
                *[redis_cache.consume_challenge(key, challenge.challenge_id) for _ in range(5)]
            )
            assert sorted(results) == [False, False, False, False, True]
        finally:
            await redis_cache.delete_challenge(key)
            await redis_cache.close()

    async def test_qr_used_once(self, redis_cache):
        now = utcnow()
        session = _qr_session(now, session_id=f"test-{os.getpid()}")
        await redis_cache.create_qr_session(session)
        try:
            results = await asyncio.gather(
                *[
                    redis_cache.mark_qr_used(
                        session.session_id,
                        user_id=f"u{i}",
                        device_id=f"d{i}",
                        tokens={"i": i},
                        now=now,
                    )
                    for i in range(5)
                ]
            )
            statuses = sorted(status for status, _ in results)
            assert statuses == ["ok", "used", "used", "used", "used"]
            _, claimed = await redis_cache.poll_qr_session(
                session.session_id, now=now, claim_tokens=True
            )
            assert claimed.pending_tokens is not None
            _, again = await redis_cache.poll_qr_session(
                session.session_id, now=now, claim_tokens=True
            )
            assert again.pending_tokens is None
        finally:
            await redis_cache.delete_qr_session(session.session_id)
            await redis_cache.close()
