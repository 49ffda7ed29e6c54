from __future__ import annotations

import hashlib
import json
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis

from linkauth.storage.errors import StoreUnavailable
from linkauth.storage.models import OTPChallenge, QRSession

# Records outlive their logical expiry by this much so late readers see
# "expired" rather than "not found"; the sweeper removes them earlier.
RETENTION_GRACE_SECONDS = 600


class RedisCache:
    """Redis home for OTP challenges, QR sessions and rate limits.

    Records are JSON documents. Every read-modify-write goes through a Lua
    script so concurrent validators, confirmers and pollers observe a single
    winner across processes.
    """

    OTP_INDEX = "otp:expiry"
    QR_INDEX = "qr:expiry"

    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tostring(tokens), reset_after}
end

tokens = tokens - cost
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tostring(tokens), 0}
"""

    # KEYS: challenge key, expiry index
    # ARGV: challenge json, now, resend flag, max resends, ttl seconds
    _STORE_CHALLENGE_SCRIPT = """
local now = tonumber(ARGV[2])
local incoming = cjson.decode(ARGV[1])
local raw = redis.call('GET', KEYS[1])
if raw then
  local existing = cjson.decode(raw)
  if tonumber(existing['expires_at']) > now then
    local cooldown = existing['resend_cooldown_until']
    if cooldown ~= cjson.null and cooldown ~= nil and tonumber(cooldown) > now then
      return {'cooldown', raw}
    end
    local count = tonumber(existing['resend_count']) or 0
    if ARGV[3] == '1' then
      if count >= tonumber(ARGV[4]) then
        return {'resend_cap', raw}
      end
      count = count + 1
    end
    incoming['resend_count'] = count
  end
end
local encoded = cjson.encode(incoming)
redis.call('SET', KEYS[1], encoded, 'EX', ARGV[5])
redis.call('ZADD', KEYS[2], incoming['expires_at'], KEYS[1])
return {'stored', encoded}
"""

    # KEYS: challenge key; ARGV: challenge id, max attempts
    _RECORD_FAILURE_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return {'missing'}
end
local doc = cjson.decode(raw)
if doc['challenge_id'] ~= ARGV[1] then
  return {'superseded', raw}
end
if doc['exhausted'] == true then
  return {'exhausted', raw}
end
doc['attempts'] = (tonumber(doc['attempts']) or 0) + 1
if doc['attempts'] >= tonumber(ARGV[2]) then
  doc['exhausted'] = true
  doc['code_hash'] = cjson.null
end
local encoded = cjson.encode(doc)
redis.call('SET', KEYS[1], encoded, 'KEEPTTL')
return {'ok', encoded}
"""

    # KEYS: challenge key, expiry index; ARGV: challenge id, allow exhausted flag
    _CONSUME_CHALLENGE_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return 0
end
local doc = cjson.decode(raw)
if doc['challenge_id'] ~= ARGV[1] then
  return 0
end
if doc['exhausted'] == true and ARGV[2] ~= '1' then
  return 0
end
redis.call('DEL', KEYS[1])
redis.call('ZREM', KEYS[2], KEYS[1])
return 1
"""

    # KEYS: session key, expiry index; ARGV: now, claim tokens flag
    _POLL_QR_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return {'missing'}
end
local doc = cjson.decode(raw)
if tonumber(doc['expires_at']) <= tonumber(ARGV[1]) then
  redis.call('DEL', KEYS[1])
  redis.call('ZREM', KEYS[2], KEYS[1])
  return {'expired', raw}
end
local pending = doc['pending_tokens']
if pending == nil or pending == cjson.null then
  return {'ok', raw}
end
doc['pending_tokens'] = cjson.null
local stripped = cjson.encode(doc)
if ARGV[2] ~= '1' then
  return {'ok', stripped}
end
redis.call('SET', KEYS[1], stripped, 'KEEPTTL')
return {'ok', raw}
"""

    # KEYS: session key, expiry index
    # ARGV: now, user id, device id, tokens json
    _MARK_QR_USED_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return {'missing'}
end
local doc = cjson.decode(raw)
if doc['is_used'] == true then
  return {'used', raw}
end
if tonumber(doc['expires_at']) <= tonumber(ARGV[1]) then
  redis.call('DEL', KEYS[1])
  redis.call('ZREM', KEYS[2], KEYS[1])
  return {'expired', raw}
end
doc['is_used'] = true
doc['user_id'] = ARGV[2]
doc['device_id'] = ARGV[3]
doc['used_at'] = tonumber(ARGV[1])
doc['pending_tokens'] = cjson.decode(ARGV[4])
local encoded = cjson.encode(doc)
redis.call('SET', KEYS[1], encoded, 'KEEPTTL')
return {'ok', encoded}
"""

    # KEYS: expiry index, then candidate record keys; ARGV: now
    _SWEEP_SCRIPT = """
local now = tonumber(ARGV[1])
local removed = 0
for i = 2, #KEYS do
  local raw = redis.call('GET', KEYS[i])
  if raw then
    local doc = cjson.decode(raw)
    if tonumber(doc['expires_at']) <= now then
      redis.call('DEL', KEYS[i])
      redis.call('ZREM', KEYS[1], KEYS[i])
      removed = removed + 1
    end
  else
    redis.call('ZREM', KEYS[1], KEYS[i])
  end
end
return removed
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)
        self._store_challenge = self.client.register_script(self._STORE_CHALLENGE_SCRIPT)
        self._record_failure = self.client.register_script(self._RECORD_FAILURE_SCRIPT)
        self._consume_challenge = self.client.register_script(
            self._CONSUME_CHALLENGE_SCRIPT
        )
        self._poll_qr = self.client.register_script(self._POLL_QR_SCRIPT)
        self._mark_qr_used = self.client.register_script(self._MARK_QR_USED_SCRIPT)
        self._sweep = self.client.register_script(self._SWEEP_SCRIPT)

    @staticmethod
    def _epoch(value: datetime | float | None) -> float:
        if value is None:
            return time.time()
        if isinstance(value, datetime):
            if value.tzinfo is None:
                value = value.replace(tzinfo=timezone.utc)
            return value.timestamp()
        return float(value)

    @classmethod
    def _ttl_seconds(cls, expires_at: datetime, now: datetime) -> int:
        remaining = cls._epoch(expires_at) - cls._epoch(now)
        return max(1, int(remaining) + RETENTION_GRACE_SECONDS)

    @staticmethod
    def _challenge_key(phone_key: str) -> str:
        return f"otp:challenge:{phone_key}"

    @staticmethod
    def _qr_key(session_id: str) -> str:
        return f"qr:session:{session_id}"

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    @staticmethod
    def _decode(raw: Any) -> Dict[str, Any]:
        try:
            return json.loads(raw)
        except (TypeError, json.JSONDecodeError) as exc:
            raise StoreUnavailable("corrupt record in redis") from exc

    def _unpack(self, result: List[Any], factory) -> Tuple[str, Any]:
        status = result[0]
        if len(result) < 2:
            return status, None
        return status, factory(self._decode(result[1]))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        await self.client.aclose()
        await self.client.connection_pool.disconnect()

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
        result = await self._store_challenge(
            keys=[self._challenge_key(challenge.phone_key), self.OTP_INDEX],
            args=[
                json.dumps(challenge.to_dict()),
                self._epoch(now),
                "1" if resend else "0",
                max_resends,
                self._ttl_seconds(challenge.expires_at, now),
            ],
        )
        return self._unpack(result, OTPChallenge.from_dict)

    async def get_challenge(self, phone_key: str) -> Optional[OTPChallenge]:
        raw = await self.client.get(self._challenge_key(phone_key))
        if raw is None:
            return None
        return OTPChallenge.from_dict(self._decode(raw))

    async def record_failed_attempt(
        self, phone_key: str, challenge_id: str, max_attempts: int
    ) -> Tuple[str, Optional[OTPChallenge]]:
        result = await self._record_failure(
            keys=[self._challenge_key(phone_key)],
            args=[challenge_id, max_attempts],
        )
        return self._unpack(result, OTPChallenge.from_dict)

    async def consume_challenge(
        self, phone_key: str, challenge_id: str, *, allow_exhausted: bool = False
    ) -> bool:
        removed = await self._consume_challenge(
            keys=[self._challenge_key(phone_key), self.OTP_INDEX],
            args=[challenge_id, "1" if allow_exhausted else "0"],
        )
        return bool(int(removed))

    async def delete_challenge(self, phone_key: str) -> bool:
        key = self._challenge_key(phone_key)
        pipe = self.client.pipeline()
        pipe.delete(key)
        pipe.zrem(self.OTP_INDEX, key)
        deleted, _ = await pipe.execute()
        return bool(deleted)

    # ------------------------------------------------------------------
    # QR sessions
    # ------------------------------------------------------------------

    async def create_qr_session(self, session: QRSession) -> None:
        key = self._qr_key(session.session_id)
        ttl = self._ttl_seconds(session.expires_at, session.created_at)
        pipe = self.client.pipeline()
        pipe.set(key, json.dumps(session.to_dict()), ex=ttl)
        pipe.zadd(self.QR_INDEX, {key: self._epoch(session.expires_at)})
        await pipe.execute()

    async def get_qr_session(self, session_id: str) -> Optional[QRSession]:
        raw = await self.client.get(self._qr_key(session_id))
        if raw is None:
            return None
        return QRSession.from_dict(self._decode(raw))

    async def poll_qr_session(
        self, session_id: str, *, now: datetime, claim_tokens: bool = False
    ) -> Tuple[str, Optional[QRSession]]:
        result = await self._poll_qr(
            keys=[self._qr_key(session_id), self.QR_INDEX],
            args=[self._epoch(now), "1" if claim_tokens else "0"],
        )
        return self._unpack(result, QRSession.from_dict)

    async def mark_qr_used(
        self,
        session_id: str,
        *,
        user_id: str,
        device_id: str,
        tokens: Dict[str, Any],
        now: datetime,
    ) -> Tuple[str, Optional[QRSession]]:
        result = await self._mark_qr_used(
            keys=[self._qr_key(session_id), self.QR_INDEX],
            args=[self._epoch(now), user_id, device_id, json.dumps(tokens)],
        )
        return self._unpack(result, QRSession.from_dict)

    async def delete_qr_session(self, session_id: str) -> bool:
        key = self._qr_key(session_id)
        pipe = self.client.pipeline()
        pipe.delete(key)
        pipe.zrem(self.QR_INDEX, key)
        deleted, _ = await pipe.execute()
        return bool(deleted)

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    async def _sweep_index(self, index: str, now_ts: float) -> int:
        candidates = await self.client.zrangebyscore(index, "-inf", now_ts)
        if not candidates:
            return 0
        removed = await self._sweep(keys=[index, *candidates], args=[now_ts])
        return int(removed)

    async def sweep_expired(self, now: datetime) -> Dict[str, int]:
        now_ts = self._epoch(now)
        return {
            "otp": await self._sweep_index(self.OTP_INDEX, now_ts),
            "qr": await self._sweep_index(self.QR_INDEX, now_ts),
        }

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        now: datetime | float | None = None,
        cost: int = 1,
    ) -> Tuple[bool, int, int]:
        """Token bucket check; refill and consume happen in one script call."""
        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[safe_key],
            args=[self._epoch(now), refill_rate, limit, max(1, cost)],
        )
        remaining = max(0, int(float(tokens)))
        return bool(int(allowed)), remaining, int(reset_after) if reset_after else 0
