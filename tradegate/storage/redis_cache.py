from __future__ import annotations

import hashlib
import time
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for rate limits and pending second-factor codes."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic refill + consume
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
  redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    # Returns -1 when no code is pending; never recreates a deleted entry
    _MFA_ATTEMPT_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
  return -1
end
return redis.call('HINCRBY', KEYS[1], 'attempts', 1)
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
        self._mfa_attempt = self.client.register_script(self._MFA_ATTEMPT_SCRIPT)

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """TTL in whole seconds until ``expires_at``, clamped to at least 1."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate-limit subjects so emails and IPs never leak into key names."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    @staticmethod
    def _pending_mfa_key(user_id: str) -> str:
        return f"mfa:pending:{user_id}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""

        # A short-lived sync client keeps the async client off the startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        await self.client.aclose()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[safe_key],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        allowed_bool = bool(int(allowed))
        remaining = max(0, int(tokens))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    async def set_pending_mfa(self, user_id: str, code: str, expires_at: datetime) -> None:
        key = self._pending_mfa_key(user_id)
        pipe = self.client.pipeline()
        pipe.delete(key)
        pipe.hset(
            key,
            mapping={"code": code, "expires_at": expires_at.isoformat(), "attempts": 0},
        )
        pipe.expire(key, self._ttl_seconds(expires_at))
        await pipe.execute()

    async def get_pending_mfa(self, user_id: str) -> Optional[Dict[str, str]]:
        data = await self.client.hgetall(self._pending_mfa_key(user_id))
        return data or None

    async def increment_pending_mfa_attempts(self, user_id: str) -> Optional[int]:
        result = await self._mfa_attempt(keys=[self._pending_mfa_key(user_id)], args=[])
        attempts = int(result)
        return None if attempts < 0 else attempts

    async def delete_pending_mfa(self, user_id: str) -> None:
        await self.client.delete(self._pending_mfa_key(user_id))


class _SyncClientAdapter:
    """Wrap a sync Redis client with the awaitable signatures services call."""

    def __init__(self, sync_client: Redis):
        self._sync = sync_client

    async def get(self, key: str) -> Optional[str]:
        return self._sync.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        return self._sync.set(key, value, ex=ex)

    async def delete(self, key: str) -> int:
        return self._sync.delete(key)

    async def hgetall(self, key: str) -> Dict[str, str]:
        return self._sync.hgetall(key)

    def pipeline(self):
        return self._sync.pipeline()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Talks to Redis with a blocking client so pytest never binds a connection
    to a short-lived event loop, while exposing the same awaitable API as
    :class:`RedisCache`.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self.client = _SyncClientAdapter(self._sync_client)
        self._token_bucket = self._sync_client.register_script(
            RedisCache._TOKEN_BUCKET_SCRIPT
        )
        self._mfa_attempt = self._sync_client.register_script(
            RedisCache._MFA_ATTEMPT_SCRIPT
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    def close(self) -> None:
        self._sync_client.close()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        safe_key = RedisCache._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = self._token_bucket(
            keys=[safe_key], args=[time.time(), refill_rate, limit, max(1, cost)]
        )
        allowed_bool = bool(int(allowed))
        remaining = max(0, int(tokens))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    async def set_pending_mfa(self, user_id: str, code: str, expires_at: datetime) -> None:
        key = RedisCache._pending_mfa_key(user_id)
        pipe = self._sync_client.pipeline()
        pipe.delete(key)
        pipe.hset(
            key,
            mapping={"code": code, "expires_at": expires_at.isoformat(), "attempts": 0},
        )
        pipe.expire(key, RedisCache._ttl_seconds(expires_at))
        pipe.execute()

    async def get_pending_mfa(self, user_id: str) -> Optional[Dict[str, str]]:
        data = self._sync_client.hgetall(RedisCache._pending_mfa_key(user_id))
        return data or None

    async def increment_pending_mfa_attempts(self, user_id: str) -> Optional[int]:
        result = self._mfa_attempt(keys=[RedisCache._pending_mfa_key(user_id)], args=[])
        attempts = int(result)
        return None if attempts < 0 else attempts

    async def delete_pending_mfa(self, user_id: str) -> None:
        self._sync_client.delete(RedisCache._pending_mfa_key(user_id))
