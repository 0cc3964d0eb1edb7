from __future__ import annotations

import hashlib
import time
from typing import Any, Sequence, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

RateLimitResult = Union[bool, Tuple[bool, int, int]]

KEY_PREFIX = "tenantauth"

# KEYS[1]: bucket hash
# ARGV: now (seconds), capacity, window (seconds), cost
# Returns {allowed, tokens_left, seconds_until_affordable}
_BUCKET_LUA = """
local now = tonumber(ARGV[1])
local capacity = tonumber(ARGV[2])
local window = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])
local per_second = capacity / window

local state = redis.call('HMGET', KEYS[1], 'level', 'updated')
local level = tonumber(state[1]) or capacity
local updated = tonumber(state[2]) or now

level = math.min(capacity, level + math.max(0, now - updated) * per_second)

local allowed = 0
local wait = 0
if level >= cost then
  level = level - cost
  allowed = 1
else
  wait = math.ceil((cost - level) / per_second)
end

redis.call('HSET', KEYS[1], 'level', level, 'updated', now)
redis.call('EXPIRE', KEYS[1], math.max(1, math.ceil(window)))
return {allowed, tostring(level), wait}
"""


def rate_limit_key(key: str) -> str:
    """Bucket key for ``key``; hashed so phones and addresses never reach Redis."""

    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
    return f"{KEY_PREFIX}:ratelimit:{digest}"


def denylist_key(jti: str) -> str:
    return f"{KEY_PREFIX}:denylist:{jti}"


def _bucket_args(limit: int, window_seconds: int, cost: int) -> list[Any]:
    return [time.time(), limit, window_seconds, max(1, cost)]


def _bucket_result(raw: Sequence[Any], return_remaining: bool) -> RateLimitResult:
    allowed = bool(int(raw[0]))
    if not return_remaining:
        return allowed
    return allowed, max(0, int(float(raw[1]))), int(raw[2] or 0)


class RedisCache:
    """Rate-limit buckets and the revoked access token denylist on Redis."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._bucket = self.client.register_script(_BUCKET_LUA)

    def verify_connection(self) -> None:
        # A throwaway sync client keeps the async pool unbound until the app loop starts
        client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            client.ping()
        finally:
            client.close()

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> RateLimitResult:
        raw = await self._bucket(
            keys=[rate_limit_key(key)], args=_bucket_args(limit, window_seconds, cost)
        )
        return _bucket_result(raw, return_remaining)

    async def denylist_access_token(self, jti: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            await self.client.set(denylist_key(jti), "1", ex=ttl_seconds)

    async def is_access_token_denylisted(self, jti: str) -> bool:
        return bool(await self.client.exists(denylist_key(jti)))

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """``RedisCache`` over a blocking client.

    TEST_MODE runs each test on its own event loop, which an asyncio client
    bound to the first loop cannot survive.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._bucket = self._sync_client.register_script(_BUCKET_LUA)

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def ping(self) -> bool:
        return bool(self._sync_client.ping())

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> RateLimitResult:
        raw = self._bucket(
            keys=[rate_limit_key(key)], args=_bucket_args(limit, window_seconds, cost)
        )
        return _bucket_result(raw, return_remaining)

    async def denylist_access_token(self, jti: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            self._sync_client.set(denylist_key(jti), "1", ex=ttl_seconds)

    async def is_access_token_denylisted(self, jti: str) -> bool:
        return bool(self._sync_client.exists(denylist_key(jti)))

    async def close(self) -> None:
        self._sync_client.close()


__all__ = ["RedisCache", "SyncRedisCache", "denylist_key", "rate_limit_key"]
