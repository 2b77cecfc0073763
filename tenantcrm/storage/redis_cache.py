from __future__ import annotations

import hashlib
import time
import uuid
from typing import Tuple, Union

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for rate limits and the access-token denylist."""

    # Sliding window log: drop entries older than the window, count, then add
    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now_ms = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, 0, now_ms - window_ms)
local count = redis.call('ZCARD', key)

if count >= limit then
  local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
  local reset_ms = window_ms
  if oldest[2] then
    reset_ms = math.max(0, tonumber(oldest[2]) + window_ms - now_ms)
  end
  return {0, 0, math.ceil(reset_ms / 1000)}
end

redis.call('ZADD', key, now_ms, member)
redis.call('PEXPIRE', key, window_ms)
return {1, limit - count - 1, 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self.client.register_script(self._SLIDING_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async one is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash the subject so user-supplied parts cannot collide on delimiters."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Check a sliding-window rate limit atomically via Lua."""

        safe_key = self._normalize_rate_key(key)
        allowed, remaining, reset_after = await self._sliding_window(
            keys=[safe_key],
            args=[int(time.time() * 1000), window_seconds * 1000, limit, uuid.uuid4().hex],
        )
        allowed_bool = bool(int(allowed))
        if return_remaining:
            return (allowed_bool, max(0, int(remaining)), int(reset_after))
        return allowed_bool

    async def denylist_access_token(self, jti: str, ttl_seconds: int) -> None:
        """Deny an access token id until its natural expiry."""
        if ttl_seconds > 0:
            await self.client.set(f"auth:access:denylist:{jti}", "1", ex=ttl_seconds)

    async def is_access_token_denylisted(self, jti: str) -> bool:
        return bool(await self.client.exists(f"auth:access:denylist:{jti}"))

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    under pytest, while exposing the same awaitable surface as RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self._sync_client.register_script(
            RedisCache._SLIDING_WINDOW_SCRIPT
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
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
    ) -> Union[bool, Tuple[bool, int, int]]:
        safe_key = RedisCache._normalize_rate_key(key)
        allowed, remaining, reset_after = self._sliding_window(
            keys=[safe_key],
            args=[int(time.time() * 1000), window_seconds * 1000, limit, uuid.uuid4().hex],
        )
        allowed_bool = bool(int(allowed))
        if return_remaining:
            return (allowed_bool, max(0, int(remaining)), int(reset_after))
        return allowed_bool

    async def denylist_access_token(self, jti: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            self._sync_client.set(f"auth:access:denylist:{jti}", "1", ex=ttl_seconds)

    async def is_access_token_denylisted(self, jti: str) -> bool:
        return bool(self._sync_client.exists(f"auth:access:denylist:{jti}"))

    async def close(self) -> None:
        self._sync_client.close()
