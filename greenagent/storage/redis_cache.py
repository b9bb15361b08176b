from __future__ import annotations

import hashlib
import uuid
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for rate limits shared across instances."""

    # Sliding window over a sorted set scored by request time in ms.
    # Returns {allowed, count, oldest_ms}.
    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
local oldest_ts = now
if oldest[2] then
  oldest_ts = tonumber(oldest[2])
end

if count >= limit then
  return {0, count, oldest_ts}
end

redis.call('ZADD', key, now, member)
redis.call('PEXPIRE', key, window)
return {1, count + 1, oldest_ts}
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
        # Short-lived sync client so the async client is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash key components to avoid delimiter collisions."""
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def sliding_window_check(
        self, key: str, limit: int, window_ms: int, now_ms: int
    ) -> Tuple[bool, int, int]:
        """Atomically prune, count and (when allowed) record one request.

        Returns ``(allowed, count, oldest_ms)``.
        """
        allowed, count, oldest = await self._sliding_window(
            keys=[self._normalize_rate_key(key)],
            args=[now_ms, window_ms, limit, f"{now_ms}:{uuid.uuid4().hex}"],
        )
        return bool(int(allowed)), int(count), int(oldest)

    async def sliding_window_count(self, key: str, window_ms: int, now_ms: int) -> int:
        return int(
            await self.client.zcount(
                self._normalize_rate_key(key), f"({now_ms - window_ms}", "+inf"
            )
        )

    async def sliding_window_reset(self, *keys: str) -> None:
        if keys:
            await self.client.delete(*(self._normalize_rate_key(k) for k in keys))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
