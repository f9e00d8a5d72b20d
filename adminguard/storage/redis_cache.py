from __future__ import annotations

import hashlib
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis

from adminguard.logging import get_logger
from adminguard.service.rate_limit import DEFAULT_WINDOW_SECONDS, RateDecision

logger = get_logger(__name__)


class RedisRateLimiter:
    """Fixed-window rate limiter with counters shared through Redis.

    Counters live under hashed keys with a TTL of one window, so Redis
    evicts idle keys on its own and ``purge_stale`` has nothing to do.
    """

    # Atomic check-and-increment; only admitted requests consume a slot
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local limit = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])

local current = tonumber(redis.call('GET', key) or '0')
local ttl = redis.call('PTTL', key)

if current >= limit then
  if ttl < 0 then
    redis.call('PEXPIRE', key, window_ms)
    ttl = window_ms
  end
  return {0, current, ttl}
end

current = redis.call('INCR', key)
if current == 1 or ttl < 0 then
  redis.call('PEXPIRE', key, window_ms)
  ttl = window_ms
end
return {1, current, ttl}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    @staticmethod
    def _normalize_rate_key(key: str, namespace: Optional[str] = None) -> str:
        """Hash key components so client-controlled parts cannot collide."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        prefix = f"{namespace}:" if namespace else ""
        return f"rate:{prefix}{digest}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling shared counters."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def check(self, key: str, window_seconds: int, limit: int) -> RateDecision:
        if limit <= 0:
            return RateDecision(allowed=True, limit=limit, remaining=0, reset_seconds=0)
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                key=key,
                window_seconds=window_seconds,
                message="Invalid rate limit window_seconds; defaulting to 60 seconds",
            )
            window_seconds = DEFAULT_WINDOW_SECONDS
        window_ms = int(window_seconds * 1000)
        allowed, count, ttl_ms = await self._fixed_window(
            keys=[self._normalize_rate_key(key)],
            args=[int(limit), window_ms],
        )
        reset_seconds = max(0, (int(ttl_ms) + 999) // 1000)
        return RateDecision(
            allowed=bool(int(allowed)),
            limit=limit,
            remaining=max(0, limit - int(count)),
            reset_seconds=reset_seconds,
        )

    async def admit(self, key: str, window_seconds: int, limit: int) -> bool:
        decision = await self.check(key, window_seconds, limit)
        return decision.allowed

    def purge_stale(self) -> int:
        return 0

    async def close(self) -> None:
        await self.client.aclose()
