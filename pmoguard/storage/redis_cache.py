from __future__ import annotations

import hashlib
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for rate-limit counters and password-reset tokens."""

    # Fixed window: INCR the counter, start the window TTL on first hit.
    # Returns {count, ttl_remaining}; the caller compares count to the limit.
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local window = tonumber(ARGV[1])

local count = redis.call('INCR', key)
if count == 1 then
  redis.call('EXPIRE', key, window)
end

local ttl = redis.call('TTL', key)
if ttl < 0 then
  redis.call('EXPIRE', key, window)
  ttl = window
end
return {count, ttl}
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

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(scope: str, subject: str) -> str:
        """Hash the subject so client-controlled values cannot collide with delimiters."""
        digest = hashlib.sha256(subject.encode()).hexdigest()
        return f"rate:{scope}:{digest}"

    async def hit_fixed_window(
        self, scope: str, subject: str, window_seconds: int
    ) -> Tuple[int, int]:
        """Atomically count one attempt; return (attempts in window, seconds left)."""
        safe_key = self._normalize_rate_key(scope, subject)
        count, ttl = await self._fixed_window(keys=[safe_key], args=[int(window_seconds)])
        return int(count), max(0, int(ttl))

    async def reset_fixed_window(self, scope: str, subject: str) -> None:
        await self.client.delete(self._normalize_rate_key(scope, subject))

    async def store_reset_token(self, token_digest: str, user_id: str, ttl_seconds: int) -> None:
        await self.client.set(f"auth:reset:{token_digest}", user_id, ex=max(1, ttl_seconds))

    async def peek_reset_token(self, token_digest: str) -> Optional[str]:
        return await self.client.get(f"auth:reset:{token_digest}")

    async def consume_reset_token(self, token_digest: str) -> Optional[str]:
        """Return and delete the user id bound to a reset token in one step."""
        return await self.client.getdel(f"auth:reset:{token_digest}")

    async def close(self) -> None:
        await self.client.aclose()
