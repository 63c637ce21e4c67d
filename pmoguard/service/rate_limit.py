from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from pmoguard.logging import get_logger, hash_identifier
from pmoguard.service.errors import RateLimitedError
from pmoguard.storage.redis_cache import RedisCache

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    attempts: int
    limit: int
    retry_after: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.attempts)


def _humanize_seconds(seconds: int) -> str:
    if seconds >= 3600 and seconds % 3600 == 0:
        hours = seconds // 3600
        return f"{hours} hour" if hours == 1 else f"{hours} hours"
    minutes = max(1, math.ceil(seconds / 60))
    return f"{minutes} minute" if minutes == 1 else f"{minutes} minutes"


class FixedWindowRateLimiter:
    """Count attempts per subject in fixed windows of ``window_seconds``.

    Every attempt is counted, successful or not; attempt ``max_attempts + 1``
    inside a window is rejected. With a Redis cache the increment-and-expire
    runs as one Lua script; otherwise counters live in-process behind a lock.
    """

    def __init__(
        self,
        scope: str,
        *,
        max_attempts: int,
        window_seconds: int,
        cache: Optional[RedisCache] = None,
        action: str = "attempts",
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        if max_attempts <= 0 or window_seconds <= 0:
            raise ValueError("rate limit thresholds must be positive")
        self.scope = scope
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.cache = cache
        self.action = action
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()
        # subject -> (window start, attempts)
        self._windows: Dict[str, Tuple[float, int]] = {}

    async def hit(self, subject: str) -> RateLimitDecision:
        if self.cache is not None:
            attempts, ttl = await self.cache.hit_fixed_window(
                self.scope, subject, self.window_seconds
            )
            retry_after = ttl or self.window_seconds
        else:
            attempts, retry_after = self._hit_local(subject)
        allowed = attempts <= self.max_attempts
        return RateLimitDecision(
            allowed=allowed,
            attempts=attempts,
            limit=self.max_attempts,
            retry_after=retry_after if not allowed else 0,
        )

    async def enforce(self, subject: str) -> RateLimitDecision:
        """Count an attempt and raise RateLimitedError once the window is exhausted."""
        decision = await self.hit(subject)
        if not decision.allowed:
            logger.warning(
                "rate_limit_exceeded",
                scope=self.scope,
                subject_hash=hash_identifier(subject),
                attempts=decision.attempts,
                limit=self.max_attempts,
            )
            raise RateLimitedError(
                f"Too many {self.action}, please try again in "
                f"{_humanize_seconds(decision.retry_after)}",
                retry_after=decision.retry_after,
            )
        return decision

    async def reset(self, subject: str) -> None:
        if self.cache is not None:
            await self.cache.reset_fixed_window(self.scope, subject)
            return
        with self._lock:
            self._windows.pop(subject, None)

    def _hit_local(self, subject: str) -> Tuple[int, int]:
        now = self._clock()
        with self._lock:
            started, attempts = self._windows.get(subject, (now, 0))
            if now - started >= self.window_seconds:
                started, attempts = now, 0
            attempts += 1
            self._windows[subject] = (started, attempts)
            if len(self._windows) > 10_000:
                self._evict_expired(now)
        remaining = self.window_seconds - (now - started)
        return attempts, max(1, math.ceil(remaining))

    def _evict_expired(self, now: float) -> None:
        expired = [
            key
            for key, (started, _) in self._windows.items()
            if now - started >= self.window_seconds
        ]
        for key in expired:
            self._windows.pop(key, None)
