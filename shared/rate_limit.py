"""Fixed-window rate limiting for public endpoints."""
import logging
import time
from typing import Callable, Dict, Optional, Tuple

from redis import asyncio as aioredis

logger = logging.getLogger(__name__)


class InMemoryRateLimiter:
    """Per-process fixed-window counter."""

    def __init__(self, limit: int, window_seconds: int, clock: Callable[[], float] = time.monotonic):
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[str, Tuple[int, int]] = {}

    async def hit(self, key: str) -> bool:
        """Count one request for key. Returns False when the limit is exceeded."""
        window = int(self._clock() // self.window_seconds)
        current_window, count = self._windows.get(key, (window, 0))
        if current_window != window:
            count = 0
        count += 1
        self._windows[key] = (window, count)
        return count <= self.limit


class RedisRateLimiter:
    """Fixed-window counter shared across processes via INCR + EXPIRE."""

    def __init__(
        self,
        redis_client: aioredis.Redis,
        limit: int,
        window_seconds: int,
        prefix: str = "ratelimit",
        clock: Optional[Callable[[], float]] = None,
    ):
        self.redis = redis_client
        self.limit = limit
        self.window_seconds = window_seconds
        self.prefix = prefix
        self._clock = clock or time.time

    async def hit(self, key: str) -> bool:
        window = int(self._clock() // self.window_seconds)
        redis_key = f"{self.prefix}:{key}:{window}"
        count = await self.redis.incr(redis_key)
        if count == 1:
            await self.redis.expire(redis_key, self.window_seconds)
        if count > self.limit:
            logger.warning(f"Rate limit exceeded for {key}")
            return False
        return True
