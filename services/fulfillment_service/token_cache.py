"""Carrier session-token caches keyed by (store, provider)."""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol

from redis import asyncio as aioredis

logger = logging.getLogger(__name__)


def token_key(store_id, provider: str) -> str:
    return f"{store_id}:{provider}"


class TokenCache(Protocol):
    async def get(self, key: str) -> Optional[str]:
        ...

    async def set(self, key: str, token: str, ttl_seconds: int) -> None:
        ...

    async def evict(self, key: str) -> None:
        ...


@dataclass(frozen=True)
class CachedToken:
    token: str
    expires_at: float


class InMemoryTokenCache:
    """
    Process-local TTL cache.

    Entries are immutable and replaced wholesale, so a reader never sees a
    token paired with another token's expiry.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, CachedToken] = {}

    async def get(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return entry.token

    async def set(self, key: str, token: str, ttl_seconds: int) -> None:
        self._entries[key] = CachedToken(token=token, expires_at=self._clock() + ttl_seconds)

    async def evict(self, key: str) -> None:
        if self._entries.pop(key, None) is not None:
            logger.info(f"Evicted carrier token for {key}")


class RedisTokenCache:
    """Token cache shared by all service instances."""

    def __init__(self, redis_client: aioredis.Redis, prefix: str = "carrier_token"):
        self.redis = redis_client
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    async def get(self, key: str) -> Optional[str]:
        value = await self.redis.get(self._key(key))
        if isinstance(value, bytes):
            return value.decode()
        return value

    async def set(self, key: str, token: str, ttl_seconds: int) -> None:
        await self.redis.setex(self._key(key), ttl_seconds, token)

    async def evict(self, key: str) -> None:
        await self.redis.delete(self._key(key))
        logger.info(f"Evicted carrier token for {key}")
