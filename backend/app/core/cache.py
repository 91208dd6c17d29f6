"""
Key-value cache used both as a read-through cache and as the rate-limit counter store.
Redis in deployments; an in-process memory backend when REDIS_URL is empty.
Every operation may raise: callers treat a failure as a cache miss.
"""

from __future__ import annotations

import json
import logging
import math
import time
from typing import Any, Callable, Protocol

from cachetools import TLRUCache

from app.config import Settings, settings

logger = logging.getLogger(__name__)

# Redis TTL sentinels
TTL_MISSING = -2
TTL_PERSISTENT = -1


class CacheBackend(Protocol):
    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def increment(self, key: str, ttl_seconds: int) -> int: ...

    async def ttl(self, key: str) -> int: ...

    async def expire(self, key: str, ttl_seconds: int) -> None: ...

    async def close(self) -> None: ...


class RedisCache:
    """JSON values over redis.asyncio. The client connects lazily on first command."""

    def __init__(self, client) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> RedisCache:
        from redis.asyncio import from_url

        return cls(from_url(url, encoding="utf-8", decode_responses=True))

    async def get(self, key: str) -> Any | None:
        raw = await self._client.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        await self._client.set(key, json.dumps(value, default=str), ex=max(1, int(ttl_seconds)))

    async def delete(self, key: str) -> None:
        await self._client.delete(key)

    async def increment(self, key: str, ttl_seconds: int) -> int:
        pipe = self._client.pipeline()
        pipe.incr(key)
        pipe.ttl(key)
        results = await pipe.execute()
        new_count = int(results[0])
        ttl = int(results[1])
        # Expiry is attached once, when the counter is created; later increments keep it
        if ttl == TTL_PERSISTENT:
            await self._client.expire(key, max(1, int(ttl_seconds)))
        return new_count

    async def ttl(self, key: str) -> int:
        return int(await self._client.ttl(key))

    async def expire(self, key: str, ttl_seconds: int) -> None:
        await self._client.expire(key, max(1, int(ttl_seconds)))

    async def close(self) -> None:
        await self._client.aclose()


class MemoryCache:
    """
    Process-local cache with Redis-like TTL semantics. Not shared between workers.
    Backed by a cachetools TLRUCache: every entry carries its own expiry, expired
    entries are swept on each write and the store never holds more than max_entries.
    """

    def __init__(self, max_entries: int = 10_000, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        # Values are (json, expires_at); the expiry is part of the value so increments can keep it
        self._data: TLRUCache = TLRUCache(maxsize=max_entries, ttu=_entry_expiry, timer=clock)

    def __len__(self) -> int:
        self._data.expire()
        return len(self._data)

    def _live(self, key: str) -> tuple[str, float] | None:
        return self._data.get(key)

    def _put(self, key: str, raw: str, expires_at: float) -> None:
        self._data[key] = (raw, expires_at)

    async def get(self, key: str) -> Any | None:
        entry = self._live(key)
        return None if entry is None else json.loads(entry[0])

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        self._put(key, json.dumps(value, default=str), self._clock() + max(1, int(ttl_seconds)))

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def increment(self, key: str, ttl_seconds: int) -> int:
        entry = self._live(key)
        if entry is None:
            new_count = 1
            expires_at = self._clock() + max(1, int(ttl_seconds))
        else:
            new_count = int(json.loads(entry[0])) + 1
            expires_at = entry[1]
        self._put(key, json.dumps(new_count), expires_at)
        return new_count

    async def ttl(self, key: str) -> int:
        entry = self._live(key)
        if entry is None:
            return TTL_MISSING
        return max(1, math.ceil(entry[1] - self._clock()))

    async def expire(self, key: str, ttl_seconds: int) -> None:
        entry = self._live(key)
        if entry is not None:
            self._put(key, entry[0], self._clock() + max(1, int(ttl_seconds)))

    async def close(self) -> None:
        self._data.clear()


def _entry_expiry(key: str, value: tuple[str, float], now: float) -> float:
    return value[1]


def build_cache(s: Settings | None = None) -> CacheBackend:
    s = s or settings
    if s.redis_url.strip():
        return RedisCache.from_url(s.redis_url.strip())
    logger.warning("Cache: REDIS_URL not set, using in-process memory cache")
    return MemoryCache(max_entries=s.memory_cache_max_entries)


# Lazy process-wide instance, injected into services by app.api.deps
_cache: CacheBackend | None = None


def get_cache() -> CacheBackend:
    global _cache
    if _cache is None:
        _cache = build_cache()
    return _cache


async def close_cache() -> None:
    """Close the shared cache (e.g. on app shutdown)."""
    global _cache
    if _cache is not None:
        try:
            await _cache.close()
        except Exception as e:
            logger.warning("Cache: error closing backend: %s", e)
        _cache = None
