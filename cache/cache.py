"""Cache-through fetch over the Redis store, plus the ``@cached`` decorator.

A miss runs the caller's compute function and stores its result; a
tombstone (soft delete) counts as a hit and reads back as ``None`` without
recomputing. Concurrent misses on one key may both compute and both write.
"""

from __future__ import annotations

import functools
import inspect
import logging
from typing import Any, Awaitable, Callable, TypeVar, Union

from cache.redis_client import RedisStore, get_redis
from core.cache import TOMBSTONE, CacheStats, Present, StoreResult, Tombstone

logger = logging.getLogger(__name__)

T = TypeVar("T")
Compute = Callable[[], Union[T, Awaitable[T]]]


class CacheThroughEngine:
    """Fetch-or-compute-and-store with process-local hit/miss accounting."""

    def __init__(self, store: RedisStore):
        self.redis = store
        self._hits = 0
        self._misses = 0

    async def fetch(self, key: str, compute: Compute | None = None, ttl: int | None = None) -> Any:
        """Return the cached value for *key*, computing and storing it on a miss.

        Errors raised by *compute* propagate unchanged. A failed write is
        logged and the computed value is still returned.
        """
        entry = await self.redis.get_entry(key)

        if isinstance(entry, Tombstone):
            self._hits += 1
            return None

        if isinstance(entry, Present):
            self._hits += 1
            return entry.value

        self._misses += 1
        if compute is None:
            return None

        data = compute()
        if inspect.isawaitable(data):
            data = await data

        if data is not None:
            result = await self.store(key, data, ttl)
            if not result:
                logger.warning("Computed value for %s was not cached: %s", key, result.error)
        return data

    async def store(self, key: str, value: Any, ttl: int | None = None) -> StoreResult:
        return await self.redis.set(key, value, ttl)

    async def get(self, key: str) -> Any:
        return await self.redis.get(key)

    async def remove(self, key: str, soft: bool = False) -> StoreResult:
        """Soft delete writes a tombstone; hard delete removes the key."""
        if soft:
            return await self.redis.set(key, TOMBSTONE)
        count = await self.redis.delete(key)
        return StoreResult(ok=True, count=count)

    def get_stats(self) -> CacheStats:
        return CacheStats(hits=self._hits, misses=self._misses)

    def reset_stats(self) -> None:
        self._hits = 0
        self._misses = 0


_engine: CacheThroughEngine | None = None


def get_engine() -> CacheThroughEngine | None:
    """Engine bound to the default store, or None while Redis is unavailable."""
    global _engine
    store = get_redis()
    if store is None:
        return None
    if _engine is None or _engine.redis is not store:
        _engine = CacheThroughEngine(store)
    return _engine


def cached(ttl: int = 60, key_prefix: str = "cache", engine: CacheThroughEngine | None = None):
    """Decorator that caches async function results through :class:`CacheThroughEngine`.

    Key format: ``{key_prefix}:{arg1}:{arg2}:...``
    """

    def decorator(fn):
        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            active = engine or get_engine()
            if active is None:
                return await fn(*args, **kwargs)

            parts = [key_prefix] + [str(a) for a in args] + [f"{k}={v}" for k, v in sorted(kwargs.items())]
            cache_key = ":".join(parts)
            return await active.fetch(cache_key, lambda: fn(*args, **kwargs), ttl)

        return wrapper

    return decorator
