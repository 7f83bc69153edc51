"""Redis-based rate limiters with in-memory fallback.

``DistributedWindowLimiter`` runs a sliding window over a sorted set in one
MULTI/EXEC transaction (ZREMRANGEBYSCORE/ZCARD/ZADD/EXPIRE) and falls back
to ``core.rate_limiter.LocalWindowTracker`` when Redis is not connected or
the transaction fails. ``SimpleCounterLimiter`` is a fixed window
(INCR + EXPIRE) that fails open.
"""

from __future__ import annotations

import logging
import time
import uuid

from cache.redis_client import RedisStore
from core.rate_limiter import LocalWindowTracker, RateLimitConfig, RateLimitResult

logger = logging.getLogger(__name__)


def _now() -> int:
    return int(time.time())


class DistributedWindowLimiter:
    """Sliding window limiter shared by every instance using the same Redis."""

    def __init__(self, store: RedisStore | None, tracker: LocalWindowTracker):
        self.store = store
        self.tracker = tracker

    async def check_limit(self, identifier: str, config: RateLimitConfig,
                          now: int | None = None) -> RateLimitResult:
        """Record one request for *identifier* and decide whether it is allowed.

        Never raises for store problems: any failure is logged and the
        decision comes from the local tracker instead.
        """
        if now is None:
            now = _now()
        key = config.key_for(identifier)
        window_start = now - config.window

        if self.store is not None and self.store.is_connected:
            try:
                return await self._check_redis(key, config, now, window_start)
            except Exception as exc:
                logger.warning("Redis rate limiting error, falling back to in-memory: %s", exc,
                               exc_info=exc, extra={"bucket": config.bucket})

        return self.tracker.check_limit(key, config, now, window_start)

    async def _check_redis(self, key: str, config: RateLimitConfig, now: int,
                           window_start: int) -> RateLimitResult:
        name = self.store.keys.namespaced(key)
        member = f"{now}:{uuid.uuid4().hex}"

        pipe = self.store.client.pipeline(transaction=True)
        pipe.zremrangebyscore(name, 0, window_start)
        pipe.zcard(name)
        pipe.zadd(name, {member: now})
        pipe.expire(name, config.window)
        results = await pipe.execute()

        count = int(results[1] or 0)  # ZCARD, taken before the ZADD
        reset = now + config.window
        if count >= config.limit:
            return RateLimitResult(success=False, limit=config.limit, remaining=0, reset=reset)
        return RateLimitResult(
            success=True, limit=config.limit, remaining=max(0, config.limit - count - 1), reset=reset,
        )

    async def get_remaining(self, identifier: str, config: RateLimitConfig, now: int | None = None) -> int:
        """Requests left in the current window, without recording one."""
        if now is None:
            now = _now()
        key = config.key_for(identifier)
        if self.store is not None and self.store.is_connected:
            try:
                name = self.store.keys.namespaced(key)
                count = await self.store.client.zcount(name, f"({now - config.window}", "+inf")
                return max(0, config.limit - int(count))
            except Exception as exc:
                logger.warning("Redis remaining-count error, using in-memory view: %s", exc, exc_info=exc)
        return self.tracker.remaining(key, config, now)


class SimpleCounterLimiter:
    """Fixed window counter: one round trip, up to 2x limit across a boundary."""

    def __init__(self, store: RedisStore | None, tracker: LocalWindowTracker):
        self.store = store
        self.tracker = tracker

    @staticmethod
    def key_for(identifier: str) -> str:
        return f"ratelimit:{identifier}"

    async def is_limited(self, identifier: str, limit: int, window_seconds: int) -> bool:
        """True when this request exceeds *limit*. Fails open on store errors."""
        if self.store is None:
            config = RateLimitConfig(bucket="simple", limit=limit, window=window_seconds)
            now = _now()
            result = self.tracker.check_limit(f"simple:{identifier}", config, now, now - window_seconds)
            return not result.success

        try:
            await self.store.connect()
            name = self.store.keys.namespaced(self.key_for(identifier))
            current = await self.store.client.incr(name)
            if current == 1:
                await self.store.client.expire(name, window_seconds)
        except Exception as exc:
            logger.warning("Redis rate_limit error, failing open: %s", exc, exc_info=exc)
            return False
        return current > limit

    async def remaining(self, identifier: str, limit: int, window_seconds: int | None = None) -> int:
        """``max(0, limit - counter)``, read without incrementing."""
        if self.store is None:
            if window_seconds is None:
                return limit
            config = RateLimitConfig(bucket="simple", limit=limit, window=window_seconds)
            return self.tracker.remaining(f"simple:{identifier}", config)

        try:
            await self.store.connect()
            current = await self.store.client.get(self.store.keys.namespaced(self.key_for(identifier)))
        except Exception as exc:
            logger.warning("Redis remaining-count error: %s", exc, exc_info=exc)
            return limit
        count = int(current) if current else 0
        return max(0, limit - count)


class RateLimiter:
    """Both limiters bound to one store and one fallback tracker."""

    def __init__(self, store: RedisStore | None, tracker: LocalWindowTracker | None = None):
        self.tracker = tracker or LocalWindowTracker()
        self.window = DistributedWindowLimiter(store, self.tracker)
        self.counter = SimpleCounterLimiter(store, self.tracker)

    async def check(self, identifier: str, config: RateLimitConfig) -> RateLimitResult:
        return await self.window.check_limit(identifier, config)

    async def check_simple(self, identifier: str, limit: int, window_seconds: int) -> bool:
        return await self.counter.is_limited(identifier, limit, window_seconds)

    async def get_remaining(self, identifier: str, config: RateLimitConfig) -> int:
        return await self.window.get_remaining(identifier, config)
