# cache/__init__.py
"""Redis-backed cache-through, pattern invalidation and rate limiting."""

from cache.cache import CacheThroughEngine, cached, get_engine
from cache.invalidation import PatternInvalidator
from cache.keys import CACHE_PREFIX, KeyNamespace
from cache.rate_limiter import DistributedWindowLimiter, RateLimiter, SimpleCounterLimiter
from cache.redis_client import (
    ConnectionExhaustedError,
    ConnectionState,
    HealthStatus,
    RedisStore,
    close_redis,
    connect_redis,
    get_redis,
)

__all__ = [
    "CACHE_PREFIX",
    "CacheThroughEngine",
    "ConnectionExhaustedError",
    "ConnectionState",
    "DistributedWindowLimiter",
    "HealthStatus",
    "KeyNamespace",
    "PatternInvalidator",
    "RateLimiter",
    "RedisStore",
    "SimpleCounterLimiter",
    "cached",
    "close_redis",
    "connect_redis",
    "get_engine",
    "get_redis",
]
