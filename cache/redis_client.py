"""Async Redis store with memoized connection and graceful degradation.

Every key-value operation routes its key through the store's
:class:`~cache.keys.KeyNamespace` and converts Redis failures into a safe
default (``None``/``0``/``False``), logging the error. Only connection
exhaustion propagates, because there is no safe default for it.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import random
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Mapping

from redis.asyncio import from_url
from redis.asyncio.retry import Retry
from redis.backoff import AbstractBackoff, NoBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from cache.keys import KeyNamespace
from core.cache import Present, StoredValue, StoreResult, decode_entry, encode_value, resolve_ttl
from core.config import RedisSettings

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)

_CONNECTION_ERRORS = (RedisConnectionError, RedisTimeoutError, OSError)


class ConnectionExhaustedError(RedisConnectionError):
    """Raised when every reconnect attempt of one connection lifecycle failed."""


class ConnectionState(str, enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


class ReconnectBackoff(AbstractBackoff):
    """Exponential backoff with additive jitter: ``min(2**n * base, cap) + U(0, jitter)``."""

    def __init__(self, base: float = 0.05, cap: float = 3.0, jitter: float = 0.2):
        self._base = base
        self._cap = cap
        self._jitter = jitter

    def reset(self) -> None:
        pass

    def compute(self, failures: int) -> float:
        return min(2 ** failures * self._base, self._cap) + random.uniform(0, self._jitter)


@dataclass(frozen=True)
class HealthStatus:
    ok: bool
    latency_ms: float
    error: str | None = None


class RedisStore:
    """Namespaced Redis key-value surface.

    Connection establishment is memoized: while one attempt is in flight,
    concurrent callers await the same attempt instead of starting their own.
    """

    def __init__(self, settings: RedisSettings | None = None, client: Redis | None = None,
                 backoff: AbstractBackoff | None = None):
        self.settings = settings or RedisSettings()
        self.keys = KeyNamespace(self.settings.prefix)
        self.default_ttl = self.settings.default_ttl
        self._backoff = backoff or ReconnectBackoff()
        self._client = client
        self._state = ConnectionState.IDLE
        self._failure: BaseException | None = None
        self._pending: asyncio.Future | None = None

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    @property
    def client(self) -> Redis:
        """The underlying redis-py client, for multi-command operations.

        Commands get a single attempt; the reconnect bound and backoff live
        in :meth:`connect` only.
        """
        if self._client is None:
            self._client = from_url(
                self.settings.url,
                decode_responses=True,
                socket_connect_timeout=self.settings.connect_timeout / 1000,
                retry=Retry(NoBackoff(), 0),
            )
        return self._client

    @property
    def prefix(self) -> str:
        return self.keys.prefix

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def failure(self) -> BaseException | None:
        """Reason for the last exhausted lifecycle, if any."""
        return self._failure

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    async def connect(self) -> None:
        """Ensure a usable connection, sharing any attempt already in flight."""
        if self._state is ConnectionState.CONNECTED:
            return
        if self._pending is None:
            self._state = ConnectionState.CONNECTING
            self._pending = asyncio.ensure_future(self._establish())
        pending = self._pending
        try:
            await asyncio.shield(pending)
        finally:
            if pending.done() and self._pending is pending:
                self._pending = None

    async def _establish(self) -> None:
        failures = 0
        while True:
            try:
                await self.client.ping()
            except _CONNECTION_ERRORS as exc:
                failures += 1
                if failures > self.settings.max_reconnect_attempts:
                    self._state = ConnectionState.FAILED
                    self._failure = exc
                    logger.error("Max reconnect attempts (%d) exceeded: %s",
                                 self.settings.max_reconnect_attempts, exc)
                    raise ConnectionExhaustedError(f"Max reconnect attempts exceeded: {exc}") from exc
                delay = self._backoff.compute(failures)
                logger.info("Reconnecting in %.0fms (attempt %d)", delay * 1000, failures)
                await asyncio.sleep(delay)
            else:
                self._state = ConnectionState.CONNECTED
                self._failure = None
                logger.info("Redis connected: %s", self.settings.url)
                return

    async def disconnect(self) -> None:
        """Close the client and return to the idle state."""
        if self._client is not None and self._state is ConnectionState.CONNECTED:
            await self._client.aclose()
            logger.info("Redis disconnected")
        self._state = ConnectionState.IDLE
        self._pending = None

    def _on_error(self, op: str, key: Any, exc: BaseException) -> None:
        logger.warning("Redis %s error for %s: %s", op, key, exc, exc_info=exc)

    # ------------------------------------------------------------------
    # Strings
    # ------------------------------------------------------------------

    async def get_entry(self, key: str) -> StoredValue | None:
        """Read *key* as ``Present``, ``TOMBSTONE`` or ``None`` when absent."""
        await self.connect()
        try:
            raw = await self.client.get(self.keys.namespaced(key))
        except Exception as exc:
            self._on_error("get", key, exc)
            return None
        return decode_entry(raw)

    async def get(self, key: str) -> Any:
        """Decoded value, or ``None`` if absent, soft-deleted or on error."""
        entry = await self.get_entry(key)
        return entry.value if isinstance(entry, Present) else None

    async def get_string(self, key: str) -> str | None:
        """Raw value without JSON parsing."""
        await self.connect()
        try:
            return await self.client.get(self.keys.namespaced(key))
        except Exception as exc:
            self._on_error("get_string", key, exc)
            return None

    async def mget(self, keys: list[str]) -> list[str | None]:
        if not keys:
            return []
        await self.connect()
        try:
            return await self.client.mget([self.keys.namespaced(k) for k in keys])
        except Exception as exc:
            self._on_error("mget", keys, exc)
            return [None] * len(keys)

    async def set(self, key: str, value: Any,
                  ttl: int | timedelta | Mapping[str, int] | None = None) -> StoreResult:
        """JSON-encode and store *value*; a TTL <= 0 stores without expiry."""
        await self.connect()
        try:
            serialized = encode_value(value)
            seconds = resolve_ttl(ttl, self.default_ttl)
            name = self.keys.namespaced(key)
            if seconds > 0:
                await self.client.set(name, serialized, ex=seconds)
            else:
                await self.client.set(name, serialized)
        except Exception as exc:
            self._on_error("set", key, exc)
            return StoreResult.failed(exc)
        return StoreResult(ok=True)

    async def set_ex(self, key: str, seconds: int, value: str) -> StoreResult:
        """Store a raw string with an expiry."""
        await self.connect()
        try:
            await self.client.setex(self.keys.namespaced(key), seconds, value)
        except Exception as exc:
            self._on_error("set_ex", key, exc)
            return StoreResult.failed(exc)
        return StoreResult(ok=True)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        await self.connect()
        try:
            return await self.client.delete(*(self.keys.namespaced(k) for k in keys))
        except Exception as exc:
            self._on_error("delete", keys, exc)
            return 0

    # ------------------------------------------------------------------
    # Counters and expiry
    # ------------------------------------------------------------------

    async def incr(self, key: str) -> int:
        return await self.incr_by(key, 1)

    async def incr_by(self, key: str, amount: int) -> int:
        await self.connect()
        try:
            return await self.client.incrby(self.keys.namespaced(key), amount)
        except Exception as exc:
            self._on_error("incr_by", key, exc)
            return 0

    async def decr(self, key: str) -> int:
        return await self.decr_by(key, 1)

    async def decr_by(self, key: str, amount: int) -> int:
        await self.connect()
        try:
            return await self.client.decrby(self.keys.namespaced(key), amount)
        except Exception as exc:
            self._on_error("decr_by", key, exc)
            return 0

    async def expire(self, key: str, seconds: int) -> bool:
        await self.connect()
        try:
            return bool(await self.client.expire(self.keys.namespaced(key), seconds))
        except Exception as exc:
            self._on_error("expire", key, exc)
            return False

    async def ttl(self, key: str) -> int:
        """Seconds to live; -1 without expiry or on error, -2 when absent."""
        await self.connect()
        try:
            return await self.client.ttl(self.keys.namespaced(key))
        except Exception as exc:
            self._on_error("ttl", key, exc)
            return -1

    async def exists(self, key: str) -> bool:
        await self.connect()
        try:
            return await self.client.exists(self.keys.namespaced(key)) == 1
        except Exception as exc:
            self._on_error("exists", key, exc)
            return False

    # ------------------------------------------------------------------
    # Sorted sets
    # ------------------------------------------------------------------

    async def zadd(self, key: str, score: float, member: str) -> int:
        await self.connect()
        try:
            return await self.client.zadd(self.keys.namespaced(key), {member: score})
        except Exception as exc:
            self._on_error("zadd", key, exc)
            return 0

    async def zremrangebyscore(self, key: str, min_score: float | str, max_score: float | str) -> int:
        await self.connect()
        try:
            return await self.client.zremrangebyscore(self.keys.namespaced(key), min_score, max_score)
        except Exception as exc:
            self._on_error("zremrangebyscore", key, exc)
            return 0

    async def zcard(self, key: str) -> int:
        await self.connect()
        try:
            return await self.client.zcard(self.keys.namespaced(key))
        except Exception as exc:
            self._on_error("zcard", key, exc)
            return 0

    async def zcount(self, key: str, min_score: float | str, max_score: float | str) -> int:
        await self.connect()
        try:
            return await self.client.zcount(self.keys.namespaced(key), min_score, max_score)
        except Exception as exc:
            self._on_error("zcount", key, exc)
            return 0

    async def zrange(self, key: str, start: int, stop: int) -> list[str]:
        await self.connect()
        try:
            return await self.client.zrange(self.keys.namespaced(key), start, stop)
        except Exception as exc:
            self._on_error("zrange", key, exc)
            return []

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def ping(self) -> bool:
        """PING the server. Unlike the other operations, errors propagate."""
        await self.connect()
        return await self.client.ping()

    async def health_check(self) -> HealthStatus:
        start = time.perf_counter()
        try:
            await self.ping()
        except Exception as exc:
            return HealthStatus(ok=False, latency_ms=(time.perf_counter() - start) * 1000, error=str(exc))
        return HealthStatus(ok=True, latency_ms=(time.perf_counter() - start) * 1000)


# ----------------------------------------------------------------------
# Process-wide default store
# ----------------------------------------------------------------------

_store: RedisStore | None = None


async def connect_redis(settings: RedisSettings | None = None) -> RedisStore | None:
    """Create and connect the default store. Returns None if unavailable."""
    global _store
    if settings is None:
        from core.config import settings as app_settings

        settings = app_settings.redis
    store = RedisStore(settings)
    try:
        await store.connect()
    except ConnectionExhaustedError:
        logger.warning("Redis unavailable at %s, using in-memory fallback", settings.url)
        await store.client.aclose()
        _store = None
        return None
    _store = store
    return _store


async def close_redis() -> None:
    """Disconnect the default store."""
    global _store
    if _store is not None:
        await _store.disconnect()
        _store = None
        logger.info("Redis connection closed")


def get_redis() -> RedisStore | None:
    """Return the default store (or None if unavailable)."""
    return _store


async def ping() -> bool:
    """Health check: return True if the default store responds to PING."""
    if _store is None:
        return False
    return (await _store.health_check()).ok
