# Shared pytest fixtures

import fnmatch
import time

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from cache.redis_client import RedisStore
from core.config import RedisSettings
from core.rate_limiter import LocalWindowTracker


class FakeRedis:
    """In-memory stand-in for the subset of ``redis.asyncio.Redis`` we use.

    Set ``fail = True`` to make every command raise ``ConnectionError``.
    """

    def __init__(self):
        self.strings: dict[str, str] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.expiry: dict[str, int] = {}
        self.fail = False
        self.calls: list[str] = []
        self.closed = False
        self._scan_snapshot: list[str] = []

    def _check(self, name):
        self.calls.append(name)
        if self.fail:
            raise RedisConnectionError("Connection refused")

    def _keys(self):
        return list(self.strings) + list(self.zsets)

    async def ping(self):
        self._check("ping")
        return True

    async def aclose(self):
        self.closed = True

    async def get(self, key):
        self._check("get")
        return self.strings.get(key)

    async def mget(self, keys):
        self._check("mget")
        return [self.strings.get(k) for k in keys]

    async def set(self, key, value, ex=None):
        self._check("set")
        self.strings[key] = value
        if ex is not None:
            self.expiry[key] = ex
        else:
            self.expiry.pop(key, None)
        return True

    async def setex(self, key, seconds, value):
        return await self.set(key, value, ex=seconds)

    async def delete(self, *keys):
        self._check("delete")
        deleted = 0
        for k in keys:
            if self.strings.pop(k, None) is not None or self.zsets.pop(k, None) is not None:
                deleted += 1
            self.expiry.pop(k, None)
        return deleted

    async def incrby(self, key, amount=1):
        self._check("incrby")
        value = int(self.strings.get(key, 0)) + amount
        self.strings[key] = str(value)
        return value

    async def incr(self, key, amount=1):
        return await self.incrby(key, amount)

    async def decrby(self, key, amount=1):
        return await self.incrby(key, -amount)

    async def expire(self, key, seconds):
        self._check("expire")
        if key not in self.strings and key not in self.zsets:
            return False
        self.expiry[key] = seconds
        return True

    async def ttl(self, key):
        self._check("ttl")
        if key not in self.strings and key not in self.zsets:
            return -2
        return self.expiry.get(key, -1)

    async def exists(self, key):
        self._check("exists")
        return int(key in self.strings or key in self.zsets)

    async def zadd(self, key, mapping):
        self._check("zadd")
        zset = self.zsets.setdefault(key, {})
        added = sum(1 for m in mapping if m not in zset)
        zset.update(mapping)
        return added

    @staticmethod
    def _bound(value, default):
        if value in ("-inf", "+inf"):
            return float(value), False
        if isinstance(value, str) and value.startswith("("):
            return float(value[1:]), True
        return float(value if value is not None else default), False

    def _in_range(self, score, min_score, max_score):
        lo, lo_open = self._bound(min_score, "-inf")
        hi, hi_open = self._bound(max_score, "+inf")
        above = score > lo if lo_open else score >= lo
        below = score < hi if hi_open else score <= hi
        return above and below

    async def zremrangebyscore(self, key, min_score, max_score):
        self._check("zremrangebyscore")
        zset = self.zsets.get(key, {})
        doomed = [m for m, s in zset.items() if self._in_range(s, min_score, max_score)]
        for m in doomed:
            del zset[m]
        return len(doomed)

    async def zcard(self, key):
        self._check("zcard")
        return len(self.zsets.get(key, {}))

    async def zcount(self, key, min_score, max_score):
        self._check("zcount")
        return sum(1 for s in self.zsets.get(key, {}).values() if self._in_range(s, min_score, max_score))

    async def zrange(self, key, start, stop):
        self._check("zrange")
        members = [m for m, _ in sorted(self.zsets.get(key, {}).items(), key=lambda item: item[1])]
        stop = len(members) if stop == -1 else stop + 1
        return members[start:stop]

    async def scan(self, cursor=0, match=None, count=None):
        # COUNT bounds the keys examined per call; MATCH filters afterwards
        self._check("scan")
        if cursor == 0:
            self._scan_snapshot = sorted(self._keys())
        count = count or 10
        live = set(self._keys())
        batch = [
            k for k in self._scan_snapshot[cursor:cursor + count]
            if k in live and (match is None or fnmatch.fnmatchcase(k, match))
        ]
        next_cursor = cursor + count
        return (0 if next_cursor >= len(self._scan_snapshot) else next_cursor), batch

    def pipeline(self, transaction=True):
        return FakePipeline(self)


class FakePipeline:
    """Queues commands and runs them back to back on ``execute``."""

    def __init__(self, redis):
        self._redis = redis
        self._commands = []

    def __getattr__(self, name):
        def queue(*args, **kwargs):
            self._commands.append((name, args, kwargs))
            return self
        return queue

    async def execute(self):
        self._redis._check("multi")
        results = []
        for name, args, kwargs in self._commands:
            results.append(await getattr(self._redis, name)(*args, **kwargs))
        self._commands = []
        return results


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def redis_settings():
    return RedisSettings(prefix="test:", default_ttl=3600, max_reconnect_attempts=0)


@pytest.fixture
def store(fake_redis, redis_settings):
    """RedisStore bound to the fake client (not yet connected)."""
    return RedisStore(redis_settings, client=fake_redis)


@pytest.fixture
def tracker():
    return LocalWindowTracker(sweep_probability=0.0)


@pytest.fixture
def now():
    return int(time.time())
