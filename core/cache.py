"""Cache value model shared by the Redis-backed cache layer.

Values travel to Redis as JSON text. A soft-deleted key holds a tombstone,
which on the wire is the JSON string ``"__DELETED__"`` so that readers that
only understand plain JSON still see a recognizable marker.

Usage:
    from core.cache import decode_entry, encode_value, Present, TOMBSTONE

    raw = encode_value({"data": 1})
    entry = decode_entry(raw)        # Present(value={"data": 1})
"""

from __future__ import annotations

import json
import math
import time
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Union

DELETED = "__DELETED__"
_DELETED_WIRE = json.dumps(DELETED)


@dataclass(frozen=True)
class Present:
    """A live cache entry holding the decoded value."""

    value: Any


@dataclass(frozen=True)
class Tombstone:
    """A soft-deleted entry: the key exists but reads back as not found."""

    def __repr__(self) -> str:
        return "TOMBSTONE"


TOMBSTONE = Tombstone()

StoredValue = Union[Present, Tombstone]


def encode_value(value: Any) -> str:
    """Serialize a value for storage. Tombstones map to the wire marker."""
    if isinstance(value, Tombstone):
        return _DELETED_WIRE
    return json.dumps(value, default=str)


def parse_value(raw: str | bytes) -> Any:
    """Decode stored JSON; fall back to the raw text when it is not JSON."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def decode_entry(raw: str | bytes | None) -> StoredValue | None:
    """Turn a raw Redis value into ``Present``, ``TOMBSTONE`` or ``None``."""
    if raw is None:
        return None
    value = parse_value(raw)
    if value == DELETED:
        return TOMBSTONE
    return Present(value)


def resolve_ttl(ttl: int | timedelta | Mapping[str, int] | None, default: int) -> int:
    """Resolve a TTL option to whole seconds.

    Accepts seconds, a ``timedelta``, or a mapping with one of ``EX``
    (seconds), ``PX`` (milliseconds), ``EXAT`` (epoch seconds) or ``PXAT``
    (epoch milliseconds). ``None`` or an empty mapping yields *default*.
    """
    if ttl is None:
        return default
    if isinstance(ttl, timedelta):
        return math.ceil(ttl.total_seconds())
    if isinstance(ttl, Mapping):
        if ttl.get("EX") is not None:
            return int(ttl["EX"])
        if ttl.get("PX") is not None:
            return math.ceil(ttl["PX"] / 1000)
        if ttl.get("EXAT") is not None:
            return max(0, int(ttl["EXAT"]) - int(time.time()))
        if ttl.get("PXAT") is not None:
            return max(0, math.ceil((ttl["PXAT"] - time.time() * 1000) / 1000))
        return default
    return int(ttl)


@dataclass(frozen=True)
class StoreResult:
    """Outcome of a write that never raises.

    ``error`` carries the diagnostic when the store call failed; ``count`` is
    the number of keys removed by a delete.
    """

    ok: bool
    count: int = 0
    error: str | None = None

    def __bool__(self) -> bool:
        return self.ok

    @classmethod
    def failed(cls, exc: BaseException) -> StoreResult:
        return cls(ok=False, error=f"{type(exc).__name__}: {exc}")


@dataclass(frozen=True)
class CacheStats:
    """Snapshot of process-local hit/miss counters."""

    hits: int = 0
    misses: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    def to_dict(self) -> dict[str, float]:
        return {"hits": self.hits, "misses": self.misses, "hit_rate": self.hit_rate}
