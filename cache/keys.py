"""Key namespacing for everything stored in Redis."""

from __future__ import annotations

from dataclasses import dataclass

CACHE_PREFIX = "entrolytics:"


@dataclass(frozen=True)
class KeyNamespace:
    """Maps logical keys to store keys by prepending a fixed prefix.

    Glob patterns are prefixed the same way, so a scan can only ever reach
    keys under this namespace.
    """

    prefix: str = CACHE_PREFIX

    def namespaced(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def pattern(self, pattern: str) -> str:
        return self.namespaced(pattern)
