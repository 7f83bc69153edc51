"""Bulk invalidation by glob pattern using SCAN (non-blocking, never KEYS)."""

from __future__ import annotations

import logging

from cache.redis_client import RedisStore

logger = logging.getLogger(__name__)


class PatternInvalidator:
    """Deletes every key under the store's namespace matching a glob pattern."""

    def __init__(self, store: RedisStore, batch_size: int | None = None):
        self.store = store
        self.batch_size = batch_size or store.settings.scan_batch_size

    async def invalidate_pattern(self, pattern: str) -> int:
        """Delete matching keys batch by batch. Returns the number deleted."""
        await self.store.connect()
        match = self.store.keys.pattern(pattern)
        client = self.store.client
        cursor = 0
        deleted = 0
        try:
            while True:
                cursor, keys = await client.scan(cursor=cursor, match=match, count=self.batch_size)
                if keys:
                    deleted += await client.delete(*keys)
                if int(cursor) == 0:
                    break
        except Exception as exc:
            logger.warning("Redis invalidate_pattern error for %s: %s", pattern, exc, exc_info=exc)
            return 0
        logger.debug("Invalidated %d keys matching %s", deleted, match)
        return deleted

    async def flush_prefix(self) -> int:
        """Delete everything under the configured namespace."""
        return await self.invalidate_pattern("*")
