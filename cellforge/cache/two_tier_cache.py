"""
Two-Tier Generation Cache
=========================

Architecture:
    memory (MemoryCache)  ->  persisted (PersistentCache)  ->  miss

Read path checks memory first, then the persisted tier; a persisted hit is
promoted into memory. Writes go to both tiers. When the persisted tier has
accumulated enough writes its flush runs in a worker thread so the event loop
never blocks on disk I/O.

Usage:
    cache = get_generation_cache()
    lookup = await cache.get(key)
    if not lookup.hit:
        await cache.set(key, value)
"""

import asyncio
import logging
import threading
from contextlib import suppress
from pathlib import Path
from typing import Any

from cellforge.cache.base import CacheLookup, CacheValue
from cellforge.cache.memory_cache import MemoryCache
from cellforge.cache.persistent_cache import PersistentCache
from cellforge.core.config import settings
from cellforge.core.exceptions import PersistenceError

logger = logging.getLogger(__name__)


class TwoTierCache:
    """Memory tier in front of a persisted tier."""

    def __init__(self, memory: MemoryCache, persistent: PersistentCache | None = None):
        self.memory = memory
        self.persistent = persistent
        self.promotions = 0
        self.memory_hits = 0
        self.persistent_hits = 0
        self.misses = 0
        self.sets = 0

    # =========================================================================
    # CONTRACT
    # =========================================================================

    async def get(self, key: str) -> CacheLookup:
        return self.get_sync(key)

    def get_sync(self, key: str) -> CacheLookup:
        lookup = self.memory.get(key)
        if lookup.hit:
            self.memory_hits += 1
            return lookup

        if self.persistent is not None:
            entry = self.persistent.get_entry(key)
            if entry is not None:
                self.persistent_hits += 1
                self.promotions += 1
                # Promoted entries never outlive their persisted expiry
                remaining = entry.expires_at() - self.persistent.clock()
                self.memory.set(key, entry.value, ttl=min(self.memory.default_ttl, remaining))
                return CacheLookup(entry.value, True)

        self.misses += 1
        return CacheLookup(None, False)

    async def set(self, key: str, value: CacheValue, ttl: float | None = None) -> None:
        if self.set_sync(key, value, ttl):
            await self.flush()

    def set_sync(self, key: str, value: CacheValue, ttl: float | None = None) -> bool:
        """Write both tiers. Returns True when the persisted tier wants a flush."""
        self.sets += 1
        self.memory.set(key, value, ttl=None if ttl is None else min(ttl, self.memory.default_ttl))
        if self.persistent is None:
            return False
        return self.persistent.set(key, value, ttl=ttl)

    async def has(self, key: str) -> bool:
        if self.memory.has(key):
            return True
        return self.persistent is not None and self.persistent.has(key)

    async def delete(self, key: str) -> bool:
        removed = self.memory.delete(key)
        if self.persistent is not None:
            removed = self.persistent.delete(key) or removed
        return removed

    async def clear(self) -> None:
        self.memory.clear()
        if self.persistent is not None:
            self.persistent.clear()
            await self.flush()

    def stats(self) -> dict[str, Any]:
        hits = self.memory_hits + self.persistent_hits
        size = self.persistent.size() if self.persistent is not None else self.memory.size()
        stats: dict[str, Any] = {
            "hits": hits,
            "misses": self.misses,
            "sets": self.sets,
            "size": size,
            "memory_hits": self.memory_hits,
            "persistent_hits": self.persistent_hits,
            "promotions": self.promotions,
            "memory": self.memory.get_stats(),
        }
        if self.persistent is not None:
            stats["persistent"] = self.persistent.get_stats()
            stats["pending_writes"] = self.persistent.pending_writes
            stats["corrupted_records"] = self.persistent.corrupted_records
        return stats

    # =========================================================================
    # MAINTENANCE
    # =========================================================================

    async def flush(self) -> bool:
        """Flush the persisted tier off the event loop."""
        if self.persistent is None:
            return False
        return await asyncio.to_thread(self.persistent.flush)

    def purge_expired(self) -> tuple[int, int]:
        """Drop expired entries from both tiers. Returns (memory, persisted) counts."""
        memory_removed = self.memory.purge_expired()
        persisted_removed = self.persistent.purge_expired() if self.persistent else 0
        return memory_removed, persisted_removed

    async def close(self) -> None:
        await self.flush()
        logger.info("[TwoTierCache] Closed")


class CacheSweeper:
    """Background task that purges expired entries on an interval."""

    def __init__(self, cache: TwoTierCache, interval: float = 300):
        self.cache = cache
        self.interval = interval
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="cache-sweeper")
        logger.info(f"[CacheSweeper] Started (interval={self.interval}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("[CacheSweeper] Stopped")

    async def sweep_once(self) -> tuple[int, int]:
        memory_removed, persisted_removed = self.cache.purge_expired()
        if persisted_removed:
            await self.cache.flush()
        if memory_removed or persisted_removed:
            logger.info(
                f"[CacheSweeper] Purged {memory_removed} memory and "
                f"{persisted_removed} persisted entries"
            )
        return memory_removed, persisted_removed

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.sweep_once()
            except PersistenceError as e:
                logger.error(f"[CacheSweeper] Flush after sweep failed: {e}")


def build_generation_cache(
    cache_path: str | Path | None = None, persistent: bool = True
) -> TwoTierCache:
    """Build a cache from settings."""
    memory = MemoryCache(
        max_entries=settings.MEMORY_CACHE_MAX_ENTRIES,
        default_ttl=settings.MEMORY_CACHE_TTL_SECONDS,
    )
    persisted = None
    if persistent:
        persisted = PersistentCache(
            cache_path or settings.cache_file_path,
            max_entries=settings.PERSISTENT_CACHE_MAX_ENTRIES,
            default_ttl=settings.PERSISTENT_CACHE_TTL_SECONDS,
            flush_every=settings.PERSISTENT_CACHE_FLUSH_EVERY,
        )
    return TwoTierCache(memory, persisted)


# Global instance
_generation_cache: TwoTierCache | None = None
_cache_lock = threading.Lock()


def get_generation_cache() -> TwoTierCache:
    """Get or create the process-wide generation cache."""
    global _generation_cache
    if _generation_cache is None:
        with _cache_lock:
            if _generation_cache is None:
                _generation_cache = build_generation_cache()
    return _generation_cache


async def close_generation_cache() -> None:
    """Flush and drop the process-wide cache."""
    global _generation_cache
    if _generation_cache is not None:
        await _generation_cache.close()
        _generation_cache = None
