"""
In-Memory LRU Cache
===================

Process-local tier of the generation cache: bounded entry count, per-entry
TTL, least-recently-used eviction. Expired entries are dropped lazily on read
and in bulk by ``purge_expired``.
"""

import logging
import threading
import time
from collections import OrderedDict
from typing import Any

from cellforge.cache.base import CacheEntry, CacheLookup, CacheStats, CacheValue, Clock

logger = logging.getLogger(__name__)


class MemoryCache:
    """Thread-safe LRU cache with TTL."""

    def __init__(
        self,
        max_entries: int = 50_000,
        default_ttl: float = 3600,
        clock: Clock = time.time,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self.default_ttl = default_ttl
        self.clock = clock
        self._cache: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.RLock()
        self.stats = CacheStats()

    def get(self, key: str) -> CacheLookup:
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                self.stats.misses += 1
                return CacheLookup(None, False)

            if entry.is_expired(self.clock()):
                del self._cache[key]
                self.stats.expirations += 1
                self.stats.misses += 1
                return CacheLookup(None, False)

            self._cache.move_to_end(key)
            self.stats.hits += 1
            return CacheLookup(entry.value, True)

    def peek(self, key: str) -> CacheEntry | None:
        """Return the live entry without touching LRU order or stats."""
        with self._lock:
            entry = self._cache.get(key)
            if entry is None or entry.is_expired(self.clock()):
                return None
            return entry

    def set(
        self,
        key: str,
        value: CacheValue,
        ttl: float | None = None,
    ) -> None:
        entry = CacheEntry(
            key=key,
            value=value,
            created_at=self.clock(),
            ttl=self.default_ttl if ttl is None else ttl,
        )
        with self._lock:
            if key in self._cache:
                del self._cache[key]
            self._cache[key] = entry
            self.stats.sets += 1
            self._evict_if_needed()

    def _evict_if_needed(self) -> None:
        while len(self._cache) > self.max_entries:
            evicted_key, _ = self._cache.popitem(last=False)
            self.stats.evictions += 1
            logger.debug(f"[MemoryCache] Evicted {evicted_key[:12]}")

    def has(self, key: str) -> bool:
        return self.peek(key) is not None

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._cache.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def purge_expired(self) -> int:
        """Drop every expired entry. Returns how many were removed."""
        now = self.clock()
        with self._lock:
            expired = [k for k, e in self._cache.items() if e.is_expired(now)]
            for key in expired:
                del self._cache[key]
            self.stats.expirations += len(expired)
        return len(expired)

    def size(self) -> int:
        with self._lock:
            return len(self._cache)

    def __len__(self) -> int:
        return self.size()

    def get_stats(self) -> dict[str, Any]:
        stats = self.stats.to_dict()
        stats.update({"size": self.size(), "max_entries": self.max_entries})
        return stats
