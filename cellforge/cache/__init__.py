"""Two-tier generation cache."""

from cellforge.cache.base import CacheEntry, CacheLookup, CacheStats
from cellforge.cache.memory_cache import MemoryCache
from cellforge.cache.persistent_cache import PersistentCache
from cellforge.cache.two_tier_cache import (
    CacheSweeper,
    TwoTierCache,
    build_generation_cache,
    close_generation_cache,
    get_generation_cache,
)

__all__ = [
    "CacheEntry",
    "CacheLookup",
    "CacheStats",
    "CacheSweeper",
    "MemoryCache",
    "PersistentCache",
    "TwoTierCache",
    "build_generation_cache",
    "close_generation_cache",
    "get_generation_cache",
]
