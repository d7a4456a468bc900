"""Shared cache value types."""

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, NamedTuple

Clock = Callable[[], float]
CacheValue = str | bytes


@dataclass(slots=True)
class CacheEntry:
    """A cached generation result with its own expiry."""

    key: str
    value: CacheValue
    created_at: float
    ttl: float

    def is_expired(self, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return now - self.created_at >= self.ttl

    def expires_at(self) -> float:
        return self.created_at + self.ttl


class CacheLookup(NamedTuple):
    """Result of a cache read. ``hit`` disambiguates a miss from a falsy value."""

    value: CacheValue | None
    hit: bool


@dataclass
class CacheStats:
    """Counters for one cache tier."""

    hits: int = 0
    misses: int = 0
    sets: int = 0
    evictions: int = 0
    expirations: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
            "evictions": self.evictions,
            "expirations": self.expirations,
            "hit_rate": round(self.hit_rate, 4),
        }
