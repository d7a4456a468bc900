"""Unit tests for the two-tier generation cache and its sweeper."""

import pytest

from cellforge.cache.memory_cache import MemoryCache
from cellforge.cache.persistent_cache import PersistentCache
from cellforge.cache.two_tier_cache import CacheSweeper, TwoTierCache, build_generation_cache

pytestmark = pytest.mark.unit


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache_path(tmp_path):
    return tmp_path / "prompt-cache.jsonl"


def _build(cache_path, clock, flush_every=100, memory_ttl=60, persisted_ttl=1000):
    return TwoTierCache(
        MemoryCache(max_entries=100, default_ttl=memory_ttl, clock=clock),
        PersistentCache(cache_path, default_ttl=persisted_ttl, flush_every=flush_every, clock=clock),
    )


@pytest.mark.asyncio
async def test_set_then_get_hits_memory(cache_path, clock):
    cache = _build(cache_path, clock)
    await cache.set("k", "v")

    lookup = await cache.get("k")
    assert lookup.hit and lookup.value == "v"
    stats = cache.stats()
    assert stats["memory_hits"] == 1
    assert stats["persistent_hits"] == 0
    assert stats["sets"] == 1


@pytest.mark.asyncio
async def test_persisted_hit_is_promoted(cache_path, clock):
    first = _build(cache_path, clock)
    await first.set("k", "v")
    await first.close()

    second = _build(cache_path, clock)
    assert (await second.get("k")).value == "v"
    assert (await second.get("k")).value == "v"

    stats = second.stats()
    assert stats["persistent_hits"] == 1
    assert stats["memory_hits"] == 1
    assert stats["promotions"] == 1


@pytest.mark.asyncio
async def test_promotion_never_outlives_persisted_expiry(cache_path, clock):
    cache = _build(cache_path, clock, memory_ttl=600, persisted_ttl=100)
    cache.persistent.set("k", "v")
    clock.now += 90

    assert (await cache.get("k")).hit
    clock.now += 10
    assert not (await cache.get("k")).hit


@pytest.mark.asyncio
async def test_miss_counts(cache_path, clock):
    cache = _build(cache_path, clock)
    assert not (await cache.get("missing")).hit
    assert cache.stats()["misses"] == 1


@pytest.mark.asyncio
async def test_flush_happens_after_k_writes(cache_path, clock):
    cache = _build(cache_path, clock, flush_every=3)
    await cache.set("a", "1")
    await cache.set("b", "2")
    assert not cache_path.exists()

    await cache.set("c", "3")
    assert cache_path.exists()
    assert cache.stats()["pending_writes"] == 0


@pytest.mark.asyncio
async def test_delete_and_clear_cover_both_tiers(cache_path, clock):
    cache = _build(cache_path, clock)
    await cache.set("a", "1")
    await cache.set("b", "2")

    assert await cache.delete("a")
    assert not await cache.has("a")
    await cache.clear()
    assert not await cache.has("b")
    assert cache.stats()["size"] == 0


@pytest.mark.asyncio
async def test_memory_only_cache():
    cache = TwoTierCache(MemoryCache())
    await cache.set("k", "v")
    assert (await cache.get("k")).hit
    assert await cache.flush() is False
    assert "persistent" not in cache.stats()


@pytest.mark.asyncio
async def test_sweeper_purges_expired_entries(cache_path, clock):
    cache = _build(cache_path, clock, memory_ttl=10, persisted_ttl=10)
    await cache.set("k", "v")
    clock.now += 11

    sweeper = CacheSweeper(cache, interval=3600)
    assert await sweeper.sweep_once() == (1, 1)
    assert cache.stats()["size"] == 0


@pytest.mark.asyncio
async def test_sweeper_start_and_stop(cache_path, clock):
    sweeper = CacheSweeper(_build(cache_path, clock), interval=3600)
    sweeper.start()
    assert sweeper.running
    await sweeper.stop()
    assert not sweeper.running


def test_build_generation_cache_uses_given_path(cache_path):
    cache = build_generation_cache(cache_path)
    assert cache.persistent is not None
    assert cache.persistent.path == cache_path
    assert build_generation_cache(persistent=False).persistent is None
