"""
test_cache_store.py — TTL cache driven by a fake clock.
"""

import asyncio

import pytest

from smeta.services.cache_store import CacheStore


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


class TestCacheStore:

    def test_entries_expire_after_ttl(self, clock):
        cache = CacheStore(ttl_seconds=10, clock=clock)
        cache.set("k", "v")
        clock.now += 9.9
        assert cache.get("k") == "v"
        clock.now += 0.1
        assert cache.get("k") is None
        assert "k" not in cache

    def test_non_positive_ttl_rejected(self):
        with pytest.raises(ValueError):
            CacheStore(ttl_seconds=0)

    def test_purge_expired_counts_removed(self, clock):
        cache = CacheStore(ttl_seconds=5, clock=clock)
        cache.set("a", 1)
        clock.now += 3
        cache.set("b", 2)
        clock.now += 3
        assert cache.purge_expired() == 1
        assert len(cache) == 1

    def test_invalidate_and_clear(self, clock):
        cache = CacheStore(ttl_seconds=5, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.invalidate("a")
        cache.invalidate("missing")
        assert cache.get("a", "default") == "default"
        cache.clear()
        assert len(cache) == 0

    def test_get_or_load_caches_values_but_not_none(self, clock):
        cache = CacheStore(ttl_seconds=5, clock=clock)
        calls = []

        async def loader():
            calls.append(1)
            return None if len(calls) == 1 else "loaded"

        async def scenario():
            first = await cache.get_or_load("k", loader)
            second = await cache.get_or_load("k", loader)
            third = await cache.get_or_load("k", loader)
            return first, second, third

        assert asyncio.run(scenario()) == (None, "loaded", "loaded")
        assert len(calls) == 2
