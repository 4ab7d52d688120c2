"""
Unit Tests for QueryCache

Tests TTL validity, lazy expiry, the capacity bound and invalidation.
"""

import pytest

from querysync.infrastructure.cache.key_builder import KeyPattern, build_key
from querysync.infrastructure.cache.query_cache import CacheEntry, QueryCache


@pytest.mark.unit
class TestTTL:
    def test_entry_valid_until_ttl_boundary(self, cache, clock):
        cache.set("k", "v", ttl_ms=5_000)

        assert cache.get("k").data == "v"
        clock.advance(5_000)
        assert cache.get("k").data == "v"

    def test_expired_entry_is_miss_and_removed(self, cache, clock):
        cache.set("k", "v", ttl_ms=5_000)
        clock.advance(5_001)

        assert cache.get("k") is None
        assert "k" not in cache.keys()
        assert cache.stats()["expirations"] == 1

    def test_default_ttl_used(self, clock):
        cache = QueryCache(default_ttl_ms=1_000, clock=clock)
        entry = cache.set("k", 1)
        assert entry.ttl == 1_000

    def test_contains_checks_validity(self, cache, clock):
        cache.set("k", 1, ttl_ms=10)
        assert "k" in cache
        clock.advance(11)
        assert "k" not in cache

    def test_peek_ignores_ttl(self, cache, clock):
        cache.set("k", 1, ttl_ms=10)
        clock.advance(100)
        assert cache.peek("k").data == 1

    def test_entry_staleness(self, clock):
        entry = CacheEntry("k", 1, timestamp=clock(), ttl=10_000)
        assert not entry.is_stale(clock() + 500, 1_000)
        assert entry.is_stale(clock() + 1_001, 1_000)


@pytest.mark.unit
class TestBound:
    def test_oldest_entries_evicted(self, clock):
        cache = QueryCache(max_entries=3, clock=clock)
        for key in ("a", "b", "c", "d"):
            cache.set(key, key)
            clock.advance(1)

        assert sorted(cache.keys()) == ["b", "c", "d"]

    def test_expired_entries_swept_first(self, clock):
        cache = QueryCache(max_entries=3, clock=clock)
        cache.set("short", 1, ttl_ms=5)
        cache.set("a", 1)
        cache.set("b", 1)
        clock.advance(10)
        cache.set("c", 1)

        assert sorted(cache.keys()) == ["a", "b", "c"]

    def test_sweep_expired(self, cache, clock):
        cache.set("old", 1, ttl_ms=5)
        cache.set("new", 1, ttl_ms=1_000)
        clock.advance(10)

        assert cache.sweep_expired() == ["old"]
        assert cache.keys() == ["new"]


@pytest.mark.unit
class TestInvalidation:
    def test_invalidate_exact_key(self, cache):
        cache.set("k", 1)
        assert cache.invalidate("k") == ["k"]
        assert cache.invalidate("k") == []

    def test_invalidate_pattern(self, cache):
        cache.set(build_key("users", "org1"), 1)
        cache.set(build_key("users", "org1", "detail"), 2)
        cache.set(build_key("users", "org2"), 3)

        evicted = cache.invalidate(KeyPattern.of("users", "org1"))

        assert len(evicted) == 2
        assert cache.keys() == [build_key("users", "org2")]

    def test_invalidate_many(self, cache):
        cache.set(build_key("a", 1), 1)
        cache.set(build_key("b", 1), 1)
        cache.set(build_key("c", 1), 1)

        evicted = cache.invalidate_many([KeyPattern.of("a"), build_key("b", 1)])
        assert sorted(evicted) == sorted([build_key("a", 1), build_key("b", 1)])

    def test_evict_older_than_respects_keep(self, cache, clock):
        cache.set("observed", 1)
        cache.set("unobserved", 1)
        clock.advance(2_000)
        cache.set("recent", 1)

        evicted = cache.evict_older_than(1_000, keep=lambda key: key == "observed")

        assert evicted == ["unobserved"]
        assert sorted(cache.keys()) == ["observed", "recent"]

    def test_restore_keeps_original_timestamp(self, cache, clock):
        entry = cache.set("k", 1)
        clock.advance(500)
        cache.set("k", 2)

        cache.restore(entry)

        restored = cache.peek("k")
        assert restored.data == 1
        assert restored.timestamp == entry.timestamp

    def test_clear(self, cache):
        cache.set("a", 1)
        cache.clear()
        assert len(cache) == 0


@pytest.mark.unit
class TestObservability:
    def test_hit_and_miss_counters(self, cache, metrics):
        cache.set("k", 1)
        cache.get("k")
        cache.get("missing")

        stats = cache.stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 0.5
        assert metrics.sample("querysync_cache_hits_total") == 1.0
        assert metrics.sample("querysync_cache_entries") == 1.0
