"""Tests for the flag cache."""

from __future__ import annotations

import pytest

from flageval.core.caching import EvictionStrategy, FlagCache
from flageval.core.feature_flags.context import EvaluationContext
from flageval.core.feature_flags.types import EvaluationReason, EvaluationResult, EvaluationSource


class TestFlagCacheBasics:
    """Tests for get/set/delete."""

    def test_set_and_get(self, clock):
        """Test a stored value can be read back."""
        cache = FlagCache(clock=clock)
        cache.set("newDashboardUi", True)
        assert cache.get("newDashboardUi") is True

    def test_miss_returns_none(self, clock):
        """Test a missing key returns None and counts as a miss."""
        cache = FlagCache(clock=clock)
        assert cache.get("missing") is None
        assert cache.get_stats().misses == 1

    def test_keys_are_namespaced(self, clock):
        """Test keys are stored under prefix and namespace."""
        cache = FlagCache(key_prefix="flags", namespace="prod", clock=clock)
        cache.set("a", 1)
        assert cache._full_key("a") == "flags:prod:a"
        assert cache.keys() == ["a"]

    def test_delete(self, clock):
        """Test delete reports whether anything was removed."""
        cache = FlagCache(clock=clock)
        cache.set("a", 1)
        assert cache.delete("a") is True
        assert cache.delete("a") is False
        assert cache.get("a") is None

    def test_clear(self, clock):
        """Test clear empties the cache."""
        cache = FlagCache(clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.clear()
        assert cache.get_stats().size == 0

    def test_invalid_size(self):
        """Test a cache must hold at least one entry."""
        with pytest.raises(ValueError):
            FlagCache(max_size=0)


class TestFlagCacheExpiry:
    """Tests for TTL handling."""

    def test_entry_expires_at_ttl(self, clock):
        """Test an entry is gone once its TTL has elapsed."""
        cache = FlagCache(ttl_seconds=5, clock=clock)
        cache.set("a", 1)
        clock.advance(4.9)
        assert cache.get("a") == 1
        clock.advance(0.1)
        assert cache.get("a") is None
        assert cache.get_stats().expirations == 1

    def test_per_entry_ttl(self, clock):
        """Test an explicit TTL overrides the default."""
        cache = FlagCache(ttl_seconds=300, clock=clock)
        cache.set("short", 1, ttl=1)
        clock.advance(2)
        assert cache.get("short") is None

    def test_has_honours_expiry_without_stats(self, clock):
        """Test has() drops expired entries and leaves hit counters alone."""
        cache = FlagCache(ttl_seconds=1, clock=clock)
        cache.set("a", 1)
        assert cache.has("a") is True
        clock.advance(1)
        assert cache.has("a") is False
        stats = cache.get_stats()
        assert stats.hits == 0
        assert stats.misses == 0


class TestFlagCacheEviction:
    """Tests for eviction strategies."""

    def test_lru_evicts_least_recently_used(self, clock):
        """Test LRU keeps recently read entries."""
        cache = FlagCache(max_size=2, strategy=EvictionStrategy.LRU, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)
        assert cache.has("a")
        assert not cache.has("b")
        assert cache.get_stats().evictions == 1

    def test_fifo_evicts_oldest(self, clock):
        """Test FIFO ignores reads."""
        cache = FlagCache(max_size=2, strategy=EvictionStrategy.FIFO, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)
        assert not cache.has("a")
        assert cache.has("b")
        assert cache.has("c")

    def test_lifo_evicts_newest(self, clock):
        """Test LIFO drops the most recent insertion."""
        cache = FlagCache(max_size=2, strategy=EvictionStrategy.LIFO, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("c", 3)
        assert cache.has("a")
        assert not cache.has("b")
        assert cache.has("c")

    def test_overwrite_does_not_evict(self, clock):
        """Test replacing an existing key never evicts."""
        cache = FlagCache(max_size=2, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("a", 10)
        assert cache.get_stats().evictions == 0
        assert cache.get("a") == 10

    def test_size_never_exceeds_max(self, clock):
        """Test the cache stays bounded."""
        cache = FlagCache(max_size=5, clock=clock)
        for i in range(50):
            cache.set(f"k{i}", i)
        assert cache.get_stats().size == 5


class TestFlagCacheInvalidation:
    """Tests for per-flag invalidation."""

    def test_invalidate_flag_removes_all_contexts(self, clock):
        """Test every evaluation entry of a flag is removed."""
        cache = FlagCache(clock=clock)
        ctx_a = EvaluationContext(user={"user_id": "a"})
        ctx_b = EvaluationContext(user={"user_id": "b"})
        cache.set(FlagCache.evaluation_key("newDashboardUi", ctx_a), True)
        cache.set(FlagCache.evaluation_key("newDashboardUi", ctx_b), False)
        cache.set(FlagCache.evaluation_key("maintenanceMode", ctx_a), False)
        cache.set("newDashboardUi:raw", True)

        assert cache.invalidate_flag("newDashboardUi") == 3
        assert cache.keys() == [FlagCache.evaluation_key("maintenanceMode", ctx_a)]

    def test_invalidate_does_not_match_prefix_of_other_flag(self, clock):
        """Test invalidating 'beta' leaves 'betaFeatures' alone."""
        cache = FlagCache(clock=clock)
        ctx = EvaluationContext()
        cache.set(FlagCache.evaluation_key("betaFeatures", ctx), True)
        assert cache.invalidate_flag("beta") == 0


class TestFlagCacheStatsAndHealth:
    """Tests for statistics and health."""

    def test_hit_rate(self, clock):
        """Test hit rate is hits over lookups."""
        cache = FlagCache(clock=clock)
        cache.set("a", 1)
        cache.get("a")
        cache.get("a")
        cache.get("a")
        cache.get("b")
        stats = cache.get_stats()
        assert stats.hits == 3
        assert stats.misses == 1
        assert stats.hit_rate == pytest.approx(0.75)

    def test_stats_are_a_snapshot(self, clock):
        """Test mutating the returned stats does not affect the cache."""
        cache = FlagCache(clock=clock)
        stats = cache.get_stats()
        stats.hits = 99
        assert cache.get_stats().hits == 0

    def test_reset_stats(self, clock):
        """Test counters reset while entries are kept."""
        cache = FlagCache(clock=clock)
        cache.set("a", 1)
        cache.get("a")
        cache.reset_stats()
        stats = cache.get_stats()
        assert stats.hits == 0
        assert stats.size == 1

    def test_empty_cache_is_healthy(self, clock):
        """Test no traffic is not reported as a low hit rate."""
        health = FlagCache(clock=clock).get_health()
        assert health.healthy is True
        assert health.issues == []

    def test_low_hit_rate_unhealthy(self, clock):
        """Test a hit rate below 50% is an issue."""
        cache = FlagCache(clock=clock)
        cache.get("a")
        cache.get("b")
        health = cache.get_health()
        assert health.healthy is False
        assert any("low hit rate" in issue for issue in health.issues)

    def test_near_capacity_unhealthy(self, clock):
        """Test a cache at 90% capacity is an issue."""
        cache = FlagCache(max_size=10, clock=clock)
        for i in range(9):
            cache.set(f"k{i}", i)
        health = cache.get_health()
        assert any("near capacity" in issue for issue in health.issues)


class TestEvaluationResultCaching:
    """Tests for evaluation result helpers."""

    def test_round_trip_by_context(self, clock):
        """Test results are cached per flag and context."""
        cache = FlagCache(clock=clock)
        ctx = EvaluationContext(user={"user_id": "u1"})
        result = EvaluationResult(
            flag_key="newDashboardUi",
            value=True,
            reason=EvaluationReason.STATIC,
            source=EvaluationSource.PROVIDER,
            context=ctx,
        )
        cache.cache_evaluation_result("newDashboardUi", ctx, result)
        assert cache.get_cached_evaluation_result("newDashboardUi", ctx) is result
        other = EvaluationContext(user={"user_id": "u2"})
        assert cache.get_cached_evaluation_result("newDashboardUi", other) is None
