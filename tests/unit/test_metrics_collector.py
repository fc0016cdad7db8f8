"""Tests for evaluation metrics, alerts and export."""

from __future__ import annotations

import asyncio
import json

import pytest

from flageval.core.config import AlertThresholds, MetricsSettings
from flageval.core.errors import ProviderError
from flageval.core.feature_flags.context import EvaluationContext
from flageval.core.monitoring import AlertSeverity, AlertType, MetricsCollector, percentile


@pytest.fixture
def collector(clock):
    settings = MetricsSettings(
        retention_period_ms=60 * 60 * 1000,
        aggregation_window_ms=5 * 60 * 1000,
        alert_thresholds=AlertThresholds(latency_ms=100, error_rate=0.05, cache_hit_rate=0.8, evaluation_count=50),
    )
    return MetricsCollector(settings, clock=clock)


class TestPercentile:
    """Tests for the nearest-rank percentile."""

    def test_empty(self):
        """Test an empty series has percentile zero."""
        assert percentile([], 95) == 0.0

    def test_nearest_rank(self):
        """Test index ceil(p/100 * n) - 1 of the sorted values is used."""
        values = list(range(1, 101))
        assert percentile(values, 50) == 50
        assert percentile(values, 95) == 95
        assert percentile(values, 99) == 99
        assert percentile([5, 1, 3], 50) == 3


class TestRecording:
    """Tests for evaluation, error and cache recording."""

    def test_evaluation_aggregates(self, collector):
        """Test counts, latency and usage are aggregated over the window."""
        for latency in (10, 20, 30, 40):
            collector.record_evaluation("newDashboardUi", latency, "provider")
        collector.record_evaluation("maintenanceMode", 5, "cache")

        metrics = collector.get_metrics()
        assert metrics.evaluation_count == 5
        assert metrics.flag_usage == {"newDashboardUi": 4, "maintenanceMode": 1}
        assert metrics.latency_ms.p50 == 20
        assert metrics.latency_ms.max == 40
        assert metrics.error_rate == 0.0

    def test_window_excludes_old_records(self, collector, clock):
        """Test records older than the aggregation window are not counted."""
        collector.record_evaluation("a", 10, "provider")
        clock.advance(301)
        collector.record_evaluation("b", 10, "provider")
        metrics = collector.get_metrics()
        assert metrics.evaluation_count == 1
        assert metrics.flag_usage == {"b": 1}

    def test_errors(self, collector):
        """Test errors count towards the error rate and totals."""
        collector.record_evaluation("f", 10, "provider")
        collector.record_error("f", ProviderError("down", provider_name="flipt"))
        metrics = collector.get_metrics()
        assert metrics.error_count == 1
        assert metrics.error_rate == pytest.approx(0.5)
        assert collector.total_errors() == 1

    def test_cache_hit_rate(self, collector):
        """Test hit rate is computed from hits and misses in the window."""
        collector.record_cache_hit("f")
        collector.record_cache_hit("f")
        collector.record_cache_hit("f")
        collector.record_cache_miss("f")
        assert collector.get_metrics().cache_hit_rate == pytest.approx(0.75)

    def test_usage_stats(self, collector):
        """Test per-flag usage tracks users and reasons."""
        ctx = EvaluationContext(user={"user_id": "u1"}, system={"environment": "test"})
        collector.record_evaluation("f", 10, "provider", ctx, reason="STATIC")
        collector.record_evaluation("f", 30, "provider", ctx, reason="TARGETING_MATCH")
        collector.record_evaluation("g", 10, "provider")

        stats = collector.get_flag_usage_stats()
        assert [s.flag_key for s in stats] == ["f", "g"]
        assert stats[0].avg_latency_ms == pytest.approx(20)
        assert stats[0].top_users == ["u1"]
        assert stats[0].top_reasons == {"STATIC": 1, "TARGETING_MATCH": 1}

    def test_user_metrics_disabled(self, clock):
        """Test user ids are not kept when user metrics are off."""
        collector = MetricsCollector(MetricsSettings(collect_user_metrics=False), clock=clock)
        collector.record_evaluation("f", 1, "provider", EvaluationContext(user={"user_id": "u1"}))
        assert collector.get_flag_usage_stats()[0].top_users == []

    def test_disabled_collects_nothing(self, clock):
        """Test a disabled collector ignores recordings."""
        collector = MetricsCollector(MetricsSettings(enabled=False), clock=clock)
        collector.record_evaluation("f", 1, "provider")
        collector.record_cache_hit("f")
        assert collector.get_metrics().evaluation_count == 0

    def test_circuit_breaker_events(self, collector):
        """Test breaker events are counted per breaker and event."""
        collector.record_circuit_breaker_event({"circuit_breaker": "flipt", "event": "failure"})
        collector.record_circuit_breaker_event({"circuit_breaker": "flipt", "event": "failure"})
        collector.record_circuit_breaker_event({"circuit_breaker": "flipt", "event": "rejected"})
        assert collector.circuit_breaker_counts() == {("flipt", "failure"): 2, ("flipt", "rejected"): 1}

    def test_time_series(self, collector, clock):
        """Test time series can be read from a timestamp."""
        collector.record_evaluation("f", 10, "provider")
        clock.advance(10)
        since = clock()
        collector.record_evaluation("f", 30, "provider")

        series = collector.get_time_series_data("evaluation.latency.f", since)
        assert series["aggregated"]["count"] == 1
        assert series["aggregated"]["max"] == 30
        full = collector.get_time_series_data("evaluation.latency.f")
        assert full["aggregated"]["avg"] == pytest.approx(20)
        assert collector.get_time_series_data("does.not.exist") is None


class TestAlerts:
    """Tests for threshold alerts."""

    def test_latency_alert(self, collector):
        """Test a slow evaluation raises a latency alert; twice the threshold is critical."""
        collector.record_evaluation("f", 150, "provider")
        alerts = collector.get_active_alerts()
        assert len(alerts) == 1
        assert alerts[0].type == AlertType.LATENCY
        assert alerts[0].severity == AlertSeverity.WARNING
        assert alerts[0].flag_key == "f"

        collector.record_evaluation("f", 250, "provider")
        alerts = collector.get_active_alerts()
        assert len(alerts) == 1
        assert alerts[0].severity == AlertSeverity.CRITICAL
        assert alerts[0].current_value == 250

    def test_error_rate_alert(self, collector):
        """Test a flag with a high error rate raises an alert."""
        for _ in range(9):
            collector.record_evaluation("f", 1, "provider")
        collector.record_error("f", RuntimeError("boom"))
        alert = collector.get_active_alerts()[0]
        assert alert.type == AlertType.ERROR_RATE
        assert alert.current_value == pytest.approx(0.1)
        assert alert.severity == AlertSeverity.WARNING

    def test_cache_hit_rate_needs_samples(self, collector):
        """Test few lookups never raise a hit rate alert."""
        for _ in range(10):
            collector.record_cache_miss("f")
        assert collector.get_active_alerts() == []

    def test_cache_hit_rate_alert(self, collector):
        """Test a low hit rate over enough lookups raises a critical alert."""
        for _ in range(20):
            collector.record_cache_miss("f")
        alerts = collector.get_active_alerts()
        assert len(alerts) == 1
        assert alerts[0].type == AlertType.CACHE_HIT_RATE
        assert alerts[0].severity == AlertSeverity.CRITICAL

    def test_evaluation_count_alert(self, collector):
        """Test evaluation volume above the threshold raises an alert."""
        for _ in range(51):
            collector.record_evaluation("f", 1, "provider")
        types = {a.type for a in collector.get_active_alerts()}
        assert AlertType.EVALUATION_COUNT in types

    def test_resolve(self, collector):
        """Test resolving an alert removes it and lets a new one open."""
        collector.record_evaluation("f", 150, "provider")
        alert_id = collector.get_active_alerts()[0].id
        assert collector.resolve_alert(alert_id) is True
        assert collector.get_active_alerts() == []
        assert collector.resolve_alert("missing") is False

        collector.record_evaluation("f", 150, "provider")
        reopened = collector.get_active_alerts()
        assert len(reopened) == 1
        assert reopened[0].id != alert_id


class TestExport:
    """Tests for JSON and Prometheus export."""

    def test_json(self, collector):
        """Test the JSON export carries metrics, health, usage and alerts."""
        collector.record_evaluation("f", 150, "provider")
        data = json.loads(collector.export_metrics("json", provider_health={"in-memory": True}))
        assert data["metrics"]["evaluation_count"] == 1
        assert data["system_health"]["provider_health"] == {"in-memory": True}
        assert data["flag_usage"][0]["flag_key"] == "f"
        assert data["alerts"][0]["type"] == "latency"

    def test_prometheus(self, collector):
        """Test the Prometheus export uses the text exposition format."""
        collector.record_evaluation("f", 10, "provider")
        collector.record_error("f", RuntimeError("boom"))
        collector.record_circuit_breaker_event({"circuit_breaker": "flipt", "event": "rejected"})
        text = collector.export_metrics("prometheus")
        assert "feature_flags_evaluations_total 1.0" in text
        assert "feature_flags_window_evaluations 2.0" in text
        assert "feature_flags_errors_total 1.0" in text
        assert 'feature_flags_latency_seconds{quantile="0.5"}' in text
        assert 'feature_flags_circuit_breaker_events_total{name="flipt",event="rejected"} 1.0' in text
        assert "feature_flags_cache_hit_rate" in text

    def test_prometheus_evaluation_counter_is_monotonic(self, collector, clock):
        """Test the evaluation counter keeps counting after records leave the window."""
        for _ in range(5):
            collector.record_evaluation("f", 10, "provider")
        before = collector.export_metrics("prometheus")
        assert "feature_flags_evaluations_total 5.0" in before

        clock.advance(600)
        after = collector.export_metrics("prometheus")
        assert "feature_flags_evaluations_total 5.0" in after
        assert "feature_flags_window_evaluations 0.0" in after
        assert collector.get_system_health_metrics()["total_evaluations"] == 5

    def test_unknown_format(self, collector):
        """Test unsupported formats are rejected."""
        with pytest.raises(ValueError):
            collector.export_metrics("xml")


class TestCleanup:
    """Tests for retention."""

    def test_cleanup_drops_expired(self, collector, clock):
        """Test points older than the retention period are removed."""
        collector.record_evaluation("f", 10, "provider")
        clock.advance(3601)
        collector.record_evaluation("g", 10, "provider")
        removed = collector.cleanup()
        assert removed > 0
        assert collector.get_time_series_data("evaluation.latency.f") is None
        assert collector.get_time_series_data("evaluation.latency.g") is not None

    def test_cleanup_drops_old_resolved_alerts(self, collector, clock):
        """Test resolved alerts past retention are dropped while open ones are kept."""
        collector.record_evaluation("f", 150, "provider")
        collector.record_evaluation("g", 150, "provider")
        alerts = {a.flag_key: a.id for a in collector.get_active_alerts()}
        collector.resolve_alert(alerts["f"])

        clock.advance(3601)
        collector.cleanup()

        assert set(collector._alerts) == {alerts["g"]}
        assert [a.id for a in collector.get_active_alerts()] == [alerts["g"]]

    def test_cleanup_keeps_recently_resolved_alerts(self, collector, clock):
        """Test a resolved alert inside the retention period survives cleanup."""
        collector.record_evaluation("f", 150, "provider")
        alert_id = collector.get_active_alerts()[0].id
        collector.resolve_alert(alert_id)

        clock.advance(60)
        collector.cleanup()
        assert alert_id in collector._alerts

    def test_reset(self, collector):
        """Test reset clears everything."""
        collector.record_evaluation("f", 150, "provider")
        collector.reset()
        assert collector.get_metrics().evaluation_count == 0
        assert collector.get_active_alerts() == []

    @pytest.mark.asyncio
    async def test_periodic_cleanup(self, collector):
        """Test the cleanup task starts once and stops cleanly."""
        task = collector.start_periodic_cleanup(interval=0.01)
        assert collector.start_periodic_cleanup(interval=0.01) is task
        await asyncio.sleep(0.03)
        await collector.stop_periodic_cleanup()
        assert task.cancelled() or task.done()
