"""
Evaluation metrics collection
Time series, per-flag usage, threshold alerts and JSON/Prometheus export.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import threading
import time
import uuid
from collections import defaultdict, deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Tuple

from prometheus_client import CollectorRegistry, generate_latest
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily

from flageval.core.config import MetricsSettings
from flageval.core.errors import error_kind

logger = logging.getLogger(__name__)

# Cache hit-rate alerts need this many lookups in the window before firing
MIN_CACHE_SAMPLES = 20


class AlertType(str, Enum):
    ERROR_RATE = "error_rate"
    LATENCY = "latency"
    CACHE_HIT_RATE = "cache_hit_rate"
    EVALUATION_COUNT = "evaluation_count"


class AlertSeverity(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass
class MetricPoint:
    timestamp: float
    value: float
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass
class EvaluationRecord:
    flag_key: str
    timestamp: float
    latency_ms: float
    success: bool
    reason: str
    source: str
    user_id: Optional[str] = None
    environment: Optional[str] = None
    error: Optional[str] = None


@dataclass
class FlagUsageStats:
    flag_key: str
    evaluation_count: int = 0
    error_count: int = 0
    last_evaluated: Optional[float] = None
    avg_latency_ms: float = 0.0
    error_rate: float = 0.0
    top_users: List[str] = field(default_factory=list)
    top_reasons: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Alert:
    id: str
    type: AlertType
    severity: AlertSeverity
    message: str
    threshold: float
    current_value: float
    timestamp: float
    flag_key: Optional[str] = None
    resolved: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        data["severity"] = self.severity.value
        return data


@dataclass
class LatencySummary:
    p50: float = 0.0
    p95: float = 0.0
    p99: float = 0.0
    max: float = 0.0


@dataclass
class FlagMetrics:
    """Aggregates over the current aggregation window."""
    evaluation_count: int
    latency_ms: LatencySummary
    cache_hit_rate: float
    error_rate: float
    error_count: int
    last_evaluation: Optional[float]
    flag_usage: Dict[str, int]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def percentile(values: Iterable[float], pct: float) -> float:
    """Nearest-rank percentile: index ``ceil(pct/100 * n) - 1`` of the sorted values."""
    ordered = sorted(values)
    if not ordered:
        return 0.0
    index = math.ceil((pct / 100) * len(ordered)) - 1
    return ordered[max(0, index)]


class _ExportCollector:
    """Custom prometheus_client collector reading a snapshot from MetricsCollector."""

    def __init__(self, owner: "MetricsCollector"):
        self._owner = owner

    def collect(self):
        metrics = self._owner.get_metrics()

        evaluations = CounterMetricFamily(
            "feature_flags_evaluations", "Total number of feature flag evaluations"
        )
        evaluations.add_metric([], self._owner.total_evaluations())
        yield evaluations

        window_evaluations = GaugeMetricFamily(
            "feature_flags_window_evaluations",
            "Evaluation and error records in the current aggregation window",
        )
        window_evaluations.add_metric([], metrics.evaluation_count)
        yield window_evaluations

        errors = CounterMetricFamily("feature_flags_errors", "Total number of feature flag errors")
        errors.add_metric([], self._owner.total_errors())
        yield errors

        latency = GaugeMetricFamily(
            "feature_flags_latency_seconds", "Feature flag evaluation latency", labels=["quantile"]
        )
        latency.add_metric(["0.5"], metrics.latency_ms.p50 / 1000)
        latency.add_metric(["0.95"], metrics.latency_ms.p95 / 1000)
        latency.add_metric(["0.99"], metrics.latency_ms.p99 / 1000)
        yield latency

        hit_rate = GaugeMetricFamily("feature_flags_cache_hit_rate", "Feature flag cache hit rate")
        hit_rate.add_metric([], metrics.cache_hit_rate)
        yield hit_rate

        error_rate = GaugeMetricFamily("feature_flags_error_rate", "Feature flag error rate")
        error_rate.add_metric([], metrics.error_rate)
        yield error_rate

        breaker_events = CounterMetricFamily(
            "feature_flags_circuit_breaker_events",
            "Circuit breaker events by provider",
            labels=["name", "event"],
        )
        for (name, event), count in self._owner.circuit_breaker_counts().items():
            breaker_events.add_metric([name, event], count)
        yield breaker_events

        alerts = GaugeMetricFamily("feature_flags_active_alerts", "Unresolved alerts")
        alerts.add_metric([], len(self._owner.get_active_alerts()))
        yield alerts


class MetricsCollector:
    """
    Collects evaluation metrics for one evaluation service.

    All state is in memory and guarded by a lock; ``cleanup`` (or the periodic
    task) drops points older than the retention period.
    """

    def __init__(
        self,
        settings: Optional[MetricsSettings] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or MetricsSettings()
        self._clock = clock
        self._lock = threading.Lock()
        self._series: Dict[str, Deque[MetricPoint]] = defaultdict(deque)
        self._evaluations: Deque[EvaluationRecord] = deque()
        self._usage: Dict[str, FlagUsageStats] = {}
        self._alerts: Dict[str, Alert] = {}
        self._open_alerts: Dict[Tuple[AlertType, Optional[str]], str] = {}
        self._breaker_counts: Dict[Tuple[str, str], int] = defaultdict(int)
        self._total_evaluations = 0
        self._total_errors = 0
        self._started_at = clock()
        self._cleanup_task: Optional[asyncio.Task] = None

        self.registry = CollectorRegistry(auto_describe=False)
        self.registry.register(_ExportCollector(self))

    @property
    def retention_seconds(self) -> float:
        return self.settings.retention_period_ms / 1000

    @property
    def window_seconds(self) -> float:
        return self.settings.aggregation_window_ms / 1000

    def record_evaluation(
        self,
        flag_key: str,
        duration_ms: float,
        source: str,
        context: Any = None,
        reason: str = "SUCCESS",
    ) -> None:
        if not (self.settings.enabled and self.settings.collect_evaluations):
            return

        now = self._clock()
        user_id, environment = self._identity(context)
        record = EvaluationRecord(
            flag_key=flag_key,
            timestamp=now,
            latency_ms=duration_ms,
            success=True,
            reason=reason,
            source=source,
            user_id=user_id,
            environment=environment,
        )
        with self._lock:
            if self.settings.collect_latency:
                self._add_point(f"evaluation.latency.{flag_key}", duration_ms, now, {"source": source})
            self._add_point("evaluation.count", 1, now, {"source": source, "flag_key": flag_key})
            self._evaluations.append(record)
            self._total_evaluations += 1
            self._update_usage(record)
            self._check_latency_alert(flag_key, duration_ms, now)
            self._check_evaluation_count_alert(now)

    def record_error(self, flag_key: str, error: BaseException, context: Any = None) -> None:
        if not (self.settings.enabled and self.settings.collect_errors):
            return

        now = self._clock()
        user_id, environment = self._identity(context)
        record = EvaluationRecord(
            flag_key=flag_key,
            timestamp=now,
            latency_ms=0.0,
            success=False,
            reason=error_kind(error),
            source="error",
            user_id=user_id,
            environment=environment,
            error=str(error),
        )
        with self._lock:
            labels = {"error_type": type(error).__name__, "flag_key": flag_key}
            self._add_point(f"error.count.{flag_key}", 1, now, labels)
            self._add_point("error.count", 1, now, labels)
            self._evaluations.append(record)
            self._total_errors += 1
            self._update_usage(record)
            self._check_error_rate_alert(flag_key, now)

    def record_cache_hit(self, flag_key: str) -> None:
        self._record_cache("hit", flag_key)

    def record_cache_miss(self, flag_key: str) -> None:
        self._record_cache("miss", flag_key)

    def _record_cache(self, outcome: str, flag_key: str) -> None:
        if not (self.settings.enabled and self.settings.collect_cache_metrics):
            return
        now = self._clock()
        with self._lock:
            self._add_point(f"cache.{outcome}.{flag_key}", 1, now, {"flag_key": flag_key})
            self._add_point(f"cache.{outcome}", 1, now, {"flag_key": flag_key})
            self._check_cache_hit_rate_alert(now)

    def record_circuit_breaker_event(self, event: Dict[str, Any]) -> None:
        """``metrics_callback`` target for circuit breakers."""
        with self._lock:
            self._breaker_counts[(event["circuit_breaker"], event["event"])] += 1

    def _identity(self, context: Any) -> Tuple[Optional[str], Optional[str]]:
        if context is None or not self.settings.collect_user_metrics:
            return None, None
        user = getattr(context, "user", None) or {}
        system = getattr(context, "system", None) or {}
        return user.get("user_id"), system.get("environment")

    def _add_point(self, name: str, value: float, timestamp: float, labels: Dict[str, str]) -> None:
        series = self._series[name]
        series.append(MetricPoint(timestamp=timestamp, value=value, labels=labels))
        cutoff = timestamp - self.retention_seconds
        while series and series[0].timestamp < cutoff:
            series.popleft()

    def _sum_since(self, name: str, since: float) -> float:
        series = self._series.get(name)
        if not series:
            return 0.0
        return sum(p.value for p in series if p.timestamp >= since)

    def _update_usage(self, record: EvaluationRecord) -> None:
        stats = self._usage.get(record.flag_key)
        if stats is None:
            stats = self._usage[record.flag_key] = FlagUsageStats(flag_key=record.flag_key)
        stats.evaluation_count += 1
        stats.last_evaluated = record.timestamp
        if not record.success:
            stats.error_count += 1
        stats.error_rate = stats.error_count / stats.evaluation_count
        stats.avg_latency_ms += (record.latency_ms - stats.avg_latency_ms) / stats.evaluation_count
        if record.user_id and record.user_id not in stats.top_users and len(stats.top_users) < 10:
            stats.top_users.append(record.user_id)
        stats.top_reasons[record.reason] = stats.top_reasons.get(record.reason, 0) + 1

    def _raise_alert(
        self,
        alert_type: AlertType,
        flag_key: Optional[str],
        threshold: float,
        value: float,
        critical: bool,
        message: str,
        now: float,
    ) -> None:
        """Open an alert, or refresh the open one for the same type and flag."""
        severity = AlertSeverity.CRITICAL if critical else AlertSeverity.WARNING
        key = (alert_type, flag_key)
        existing_id = self._open_alerts.get(key)
        if existing_id is not None:
            alert = self._alerts[existing_id]
            alert.current_value = value
            alert.severity = severity
            alert.message = message
            alert.timestamp = now
            return

        alert = Alert(
            id=f"{alert_type.value}-{uuid.uuid4().hex[:12]}",
            type=alert_type,
            severity=severity,
            message=message,
            threshold=threshold,
            current_value=value,
            timestamp=now,
            flag_key=flag_key,
        )
        self._alerts[alert.id] = alert
        self._open_alerts[key] = alert.id
        logger.warning(f"Alert raised: {message}", extra={"extra_fields": alert.to_dict()})

    def _check_latency_alert(self, flag_key: str, latency_ms: float, now: float) -> None:
        threshold = self.settings.alert_thresholds.latency_ms
        if latency_ms > threshold:
            self._raise_alert(
                AlertType.LATENCY,
                flag_key,
                threshold,
                latency_ms,
                latency_ms > threshold * 2,
                f"High latency detected for flag {flag_key}: {latency_ms:.1f}ms",
                now,
            )

    def _check_error_rate_alert(self, flag_key: str, now: float) -> None:
        stats = self._usage.get(flag_key)
        threshold = self.settings.alert_thresholds.error_rate
        if stats and stats.error_rate > threshold:
            self._raise_alert(
                AlertType.ERROR_RATE,
                flag_key,
                threshold,
                stats.error_rate,
                stats.error_rate > threshold * 2,
                f"High error rate detected for flag {flag_key}: {stats.error_rate * 100:.2f}%",
                now,
            )

    def _check_cache_hit_rate_alert(self, now: float) -> None:
        since = now - self.window_seconds
        hits = self._sum_since("cache.hit", since)
        misses = self._sum_since("cache.miss", since)
        total = hits + misses
        threshold = self.settings.alert_thresholds.cache_hit_rate
        if total < MIN_CACHE_SAMPLES:
            return
        rate = hits / total
        if rate < threshold:
            self._raise_alert(
                AlertType.CACHE_HIT_RATE,
                None,
                threshold,
                rate,
                rate < threshold / 2,
                f"Low cache hit rate: {rate * 100:.2f}%",
                now,
            )

    def _check_evaluation_count_alert(self, now: float) -> None:
        count = self._sum_since("evaluation.count", now - self.window_seconds)
        threshold = self.settings.alert_thresholds.evaluation_count
        if count > threshold:
            self._raise_alert(
                AlertType.EVALUATION_COUNT,
                None,
                threshold,
                count,
                count > threshold * 2,
                f"High evaluation volume: {int(count)} evaluations in window",
                now,
            )

    def get_metrics(self) -> FlagMetrics:
        now = self._clock()
        since = now - self.window_seconds
        with self._lock:
            recent = [r for r in self._evaluations if r.timestamp >= since]
            hits = self._sum_since("cache.hit", since)
            misses = self._sum_since("cache.miss", since)

        latencies = [r.latency_ms for r in recent if r.success]
        failures = sum(1 for r in recent if not r.success)
        usage: Dict[str, int] = defaultdict(int)
        for r in recent:
            usage[r.flag_key] += 1

        return FlagMetrics(
            evaluation_count=len(recent),
            latency_ms=LatencySummary(
                p50=percentile(latencies, 50),
                p95=percentile(latencies, 95),
                p99=percentile(latencies, 99),
                max=max(latencies) if latencies else 0.0,
            ),
            cache_hit_rate=hits / (hits + misses) if hits + misses > 0 else 0.0,
            error_rate=failures / len(recent) if recent else 0.0,
            error_count=failures,
            last_evaluation=max((r.timestamp for r in recent), default=None),
            flag_usage=dict(usage),
        )

    def total_evaluations(self) -> int:
        with self._lock:
            return self._total_evaluations

    def total_errors(self) -> int:
        with self._lock:
            return self._total_errors

    def circuit_breaker_counts(self) -> Dict[Tuple[str, str], int]:
        with self._lock:
            return dict(self._breaker_counts)

    def get_flag_usage_stats(self) -> List[FlagUsageStats]:
        with self._lock:
            stats = [FlagUsageStats(**asdict(s)) for s in self._usage.values()]
        return sorted(stats, key=lambda s: s.evaluation_count, reverse=True)

    def get_system_health_metrics(self, provider_health: Optional[Dict[str, bool]] = None) -> Dict[str, Any]:
        metrics = self.get_metrics()
        return {
            "total_evaluations": self.total_evaluations(),
            "total_errors": self.total_errors(),
            "avg_latency_ms": (metrics.latency_ms.p50 + metrics.latency_ms.p95) / 2,
            "cache_hit_rate": metrics.cache_hit_rate,
            "provider_health": dict(provider_health or {}),
            "uptime_seconds": self._clock() - self._started_at,
            "active_alerts": len(self.get_active_alerts()),
        }

    def get_time_series_data(self, metric_name: str, from_timestamp: Optional[float] = None) -> Optional[Dict[str, Any]]:
        with self._lock:
            series = self._series.get(metric_name)
            if series is None:
                return None
            points = [p for p in series if from_timestamp is None or p.timestamp >= from_timestamp]

        values = [p.value for p in points]
        return {
            "name": metric_name,
            "points": [asdict(p) for p in points],
            "aggregated": {
                "count": len(values),
                "sum": sum(values),
                "avg": sum(values) / len(values) if values else 0.0,
                "min": min(values) if values else 0.0,
                "max": max(values) if values else 0.0,
                "p50": percentile(values, 50),
                "p95": percentile(values, 95),
                "p99": percentile(values, 99),
            },
        }

    def get_active_alerts(self) -> List[Alert]:
        with self._lock:
            active = [a for a in self._alerts.values() if not a.resolved]
        return sorted(active, key=lambda a: a.timestamp, reverse=True)

    def resolve_alert(self, alert_id: str) -> bool:
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                return False
            alert.resolved = True
            self._open_alerts.pop((alert.type, alert.flag_key), None)
        logger.info(f"Alert {alert_id} ({alert.type.value}) resolved")
        return True

    def export_metrics(self, format: str = "json", provider_health: Optional[Dict[str, bool]] = None) -> str:
        if format == "prometheus":
            return generate_latest(self.registry).decode("utf-8")
        if format != "json":
            raise ValueError(f"Unsupported export format: {format}")
        return json.dumps(
            {
                "metrics": self.get_metrics().to_dict(),
                "system_health": self.get_system_health_metrics(provider_health),
                "flag_usage": [s.to_dict() for s in self.get_flag_usage_stats()],
                "alerts": [a.to_dict() for a in self.get_active_alerts()],
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
            indent=2,
            default=str,
        )

    def cleanup(self) -> int:
        """Drop evaluation records, points and resolved alerts older than the retention period."""
        cutoff = self._clock() - self.retention_seconds
        removed = 0
        with self._lock:
            while self._evaluations and self._evaluations[0].timestamp < cutoff:
                self._evaluations.popleft()
                removed += 1
            stale_alerts = [
                alert_id
                for alert_id, alert in self._alerts.items()
                if alert.resolved and alert.timestamp < cutoff
            ]
            for alert_id in stale_alerts:
                del self._alerts[alert_id]
            removed += len(stale_alerts)
            for name in list(self._series):
                series = self._series[name]
                while series and series[0].timestamp < cutoff:
                    series.popleft()
                    removed += 1
                if not series:
                    del self._series[name]
        logger.debug(f"Metrics cleanup removed {removed} points")
        return removed

    def start_periodic_cleanup(self, interval: Optional[float] = None) -> asyncio.Task:
        """Run ``cleanup`` every aggregation window on the running loop."""
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return self._cleanup_task

        period = interval if interval is not None else self.window_seconds

        async def _loop() -> None:
            while True:
                await asyncio.sleep(period)
                self.cleanup()

        self._cleanup_task = asyncio.get_running_loop().create_task(_loop())
        return self._cleanup_task

    async def stop_periodic_cleanup(self) -> None:
        task, self._cleanup_task = self._cleanup_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def reset(self) -> None:
        with self._lock:
            self._series.clear()
            self._evaluations.clear()
            self._usage.clear()
            self._alerts.clear()
            self._open_alerts.clear()
            self._breaker_counts.clear()
            self._total_evaluations = 0
            self._total_errors = 0
            self._started_at = self._clock()
        logger.info("Metrics reset")


__all__ = [
    "Alert",
    "AlertSeverity",
    "AlertType",
    "EvaluationRecord",
    "FlagMetrics",
    "FlagUsageStats",
    "LatencySummary",
    "MetricPoint",
    "MetricsCollector",
    "percentile",
]
