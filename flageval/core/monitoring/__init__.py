"""Evaluation metrics and alerting."""

from flageval.core.monitoring.collector import (
    Alert,
    AlertSeverity,
    AlertType,
    FlagMetrics,
    FlagUsageStats,
    LatencySummary,
    MetricsCollector,
    percentile,
)

__all__ = [
    "Alert",
    "AlertSeverity",
    "AlertType",
    "FlagMetrics",
    "FlagUsageStats",
    "LatencySummary",
    "MetricsCollector",
    "percentile",
]
