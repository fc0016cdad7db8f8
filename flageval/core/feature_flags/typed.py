"""Well-known flags and their defaults, grouped by category."""

from __future__ import annotations

from typing import Any, Dict

from flageval.core.feature_flags.types import FlagCategory

TYPED_FLAG_DEFAULTS: Dict[str, Any] = {
    # New features
    "newDashboardUi": False,
    "experimentalApiV2": False,
    "aiPoweredSearch": False,
    # Operational
    "maintenanceMode": False,
    "rateLimitingStrict": False,
    "enhancedLogging": True,
    "imageOptimization": True,
    "cdnCachingAggressive": False,
    # A/B tests
    "checkoutFlowVariant": "control",
    "recommendationAlgorithm": "collaborative_filtering",
    # Kill switches
    "externalIntegrations": True,
    "emailNotifications": True,
    "paymentProcessing": True,
    # Limits
    "maxApiRequestsPerMinute": 1000,
    "searchResultsPerPage": 20,
}

TYPED_FLAG_CATEGORIES: Dict[str, FlagCategory] = {
    "newDashboardUi": FlagCategory.NEW_FEATURES,
    "experimentalApiV2": FlagCategory.NEW_FEATURES,
    "aiPoweredSearch": FlagCategory.NEW_FEATURES,
    "maintenanceMode": FlagCategory.OPERATIONAL,
    "rateLimitingStrict": FlagCategory.OPERATIONAL,
    "enhancedLogging": FlagCategory.OPERATIONAL,
    "imageOptimization": FlagCategory.OPERATIONAL,
    "cdnCachingAggressive": FlagCategory.OPERATIONAL,
    "checkoutFlowVariant": FlagCategory.AB_TESTING,
    "recommendationAlgorithm": FlagCategory.AB_TESTING,
    "externalIntegrations": FlagCategory.KILL_SWITCHES,
    "emailNotifications": FlagCategory.KILL_SWITCHES,
    "paymentProcessing": FlagCategory.KILL_SWITCHES,
    "maxApiRequestsPerMinute": FlagCategory.OPERATIONAL,
    "searchResultsPerPage": FlagCategory.OPERATIONAL,
}


def typed_flag_default(flag_key: str) -> Any:
    try:
        return TYPED_FLAG_DEFAULTS[flag_key]
    except KeyError:
        raise ValueError(f"Unknown typed flag: {flag_key}") from None


__all__ = ["TYPED_FLAG_CATEGORIES", "TYPED_FLAG_DEFAULTS", "typed_flag_default"]
