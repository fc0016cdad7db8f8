"""Circuit breaking, retry and fallback for provider calls."""

from flageval.core.resilience.circuit_breaker import CircuitBreaker, CircuitBreakerState, CircuitState
from flageval.core.resilience.fallback import (
    FallbackStrategy,
    FallbackUnavailable,
    FeatureFlagErrorHandler,
    conservative_strategy,
    create_default_error_handler,
    environment_variable_strategy,
    provider_fallback_strategy,
    static_config_strategy,
)
from flageval.core.resilience.retry import RetryConfig, RetryMechanism

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerState",
    "CircuitState",
    "FallbackStrategy",
    "FallbackUnavailable",
    "FeatureFlagErrorHandler",
    "RetryConfig",
    "RetryMechanism",
    "conservative_strategy",
    "create_default_error_handler",
    "environment_variable_strategy",
    "provider_fallback_strategy",
    "static_config_strategy",
]
