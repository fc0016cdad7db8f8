"""Engine settings.

Settings are read from ``FLAGEVAL_*`` environment variables (nested sections
use ``__``, e.g. ``FLAGEVAL_CACHE__TTL_SECONDS=30``), from an optional
``.env`` file, or from a YAML/JSON document via :func:`load_settings`.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings

from flageval.core.errors import ConfigurationError

Environment = Literal["development", "staging", "production", "test"]

DEFAULT_RETRYABLE_ERRORS = ["EVALUATION_TIMEOUT", "PROVIDER_ERROR", "CACHE_ERROR"]


class ProviderSettings(BaseModel):
    name: str
    type: str = "in-memory"  # in-memory|environment|remote (flipt)
    endpoint: Optional[str] = None
    api_key: Optional[str] = None
    timeout_ms: float = 2000
    retries: int = 3
    cache_ttl_seconds: float = 300
    fallback_enabled: bool = True
    options: Dict[str, Any] = Field(default_factory=dict)


class CacheSettings(BaseModel):
    enabled: bool = True
    ttl_seconds: float = 300
    max_size: int = Field(default=10000, ge=1)
    strategy: Literal["lru", "fifo", "lifo"] = "lru"
    key_prefix: str = "ff"
    namespace: str = "default"


class RetrySettings(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    base_delay_ms: float = 100
    max_delay_ms: float = 1000
    backoff_multiplier: float = 2.0
    retryable_errors: List[str] = Field(default_factory=lambda: list(DEFAULT_RETRYABLE_ERRORS))


class CircuitBreakerSettings(BaseModel):
    enabled: bool = True
    failure_threshold: int = Field(default=5, ge=1)
    timeout_ms: float = 30000


class AlertThresholds(BaseModel):
    error_rate: float = 0.05
    latency_ms: float = 500
    cache_hit_rate: float = 0.8
    evaluation_count: int = 1000


class MetricsSettings(BaseModel):
    enabled: bool = True
    collect_evaluations: bool = True
    collect_errors: bool = True
    collect_latency: bool = True
    collect_cache_metrics: bool = True
    collect_user_metrics: bool = True
    retention_period_ms: float = 24 * 60 * 60 * 1000
    aggregation_window_ms: float = 15 * 60 * 1000
    alert_thresholds: AlertThresholds = Field(default_factory=AlertThresholds)


class EngineSettings(BaseSettings):
    environment: Environment = "development"
    default_provider: str = "in-memory"
    fallback_provider: Optional[str] = "environment"
    providers: List[ProviderSettings] = Field(default_factory=list)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    evaluation_timeout_ms: float = 5000
    retry: RetrySettings = Field(default_factory=RetrySettings)
    circuit_breaker: CircuitBreakerSettings = Field(default_factory=CircuitBreakerSettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)
    enable_logging: bool = True
    log_level: str = "INFO"
    json_logs: bool = False

    model_config = {
        "env_prefix": "FLAGEVAL_",
        "env_nested_delimiter": "__",
        "env_file": ".env",
        "case_sensitive": False,
        "extra": "ignore",
    }

    def provider(self, name: str) -> Optional[ProviderSettings]:
        for provider in self.providers:
            if provider.name == name:
                return provider
        return None


def detect_environment() -> str:
    """Map FLAGEVAL_ENVIRONMENT / APP_ENV / ENVIRONMENT onto a known environment."""
    raw = (
        os.getenv("FLAGEVAL_ENVIRONMENT")
        or os.getenv("APP_ENV")
        or os.getenv("ENVIRONMENT")
        or ""
    ).strip().lower()
    if raw in ("production", "prod"):
        return "production"
    if raw in ("staging", "stage"):
        return "staging"
    if raw in ("test", "testing"):
        return "test"
    return "development"


def default_provider_settings(environment: str) -> List[ProviderSettings]:
    """Provider list used when none is configured explicitly."""
    env_provider = ProviderSettings(
        name="environment",
        type="environment",
        timeout_ms=100,
        retries=0,
        cache_ttl_seconds=0,
        options={"prefix": "FEATURE_FLAG_"},
    )
    if environment in ("development", "test"):
        return [
            ProviderSettings(name="in-memory", type="in-memory", timeout_ms=1000, retries=1),
            env_provider,
        ]
    if environment == "staging":
        remote = ProviderSettings(
            name="remote",
            type="remote",
            endpoint=os.getenv("FLAGEVAL_REMOTE_ENDPOINT", "http://flipt-staging:8080"),
            api_key=os.getenv("FLAGEVAL_REMOTE_API_KEY"),
            timeout_ms=3000,
            retries=2,
        )
    else:
        remote = ProviderSettings(
            name="remote",
            type="remote",
            endpoint=os.getenv("FLAGEVAL_REMOTE_ENDPOINT", "http://flipt:8080"),
            api_key=os.getenv("FLAGEVAL_REMOTE_API_KEY"),
            timeout_ms=2000,
            retries=3,
            cache_ttl_seconds=600,
        )
    return [remote, env_provider]


def create_default_settings(environment: str = "development", **overrides: Any) -> EngineSettings:
    """Build settings tuned for an environment; keyword overrides win."""
    dev = environment in ("development", "test")
    values: Dict[str, Any] = {
        "environment": environment,
        "default_provider": "in-memory" if dev else "remote",
        "fallback_provider": "environment",
        "providers": default_provider_settings(environment),
        "cache": CacheSettings(
            ttl_seconds=60 if dev else 300,
            max_size=1000 if dev else 10000,
        ),
        "evaluation_timeout_ms": 5000 if dev else 2000,
        "retry": RetrySettings(max_attempts=1 if dev else 3, base_delay_ms=100, max_delay_ms=1000),
        "circuit_breaker": CircuitBreakerSettings(enabled=not dev, failure_threshold=5, timeout_ms=30000),
        "metrics": MetricsSettings(
            retention_period_ms=(60 * 60 * 1000) if dev else (24 * 60 * 60 * 1000),
            aggregation_window_ms=(5 * 60 * 1000) if dev else (15 * 60 * 1000),
            alert_thresholds=AlertThresholds(
                latency_ms=1000 if dev else 500,
                evaluation_count=100 if dev else 1000,
            ),
        ),
        "log_level": "DEBUG" if dev else "INFO",
    }
    values.update(overrides)
    try:
        return EngineSettings(**values)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid engine settings: {exc}", cause=exc) from exc


def load_settings(path: Union[str, Path]) -> EngineSettings:
    """Load settings from a YAML or JSON file."""
    file_path = Path(path)
    if not file_path.exists():
        raise ConfigurationError(f"Settings file not found: {file_path}")

    try:
        content = file_path.read_text()
        if file_path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(content) or {}
        else:
            data = json.loads(content)
    except (OSError, yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"Unable to read settings file {file_path}: {exc}", cause=exc) from exc

    if not isinstance(data, dict):
        raise ConfigurationError(f"Settings file {file_path} must contain a mapping")

    try:
        return EngineSettings(**data)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid settings in {file_path}: {exc}", cause=exc) from exc


__all__ = [
    "AlertThresholds",
    "CacheSettings",
    "CircuitBreakerSettings",
    "DEFAULT_RETRYABLE_ERRORS",
    "EngineSettings",
    "MetricsSettings",
    "ProviderSettings",
    "RetrySettings",
    "create_default_settings",
    "default_provider_settings",
    "detect_environment",
    "load_settings",
]
