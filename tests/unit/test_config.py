"""Tests for engine configuration and the error taxonomy."""

from __future__ import annotations

import json

import pytest

from flageval.core.config import (
    EngineSettings,
    create_default_settings,
    default_provider_settings,
    detect_environment,
    load_settings,
)
from flageval.core.errors import (
    CacheError,
    CircuitOpenError,
    ConfigurationError,
    ErrorCode,
    EvaluationTimeoutError,
    FeatureFlagError,
    ProviderError,
    error_kind,
)


class TestDetectEnvironment:
    """Tests for environment detection."""

    def test_defaults_to_development(self, monkeypatch):
        """Test development is assumed when nothing is set."""
        monkeypatch.delenv("FLAGEVAL_ENVIRONMENT", raising=False)
        monkeypatch.delenv("APP_ENV", raising=False)
        monkeypatch.delenv("ENVIRONMENT", raising=False)
        assert detect_environment() == "development"

    @pytest.mark.parametrize(
        "raw,expected",
        [("prod", "production"), ("Production", "production"), ("stage", "staging"), ("testing", "test")],
    )
    def test_aliases(self, monkeypatch, raw, expected):
        """Test common aliases map onto known environments."""
        monkeypatch.setenv("FLAGEVAL_ENVIRONMENT", raw)
        assert detect_environment() == expected

    def test_flageval_variable_wins(self, monkeypatch):
        """Test FLAGEVAL_ENVIRONMENT takes precedence over APP_ENV."""
        monkeypatch.setenv("FLAGEVAL_ENVIRONMENT", "staging")
        monkeypatch.setenv("APP_ENV", "production")
        assert detect_environment() == "staging"


class TestDefaultSettings:
    """Tests for environment-tuned defaults."""

    def test_development_profile(self):
        """Test development favours fast feedback over resilience."""
        settings = create_default_settings("development")
        assert settings.default_provider == "in-memory"
        assert settings.fallback_provider == "environment"
        assert settings.cache.ttl_seconds == 60
        assert settings.cache.max_size == 1000
        assert settings.evaluation_timeout_ms == 5000
        assert settings.retry.max_attempts == 1
        assert settings.circuit_breaker.enabled is False
        assert settings.metrics.alert_thresholds.latency_ms == 1000

    def test_production_profile(self):
        """Test production uses the remote provider with retries and a breaker."""
        settings = create_default_settings("production")
        assert settings.default_provider == "remote"
        assert settings.cache.ttl_seconds == 300
        assert settings.cache.max_size == 10000
        assert settings.evaluation_timeout_ms == 2000
        assert settings.retry.max_attempts == 3
        assert settings.circuit_breaker.enabled is True
        assert settings.circuit_breaker.failure_threshold == 5

    def test_overrides_win(self):
        """Test keyword overrides replace computed values."""
        settings = create_default_settings("development", evaluation_timeout_ms=250)
        assert settings.evaluation_timeout_ms == 250

    def test_invalid_override_raises_configuration_error(self):
        """Test validation failures surface as ConfigurationError."""
        with pytest.raises(ConfigurationError):
            create_default_settings("development", environment="moon")

    def test_remote_endpoint_from_environment(self, monkeypatch):
        """Test the remote endpoint can be set through the environment."""
        monkeypatch.setenv("FLAGEVAL_REMOTE_ENDPOINT", "http://flags.internal:9000")
        providers = default_provider_settings("production")
        assert providers[0].type == "remote"
        assert providers[0].endpoint == "http://flags.internal:9000"
        assert providers[1].type == "environment"

    def test_provider_lookup(self):
        """Test provider settings can be found by name."""
        settings = create_default_settings("development")
        assert settings.provider("environment").options["prefix"] == "FEATURE_FLAG_"
        assert settings.provider("missing") is None


class TestLoadSettings:
    """Tests for file-based settings."""

    def test_load_yaml(self, tmp_path):
        """Test YAML settings files are parsed and validated."""
        path = tmp_path / "flags.yaml"
        path.write_text(
            "environment: staging\n"
            "default_provider: memory\n"
            "providers:\n"
            "  - name: memory\n"
            "    type: in-memory\n"
            "cache:\n"
            "  ttl_seconds: 5\n"
            "  strategy: fifo\n"
        )
        settings = load_settings(path)
        assert settings.environment == "staging"
        assert settings.providers[0].name == "memory"
        assert settings.cache.ttl_seconds == 5
        assert settings.cache.strategy == "fifo"

    def test_load_json(self, tmp_path):
        """Test JSON settings files are supported."""
        path = tmp_path / "flags.json"
        path.write_text(json.dumps({"evaluation_timeout_ms": 1500, "retry": {"max_attempts": 4}}))
        settings = load_settings(path)
        assert settings.evaluation_timeout_ms == 1500
        assert settings.retry.max_attempts == 4

    def test_missing_file(self, tmp_path):
        """Test a missing file raises ConfigurationError."""
        with pytest.raises(ConfigurationError, match="not found"):
            load_settings(tmp_path / "absent.yaml")

    def test_invalid_values(self, tmp_path):
        """Test invalid values raise ConfigurationError."""
        path = tmp_path / "bad.yaml"
        path.write_text("cache:\n  strategy: random\n")
        with pytest.raises(ConfigurationError):
            load_settings(path)

    def test_non_mapping(self, tmp_path):
        """Test a file that is not a mapping is rejected."""
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigurationError, match="mapping"):
            load_settings(path)

    def test_environment_variables(self, monkeypatch):
        """Test nested settings are read from FLAGEVAL_ variables."""
        monkeypatch.setenv("FLAGEVAL_EVALUATION_TIMEOUT_MS", "750")
        monkeypatch.setenv("FLAGEVAL_CACHE__TTL_SECONDS", "12")
        settings = EngineSettings()
        assert settings.evaluation_timeout_ms == 750
        assert settings.cache.ttl_seconds == 12


class TestErrors:
    """Tests for the error taxonomy."""

    def test_codes(self):
        """Test each error carries its default code."""
        assert FeatureFlagError("x").code == "FEATURE_FLAG_ERROR"
        assert ProviderError("x", provider_name="p").code == "PROVIDER_ERROR"
        assert CircuitOpenError("x", provider_name="p").code == "CIRCUIT_OPEN"
        assert EvaluationTimeoutError(100).code == "EVALUATION_TIMEOUT"
        assert CacheError("x").code == "CACHE_ERROR"
        assert ConfigurationError("x").code == "CONFIGURATION_ERROR"

    def test_explicit_code(self):
        """Test an ErrorCode member can override the default."""
        err = FeatureFlagError("bad type", code=ErrorCode.TYPE_MISMATCH, flag_key="f")
        assert err.code == "TYPE_MISMATCH"
        assert err.to_dict()["flag_key"] == "f"

    def test_circuit_open_is_provider_error(self):
        """Test CircuitOpenError is handled like any provider failure."""
        assert isinstance(CircuitOpenError("x", provider_name="p"), ProviderError)

    def test_timeout_message(self):
        """Test the timeout is reported in the message."""
        err = EvaluationTimeoutError(250, flag_key="slow")
        assert "250ms" in str(err)
        assert err.timeout_ms == 250

    def test_cause_is_chained(self):
        """Test the cause is exposed both ways."""
        cause = ValueError("boom")
        err = ProviderError("wrapped", provider_name="p", cause=cause)
        assert err.cause is cause
        assert err.__cause__ is cause
        assert err.to_dict()["provider_name"] == "p"

    def test_error_kind(self):
        """Test error kinds use codes for engine errors and class names otherwise."""
        assert error_kind(ProviderError("x", provider_name="p")) == "PROVIDER_ERROR"
        assert error_kind(KeyError("x")) == "KeyError"
