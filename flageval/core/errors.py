"""Error taxonomy for flag evaluation.

Every failure raised inside the engine is a ``FeatureFlagError`` carrying a
machine readable ``code``. Provider, timeout and cache errors are absorbed by
the fallback chain; only ``ConfigurationError`` reaches callers, and only at
setup time.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    FEATURE_FLAG_ERROR = "FEATURE_FLAG_ERROR"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    EVALUATION_TIMEOUT = "EVALUATION_TIMEOUT"
    CACHE_ERROR = "CACHE_ERROR"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    TYPE_MISMATCH = "TYPE_MISMATCH"  # Provider value does not match the default's type
    FLAG_NOT_FOUND = "FLAG_NOT_FOUND"
    PROVIDER_NOT_READY = "PROVIDER_NOT_READY"  # Resolve called before initialize()
    EVALUATION_ERROR = "EVALUATION_ERROR"


class FeatureFlagError(Exception):
    """Base class for all engine errors."""

    default_code: ErrorCode = ErrorCode.FEATURE_FLAG_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        flag_key: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        if isinstance(code, ErrorCode):
            code = code.value
        self.code = code or self.default_code.value
        self.flag_key = flag_key
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def to_dict(self) -> dict:
        return {
            "error": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "flag_key": self.flag_key,
            "cause": repr(self.cause) if self.cause else None,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


class ProviderError(FeatureFlagError):
    """A flag backend failed to answer."""

    default_code = ErrorCode.PROVIDER_ERROR

    def __init__(
        self,
        message: str,
        provider_name: str,
        flag_key: Optional[str] = None,
        cause: Optional[BaseException] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message, code=code, flag_key=flag_key, cause=cause)
        self.provider_name = provider_name

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["provider_name"] = self.provider_name
        return data


class CircuitOpenError(ProviderError):
    """Raised without calling the provider while its breaker is open."""

    default_code = ErrorCode.CIRCUIT_OPEN


class EvaluationTimeoutError(FeatureFlagError):
    """A provider call did not finish within the evaluation timeout."""

    default_code = ErrorCode.EVALUATION_TIMEOUT

    def __init__(self, timeout_ms: float, flag_key: Optional[str] = None):
        super().__init__(
            f"Flag evaluation timed out after {timeout_ms:g}ms",
            flag_key=flag_key,
        )
        self.timeout_ms = timeout_ms


class CacheError(FeatureFlagError):
    default_code = ErrorCode.CACHE_ERROR


class ConfigurationError(FeatureFlagError):
    default_code = ErrorCode.CONFIGURATION_ERROR


def error_kind(error: BaseException) -> str:
    """Return the code of an engine error, or the class name of anything else."""
    if isinstance(error, FeatureFlagError):
        return error.code
    return type(error).__name__


__all__ = [
    "ErrorCode",
    "FeatureFlagError",
    "ProviderError",
    "CircuitOpenError",
    "EvaluationTimeoutError",
    "CacheError",
    "ConfigurationError",
    "error_kind",
]
