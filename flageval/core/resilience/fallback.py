"""Fallback chain and error handler for flag evaluation.

The handler wraps provider calls as ``CircuitBreaker -> RetryMechanism`` and,
when they give up, walks the registered fallback strategies in descending
priority until one produces a value. If none does, the caller's default is
returned with reason ``ERROR``.
"""

from __future__ import annotations

import asyncio
import fnmatch
import inspect
import json
import logging
import math
import os
import re
import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Mapping, Optional, TypeVar, Union

from flageval.core.config import create_default_settings
from flageval.core.errors import ProviderError
from flageval.core.feature_flags.context import EvaluationContext
from flageval.core.feature_flags.types import EvaluationReason, EvaluationResult, EvaluationSource
from flageval.core.providers.base import FlagProvider, resolve_value
from flageval.core.resilience.circuit_breaker import CircuitBreaker, CircuitBreakerState
from flageval.core.resilience.retry import RetryConfig, RetryMechanism

if TYPE_CHECKING:
    from flageval.core.config import EngineSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")

WILDCARD = "*"
ENV_PREFIX = "FEATURE_FLAG_"

StrategyExecute = Callable[[str, Any, EvaluationContext, BaseException], Union[Any, Awaitable[Any]]]


class FallbackUnavailable(Exception):
    """Raised by a strategy that has nothing to offer for this flag."""


def _handles_any(error: BaseException) -> bool:
    return True


@dataclass
class FallbackStrategy:
    name: str
    priority: int
    execute: StrategyExecute
    can_handle: Callable[[BaseException], bool] = field(default=_handles_any)


def env_var_name(flag_key: str, prefix: str = ENV_PREFIX) -> str:
    return prefix + re.sub(r"[^A-Z0-9]", "_", flag_key.upper())


def parse_override(raw: str, default: Any) -> Any:
    """Coerce an override string to the type of ``default``."""
    if isinstance(default, bool):
        return raw.strip().lower() in ("true", "1", "yes")
    if isinstance(default, (int, float)):
        try:
            number = float(raw)
        except ValueError:
            return default
        if math.isnan(number):
            return default
        return int(number) if number.is_integer() and "." not in raw else number
    if isinstance(default, str):
        return raw
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return default


def environment_variable_strategy(prefix: str = ENV_PREFIX) -> FallbackStrategy:
    """Operator override via ``FEATURE_FLAG_<KEY>``; only for provider failures."""

    def execute(flag_key: str, default: Any, context: EvaluationContext, error: BaseException) -> Any:
        raw = os.environ.get(env_var_name(flag_key, prefix))
        if raw is None:
            raise FallbackUnavailable(f"{env_var_name(flag_key, prefix)} is not set")
        return parse_override(raw, default)

    return FallbackStrategy(
        name="environment-variable",
        priority=100,
        execute=execute,
        can_handle=lambda error: isinstance(error, ProviderError),
    )


def static_config_strategy(values: Mapping[str, Any]) -> FallbackStrategy:
    table = dict(values)

    def execute(flag_key: str, default: Any, context: EvaluationContext, error: BaseException) -> Any:
        if table.get(flag_key) is None:
            raise FallbackUnavailable(f"no static value for '{flag_key}'")
        return table[flag_key]

    return FallbackStrategy(name="static-config", priority=90, execute=execute)


def conservative_strategy() -> FallbackStrategy:
    """Fail safe by key name: kill switches engage, enablers stay off."""

    def execute(flag_key: str, default: Any, context: EvaluationContext, error: BaseException) -> Any:
        if "kill" in flag_key or "disable" in flag_key:
            return True
        if "enable" in flag_key or "allow" in flag_key:
            return False
        return default

    return FallbackStrategy(name="conservative", priority=10, execute=execute)


def provider_fallback_strategy(provider: FlagProvider, priority: int = 50) -> FallbackStrategy:
    """Ask a secondary provider when the primary one fails."""
    async def execute(flag_key: str, default: Any, context: EvaluationContext, error: BaseException) -> Any:
        details = await resolve_value(provider, flag_key, default, context)
        if details.reason == EvaluationReason.DEFAULT:
            raise FallbackUnavailable(f"provider '{provider.name}' has no value for '{flag_key}'")
        return details.value

    return FallbackStrategy(name=f"provider:{provider.name}", priority=priority, execute=execute)


class FeatureFlagErrorHandler:
    """Owns the per-provider breakers, the retry policy and the fallback chain."""

    def __init__(
        self,
        retry: Optional[RetryMechanism] = None,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        enable_circuit_breaker: bool = True,
        enable_fallback_chain: bool = True,
        log_level: int = logging.WARNING,
        clock: Callable[[], float] = time.monotonic,
        breaker_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
    ):
        self.retry = retry or RetryMechanism()
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.enable_circuit_breaker = enable_circuit_breaker
        self.enable_fallback_chain = enable_fallback_chain
        self.log_level = log_level
        self._clock = clock
        self.breaker_callback = breaker_callback
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._strategies: Dict[str, List[FallbackStrategy]] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: "EngineSettings",
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> "FeatureFlagErrorHandler":
        handler = cls(
            retry=RetryMechanism(RetryConfig.from_settings(settings.retry), sleep=sleep),
            failure_threshold=settings.circuit_breaker.failure_threshold,
            recovery_timeout=settings.circuit_breaker.timeout_ms / 1000,
            enable_circuit_breaker=settings.circuit_breaker.enabled,
            log_level=logging.DEBUG if settings.environment == "development" else logging.WARNING,
            clock=clock,
        )
        handler.register_fallback_strategy(WILDCARD, environment_variable_strategy())
        handler.register_fallback_strategy(WILDCARD, conservative_strategy())
        return handler

    async def handle_evaluation(
        self,
        operation: Callable[[], Awaitable[EvaluationResult]],
        flag_key: str,
        default_value: Any,
        context: EvaluationContext,
        provider_name: str = "default",
        on_error: Optional[Callable[[BaseException], None]] = None,
        max_attempts: Optional[int] = None,
    ) -> EvaluationResult:
        """Run ``operation`` under breaker and retry; fall back on failure."""
        try:
            return await self._execute_protected(operation, flag_key, provider_name, max_attempts)
        except Exception as exc:
            if on_error is not None:
                on_error(exc)
            return await self.handle_error(exc, flag_key, default_value, context)

    async def _execute_protected(
        self,
        operation: Callable[[], Awaitable[T]],
        flag_key: str,
        provider_name: str,
        max_attempts: Optional[int] = None,
    ) -> T:
        async def with_retry() -> T:
            return await self.retry.execute(operation, f"evaluate-{flag_key}", max_attempts=max_attempts)

        if not self.enable_circuit_breaker:
            return await with_retry()
        return await self.get_circuit_breaker(provider_name).execute(with_retry)

    async def handle_error(
        self,
        error: BaseException,
        flag_key: str,
        default_value: Any,
        context: EvaluationContext,
    ) -> EvaluationResult:
        logger.log(
            self.log_level,
            f"Feature flag evaluation error for '{flag_key}': {type(error).__name__}: {error}",
            extra={"extra_fields": {
                "flag_key": flag_key,
                "error_type": type(error).__name__,
                "user_id": context.user.get("user_id"),
                "environment": context.system.get("environment"),
            }},
        )

        if self.enable_fallback_chain:
            for strategy in self.get_fallback_strategies(flag_key):
                if not strategy.can_handle(error):
                    continue
                try:
                    value = strategy.execute(flag_key, default_value, context, error)
                    if inspect.isawaitable(value):
                        value = await value
                except FallbackUnavailable as skip:
                    logger.debug(f"Fallback '{strategy.name}' skipped for '{flag_key}': {skip}")
                    continue
                except Exception as fallback_error:
                    logger.warning(
                        f"Fallback strategy '{strategy.name}' failed for '{flag_key}': {fallback_error}"
                    )
                    continue

                logger.debug(f"Fallback '{strategy.name}' resolved '{flag_key}'")
                return EvaluationResult(
                    flag_key=flag_key,
                    value=value,
                    reason=EvaluationReason.FALLBACK,
                    source=EvaluationSource.FALLBACK,
                    context=context,
                    metadata={
                        "fallback_strategy": strategy.name,
                        "original_error": str(error),
                    },
                )

        logger.warning(f"Using default value as final fallback for '{flag_key}': {error}")
        return EvaluationResult(
            flag_key=flag_key,
            value=default_value,
            reason=EvaluationReason.ERROR,
            source=EvaluationSource.FALLBACK,
            context=context,
            metadata={
                "error": str(error),
                "error_type": type(error).__name__,
            },
        )

    def register_fallback_strategy(self, pattern: str, strategy: FallbackStrategy) -> None:
        """Attach a strategy to an exact key, a glob pattern, a key prefix or ``*``."""
        with self._lock:
            strategies = self._strategies.setdefault(pattern, [])
            if any(s.name == strategy.name for s in strategies):
                strategies[:] = [s for s in strategies if s.name != strategy.name]
            strategies.append(strategy)
            strategies.sort(key=lambda s: s.priority, reverse=True)
        logger.debug(f"Fallback strategy '{strategy.name}' registered for '{pattern}' (priority {strategy.priority})")

    @staticmethod
    def matches_pattern(flag_key: str, pattern: str) -> bool:
        if pattern == WILDCARD or pattern == flag_key:
            return True
        if any(ch in pattern for ch in "*?["):
            return fnmatch.fnmatchcase(flag_key, pattern)
        return flag_key.startswith(pattern)

    def get_fallback_strategies(self, flag_key: str) -> List[FallbackStrategy]:
        """Candidates for a key, de-duplicated, highest priority first."""
        with self._lock:
            registered = list(self._strategies.items())

        candidates: List[FallbackStrategy] = []
        seen = set()
        for pattern, strategies in registered:
            if not self.matches_pattern(flag_key, pattern):
                continue
            for strategy in strategies:
                if id(strategy) in seen:
                    continue
                seen.add(id(strategy))
                candidates.append(strategy)
        candidates.sort(key=lambda s: s.priority, reverse=True)
        return candidates

    def get_circuit_breaker(self, provider_name: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(provider_name)
            if breaker is None:
                breaker = CircuitBreaker(
                    name=provider_name,
                    failure_threshold=self.failure_threshold,
                    recovery_timeout=self.recovery_timeout,
                    clock=self._clock,
                    metrics_callback=self.breaker_callback,
                )
                self._breakers[provider_name] = breaker
            return breaker

    def get_circuit_breaker_states(self) -> Dict[str, CircuitBreakerState]:
        with self._lock:
            breakers = list(self._breakers.items())
        return {name: breaker.get_state() for name, breaker in breakers}

    def get_circuit_breaker_health(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            breakers = list(self._breakers.items())
        return {name: breaker.get_health() for name, breaker in breakers}

    def reset_circuit_breaker(self, provider_name: str) -> bool:
        with self._lock:
            breaker = self._breakers.get(provider_name)
        if breaker is None:
            return False
        breaker.reset()
        return True

    def reset_all_circuit_breakers(self) -> None:
        with self._lock:
            breakers = list(self._breakers.values())
        for breaker in breakers:
            breaker.reset()


def create_default_error_handler(
    environment: str = "development",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> FeatureFlagErrorHandler:
    """Handler with environment-tuned retry and the env + conservative fallbacks on ``*``."""
    return FeatureFlagErrorHandler.from_settings(create_default_settings(environment), sleep=sleep, clock=clock)


__all__ = [
    "FallbackStrategy",
    "FallbackUnavailable",
    "FeatureFlagErrorHandler",
    "conservative_strategy",
    "create_default_error_handler",
    "env_var_name",
    "environment_variable_strategy",
    "parse_override",
    "provider_fallback_strategy",
    "static_config_strategy",
]
