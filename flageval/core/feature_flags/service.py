"""Feature Flags Service.

Evaluates flags against the default provider with:
- Context merging (default context + call-site context + timestamp)
- Result caching keyed by flag and context fingerprint
- Circuit breaker, retry and per-attempt timeout around provider calls
- Fallback chain when the provider cannot answer
- Metrics, evaluation events and error callbacks
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from flageval.core.caching import FlagCache
from flageval.core.config import (
    EngineSettings,
    create_default_settings,
    default_provider_settings,
    detect_environment,
)
from flageval.core.errors import (
    CacheError,
    ConfigurationError,
    ErrorCode,
    EvaluationTimeoutError,
    FeatureFlagError,
)
from flageval.core.feature_flags.context import ContextLike, EvaluationContext, merge_contexts
from flageval.core.feature_flags.typed import TYPED_FLAG_DEFAULTS, typed_flag_default
from flageval.core.feature_flags.types import (
    EvaluationEvent,
    EvaluationReason,
    EvaluationResult,
    EvaluationSource,
    FlagChangeEvent,
    FlagConfig,
    utcnow,
)
from flageval.core.logging.structured import evaluation_log_context
from flageval.core.monitoring import MetricsCollector
from flageval.core.providers import FlagProvider, create_provider
from flageval.core.resilience import FeatureFlagErrorHandler, provider_fallback_strategy

logger = logging.getLogger(__name__)

FlagChangeCallback = Callable[[FlagChangeEvent], Any]
ErrorCallback = Callable[[FeatureFlagError], Any]
EvaluationCallback = Callable[[EvaluationEvent], Any]

_RESOLVERS = {
    bool: "resolve_boolean",
    int: "resolve_number",
    float: "resolve_number",
    str: "resolve_string",
}


def _resolver_for(default_value: Any) -> str:
    # type() rather than isinstance so bool never resolves as a number
    return _RESOLVERS.get(type(default_value), "resolve_object")


def _matches_type(value: Any, default_value: Any) -> bool:
    if isinstance(default_value, bool):
        return isinstance(value, bool)
    if isinstance(default_value, (int, float)):
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if isinstance(default_value, str):
        return isinstance(value, str)
    return True


class FeatureFlagsService:
    """Async flag evaluation over pluggable providers.

    Evaluation never raises for provider, timeout or cache failures: the
    caller always receives an :class:`EvaluationResult`, from the fallback
    chain if necessary. Only :meth:`initialize` surfaces
    :class:`ConfigurationError`.
    """

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        providers: Optional[Mapping[str, FlagProvider]] = None,
        cache: Optional[FlagCache] = None,
        error_handler: Optional[FeatureFlagErrorHandler] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.settings = settings or create_default_settings(detect_environment())
        self.cache = cache or FlagCache.from_settings(self.settings.cache)
        self.metrics = metrics or MetricsCollector(self.settings.metrics)
        self.error_handler = error_handler or FeatureFlagErrorHandler.from_settings(self.settings)
        if self.error_handler.breaker_callback is None:
            self.error_handler.breaker_callback = self.metrics.record_circuit_breaker_event

        self._injected_providers: Dict[str, FlagProvider] = dict(providers or {})
        self._providers: Dict[str, FlagProvider] = {}
        self._initialized = False
        self._default_context: EvaluationContext = EvaluationContext(
            system={"environment": self.settings.environment}
        )

        self._flag_change_callbacks: List[FlagChangeCallback] = []
        self._error_callbacks: List[ErrorCallback] = []
        self._evaluation_callbacks: List[EvaluationCallback] = []

        logger.info(
            f"Feature flags service created (environment={self.settings.environment}, "
            f"default_provider={self.settings.default_provider}, "
            f"fallback_provider={self.settings.fallback_provider}, "
            f"cache_enabled={self.settings.cache.enabled})"
        )

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def providers(self) -> Dict[str, FlagProvider]:
        return dict(self._providers)

    @property
    def default_provider(self) -> Optional[FlagProvider]:
        return self._providers.get(self.settings.default_provider)

    async def __aenter__(self) -> "FeatureFlagsService":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    async def initialize(self) -> None:
        """Create and initialize providers, then wire listeners and fallbacks.

        Raises:
            ConfigurationError: the default provider is missing or failed to start
        """
        if self._initialized:
            return

        logger.info("Initializing feature flags service")
        await self._initialize_providers()

        if self.settings.default_provider not in self._providers:
            raise ConfigurationError(f"Default provider '{self.settings.default_provider}' not found")

        fallback_name = self.settings.fallback_provider
        if fallback_name and fallback_name != self.settings.default_provider:
            fallback = self._providers.get(fallback_name)
            if fallback is not None and fallback.settings.fallback_enabled:
                self.error_handler.register_fallback_strategy("*", provider_fallback_strategy(fallback))
            elif fallback is None:
                logger.warning(f"Fallback provider '{fallback_name}' is not available")

        for provider in self._providers.values():
            provider.on_flag_change(self._handle_flag_change)

        if self.settings.metrics.enabled:
            self.metrics.start_periodic_cleanup()

        self._initialized = True
        logger.info(f"Feature flags service initialized with providers: {', '.join(self._providers)}")

    async def _initialize_providers(self) -> None:
        if self._injected_providers:
            candidates = list(self._injected_providers.items())
        else:
            configs = self.settings.providers or default_provider_settings(self.settings.environment)
            candidates = []
            for config in configs:
                try:
                    candidates.append((config.name, create_provider(config)))
                except ConfigurationError:
                    if config.name == self.settings.default_provider:
                        raise
                    logger.error(f"Skipping provider '{config.name}': unsupported configuration")

        for name, provider in candidates:
            try:
                await provider.initialize()
            except Exception as exc:
                logger.error(f"Failed to initialize provider '{name}': {exc}")
                if name == self.settings.default_provider:
                    raise ConfigurationError(
                        f"Failed to initialize default provider '{name}': {exc}",
                        cause=exc,
                    ) from exc
                continue
            self._providers[name] = provider

    async def shutdown(self) -> None:
        logger.info("Shutting down feature flags service")
        await self.metrics.stop_periodic_cleanup()

        for name, provider in self._providers.items():
            try:
                await provider.dispose()
            except Exception as exc:
                logger.error(f"Error disposing provider '{name}': {exc}")

        self._providers.clear()
        self.cache.clear()
        self._flag_change_callbacks.clear()
        self._error_callbacks.clear()
        self._evaluation_callbacks.clear()
        self._initialized = False
        logger.info("Feature flags service shut down")

    def set_default_context(self, context: ContextLike) -> None:
        """Merge ``context`` into the context applied to every evaluation."""
        self._default_context = merge_contexts(self._default_context, context)
        logger.debug(f"Default context updated: {self._default_context.to_dict()}")

    def _build_context(self, context: ContextLike) -> EvaluationContext:
        merged = merge_contexts(self._default_context, context)
        return merged.with_timestamp(utcnow())

    async def get_boolean_flag(
        self, flag_key: str, default_value: bool, context: ContextLike = None
    ) -> EvaluationResult[bool]:
        return await self._evaluate(flag_key, default_value, context, "resolve_boolean")

    async def get_string_flag(
        self, flag_key: str, default_value: str, context: ContextLike = None
    ) -> EvaluationResult[str]:
        return await self._evaluate(flag_key, default_value, context, "resolve_string")

    async def get_number_flag(
        self, flag_key: str, default_value: float, context: ContextLike = None
    ) -> EvaluationResult[float]:
        return await self._evaluate(flag_key, default_value, context, "resolve_number")

    async def get_variant_flag(
        self, flag_key: str, default_variant: str = "control", context: ContextLike = None
    ) -> EvaluationResult[str]:
        """Variants are string flags; the provider picks the split."""
        return await self._evaluate(flag_key, default_variant, context, "resolve_string")

    async def get_object_flag(
        self, flag_key: str, default_value: Any, context: ContextLike = None
    ) -> EvaluationResult[Any]:
        return await self._evaluate(flag_key, default_value, context, "resolve_object")

    async def get_typed_flag(self, flag_key: str, context: ContextLike = None) -> EvaluationResult[Any]:
        """Evaluate one of the well-known flags in ``TYPED_FLAG_DEFAULTS``.

        Raises:
            ValueError: ``flag_key`` is not a typed flag
        """
        default_value = typed_flag_default(flag_key)
        return await self._evaluate(flag_key, default_value, context, _resolver_for(default_value))

    async def get_all_typed_flags(self, context: ContextLike = None) -> Dict[str, Any]:
        keys = list(TYPED_FLAG_DEFAULTS)
        outcomes = await asyncio.gather(
            *(self.get_typed_flag(key, context) for key in keys),
            return_exceptions=True,
        )
        values: Dict[str, Any] = {}
        for key, outcome in zip(keys, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Typed flag '{key}' failed: {outcome}")
                continue
            values[key] = outcome.value
        return values

    async def evaluate_flags(
        self,
        flags: Union[Iterable[str], Mapping[str, Any]],
        context: ContextLike = None,
        parallel: bool = False,
    ) -> Dict[str, EvaluationResult]:
        """Evaluate several flags; one flag's failure never affects the others.

        Args:
            flags: flag keys, or a mapping of flag key to default value. Keys
                without a default use their typed default when known, else
                ``None`` (resolved as an object flag).
            context: evaluation context shared by all flags
            parallel: evaluate concurrently instead of one after another

        Returns:
            Results keyed by flag key, in input order
        """
        if isinstance(flags, Mapping):
            requests = dict(flags)
        else:
            requests = {key: TYPED_FLAG_DEFAULTS.get(key) for key in flags}

        results: Dict[str, EvaluationResult] = {}
        if parallel:
            outcomes = await asyncio.gather(
                *(self._evaluate(key, default, context, _resolver_for(default)) for key, default in requests.items()),
                return_exceptions=True,
            )
            for (key, default), outcome in zip(requests.items(), outcomes):
                if isinstance(outcome, BaseException):
                    logger.error(f"Error evaluating flag '{key}' in bulk: {outcome}")
                    outcome = self._error_result(key, default, context, outcome)
                results[key] = outcome
            return results

        for key, default in requests.items():
            try:
                results[key] = await self._evaluate(key, default, context, _resolver_for(default))
            except Exception as exc:
                logger.error(f"Error evaluating flag '{key}' in bulk: {exc}")
                results[key] = self._error_result(key, default, context, exc)
        return results

    def _error_result(
        self, flag_key: str, default_value: Any, context: ContextLike, error: BaseException
    ) -> EvaluationResult:
        return EvaluationResult(
            flag_key=flag_key,
            value=default_value,
            reason=EvaluationReason.ERROR,
            source=EvaluationSource.FALLBACK,
            context=merge_contexts(self._default_context, context),
            metadata={"error": str(error), "error_type": type(error).__name__},
        )

    async def _evaluate(
        self,
        flag_key: str,
        default_value: Any,
        context: ContextLike,
        resolver: str,
    ) -> EvaluationResult:
        eval_context = self._build_context(context)
        with evaluation_log_context(flag_key, eval_context.targeting_key):
            return await self._evaluate_in_context(flag_key, default_value, eval_context, resolver)

    async def _evaluate_in_context(
        self,
        flag_key: str,
        default_value: Any,
        eval_context: EvaluationContext,
        resolver: str,
    ) -> EvaluationResult:
        started_at = time.perf_counter()

        provider = self.default_provider
        if not self._initialized or provider is None:
            error = ConfigurationError(
                "Feature flags service is not initialized. Call initialize() first.",
                flag_key=flag_key,
            )
            self._emit_error(flag_key, error, eval_context)
            return await self.error_handler.handle_error(error, flag_key, default_value, eval_context)

        cached = self._lookup_cache(flag_key, default_value, eval_context)
        if cached is not None:
            self.metrics.record_cache_hit(flag_key)
            result = replace(cached, source=EvaluationSource.CACHE, context=eval_context)
            duration_ms = (time.perf_counter() - started_at) * 1000
            logger.debug(f"Returning cached value for '{flag_key}': {result.value!r}")
            self.metrics.record_evaluation(
                flag_key, duration_ms, result.source.value, eval_context, result.reason.value
            )
            self._emit_evaluation(result, duration_ms)
            return result

        timeout_s = self.settings.evaluation_timeout_ms / 1000

        # Only provider failures may reach the breaker; the type check runs after it.
        async def operation() -> EvaluationResult:
            try:
                details = await asyncio.wait_for(
                    getattr(provider, resolver)(flag_key, default_value, eval_context),
                    timeout=timeout_s,
                )
            except asyncio.TimeoutError as exc:
                raise EvaluationTimeoutError(self.settings.evaluation_timeout_ms, flag_key=flag_key) from exc

            return EvaluationResult(
                flag_key=flag_key,
                value=details.value,
                reason=details.reason,
                source=EvaluationSource.PROVIDER,
                context=eval_context,
                variant=details.variant,
                metadata=dict(details.metadata),
                provider_name=provider.name,
            )

        result = await self.error_handler.handle_evaluation(
            operation,
            flag_key,
            default_value,
            eval_context,
            provider_name=provider.name,
            on_error=lambda exc: self._emit_error(flag_key, exc, eval_context),
            max_attempts=provider.settings.retries + 1,
        )
        if result.source != EvaluationSource.PROVIDER:
            return result

        if not _matches_type(result.value, default_value):
            error = FeatureFlagError(
                f"Flag '{flag_key}' returned {type(result.value).__name__}, "
                f"expected {type(default_value).__name__}",
                code=ErrorCode.TYPE_MISMATCH,
                flag_key=flag_key,
            )
            self._emit_error(flag_key, error, eval_context)
            return await self.error_handler.handle_error(error, flag_key, default_value, eval_context)

        self._store_cache(flag_key, eval_context, result, provider)
        duration_ms = (time.perf_counter() - started_at) * 1000
        logger.debug(f"Flag '{flag_key}' evaluated to {result.value!r} ({result.reason.value})")
        self.metrics.record_evaluation(flag_key, duration_ms, result.source.value, eval_context, result.reason.value)
        self._emit_evaluation(result, duration_ms)
        return result

    def _lookup_cache(
        self, flag_key: str, default_value: Any, context: EvaluationContext
    ) -> Optional[EvaluationResult]:
        if not self.settings.cache.enabled:
            return None
        try:
            cached = self.cache.get_cached_evaluation_result(flag_key, context)
        except CacheError as exc:
            logger.warning(f"Cache lookup failed for '{flag_key}', bypassing cache: {exc}")
            return None
        if cached is None or not _matches_type(cached.value, default_value):
            self.metrics.record_cache_miss(flag_key)
            return None
        return cached

    def _store_cache(
        self,
        flag_key: str,
        context: EvaluationContext,
        result: EvaluationResult,
        provider: FlagProvider,
    ) -> None:
        if not self.settings.cache.enabled:
            return
        ttl = None
        if "cache_ttl_seconds" in provider.settings.model_fields_set:
            ttl = provider.settings.cache_ttl_seconds
        try:
            self.cache.cache_evaluation_result(flag_key, context, result, ttl)
        except CacheError as exc:
            logger.warning(f"Failed to cache result for '{flag_key}': {exc}")

    def _emit_evaluation(self, result: EvaluationResult, duration_ms: float) -> None:
        event = EvaluationEvent(
            flag_key=result.flag_key,
            value=result.value,
            context=result.context,
            result=result,
            duration_ms=duration_ms,
        )
        for callback in list(self._evaluation_callbacks):
            try:
                callback(event)
            except Exception as exc:
                logger.error(f"Error in evaluation callback: {exc}")

    def _emit_error(self, flag_key: str, error: BaseException, context: EvaluationContext) -> None:
        if not isinstance(error, FeatureFlagError):
            error = FeatureFlagError(
                str(error) or type(error).__name__,
                code=ErrorCode.EVALUATION_ERROR,
                flag_key=flag_key,
                cause=error,
            )
        self.metrics.record_error(flag_key, error, context)
        for callback in list(self._error_callbacks):
            try:
                callback(error)
            except Exception as exc:
                logger.error(f"Error in error callback: {exc}")

    def _handle_flag_change(self, event: FlagChangeEvent) -> None:
        removed = self.cache.invalidate_flag(event.flag_key)
        logger.debug(f"Flag '{event.flag_key}' changed, invalidated {removed} cache entries")
        for callback in list(self._flag_change_callbacks):
            try:
                callback(event)
            except Exception as exc:
                logger.error(f"Error in flag change callback: {exc}")

    async def flag_exists(self, flag_key: str) -> bool:
        provider = self.default_provider
        if not self._initialized or provider is None:
            return False
        try:
            return await provider.flag_exists(flag_key)
        except Exception as exc:
            logger.debug(f"Flag existence check failed for '{flag_key}': {exc}")
            return False

    async def get_all_flags(self) -> List[FlagConfig]:
        provider = self.default_provider
        if not self._initialized or provider is None:
            return []
        return await provider.list_flags()

    async def refresh_cache(self) -> None:
        logger.info("Refreshing flag cache")
        self.cache.clear()

    def invalidate_flag(self, flag_key: str) -> int:
        return self.cache.invalidate_flag(flag_key)

    async def is_healthy(self) -> bool:
        provider = self.default_provider
        if not self._initialized or provider is None:
            return False
        if not await provider.is_healthy():
            return False

        cache_health = self.cache.get_health()
        if not cache_health.healthy:
            logger.warning(f"Cache is not healthy: {', '.join(cache_health.issues)}")
        return True

    def on_flag_change(self, callback: FlagChangeCallback) -> None:
        self._flag_change_callbacks.append(callback)

    def on_error(self, callback: ErrorCallback) -> None:
        self._error_callbacks.append(callback)

    def on_evaluation(self, callback: EvaluationCallback) -> None:
        self._evaluation_callbacks.append(callback)

    def get_service_info(self) -> Dict[str, Any]:
        cache_health = self.cache.get_health()
        return {
            "initialized": self._initialized,
            "environment": self.settings.environment,
            "default_provider": self.settings.default_provider,
            "fallback_provider": self.settings.fallback_provider,
            "providers": {name: p.status_snapshot() for name, p in self._providers.items()},
            "cache_stats": self.cache.get_stats().to_dict(),
            "cache_health": {"healthy": cache_health.healthy, "issues": list(cache_health.issues)},
            "circuit_breakers": self.error_handler.get_circuit_breaker_health(),
        }


def create_feature_flags_service(environment: Optional[str] = None, **overrides: Any) -> FeatureFlagsService:
    """Build a service with environment-tuned settings."""
    settings = create_default_settings(environment or detect_environment(), **overrides)
    return FeatureFlagsService(settings)


__all__ = ["FeatureFlagsService", "create_feature_flags_service"]
