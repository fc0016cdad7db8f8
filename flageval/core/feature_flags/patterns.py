"""Feature flag usage patterns.

Higher-level helpers built on :class:`FeatureFlagsService`: feature gates,
A/B tests, kill switches, rollouts and time-boxed activation. Evaluation
itself never raises, so the helpers only decide which callable to run;
exceptions raised by those callables propagate to the caller.
"""

from __future__ import annotations

import functools
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Dict,
    Mapping,
    Optional,
    Sequence,
    TypeVar,
    Union,
)

from flageval.core.config import detect_environment
from flageval.core.errors import FeatureFlagError
from flageval.core.feature_flags.context import ContextLike, EvaluationContext

if TYPE_CHECKING:
    from flageval.core.feature_flags.service import FeatureFlagsService

logger = logging.getLogger(__name__)

T = TypeVar("T")

Action = Callable[[], Union[T, Awaitable[T]]]


class FeatureDisabledError(FeatureFlagError):
    """Raised by a gate configured with ``throw_on_disabled``."""


async def _run(action: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    result = action(*args, **kwargs)
    if inspect.isawaitable(result):
        result = await result
    return result


@dataclass
class FeatureGateOptions:
    fallback: Any = None
    context: ContextLike = None
    throw_on_disabled: bool = False
    log_access: bool = False


@dataclass
class TimeWindow:
    """Activation window; ``days_of_week`` uses ``datetime.weekday()`` (Monday is 0)."""

    start: Optional[datetime] = None
    end: Optional[datetime] = None
    days_of_week: Optional[Sequence[int]] = None
    hours_of_day: Optional[Sequence[int]] = None

    def is_active(self, now: datetime) -> bool:
        if self.start is not None and now < self.start:
            return False
        if self.end is not None and now > self.end:
            return False
        if self.days_of_week is not None and now.weekday() not in self.days_of_week:
            return False
        if self.hours_of_day is not None and now.hour not in self.hours_of_day:
            return False
        return True


def with_feature_flag(
    service: "FeatureFlagsService",
    flag_key: str,
    func: Callable[..., Any],
    options: Optional[FeatureGateOptions] = None,
) -> Callable[..., Awaitable[Any]]:
    """Wrap ``func`` so it only runs while ``flag_key`` is enabled.

    When the flag is off the wrapper returns ``options.fallback`` or, with
    ``throw_on_disabled``, raises :class:`FeatureDisabledError`.

    Example:
        export_v2 = with_feature_flag(service, "newExporter", export_report)
        await export_v2(report_id)
    """
    options = options or FeatureGateOptions()

    @functools.wraps(func)
    async def gated(*args: Any, **kwargs: Any) -> Any:
        result = await service.get_boolean_flag(flag_key, False, options.context)
        if options.log_access:
            logger.info(f"Feature gate '{flag_key}' accessed: enabled={result.value} ({result.reason.value})")
        if result.value:
            return await _run(func, *args, **kwargs)
        if options.throw_on_disabled:
            raise FeatureDisabledError(f"Feature '{flag_key}' is disabled", flag_key=flag_key)
        logger.debug(f"Feature '{flag_key}' is disabled, skipping {getattr(func, '__name__', func)}")
        return options.fallback

    return gated


class FeatureFlagPatterns:
    """Common flag-driven control flow over one service."""

    def __init__(self, service: "FeatureFlagsService"):
        self.service = service

    async def feature_gate(
        self,
        flag_key: str,
        enabled_fn: Action[T],
        options: Optional[FeatureGateOptions] = None,
    ) -> Optional[T]:
        return await with_feature_flag(self.service, flag_key, enabled_fn, options)()

    async def ab_test(
        self,
        flag_key: str,
        variants: Mapping[str, Action[T]],
        default_variant: str,
        context: ContextLike = None,
    ) -> T:
        """Run the handler for the evaluated variant, or the default variant's handler."""
        if default_variant not in variants:
            raise ValueError(f"Default variant '{default_variant}' has no handler")

        result = await self.service.get_variant_flag(flag_key, default_variant, context)
        handler = variants.get(result.value)
        if handler is None:
            logger.warning(
                f"Unknown A/B test variant '{result.value}' for '{flag_key}', using '{default_variant}'"
            )
            handler = variants[default_variant]
        else:
            logger.info(f"A/B test '{flag_key}' selected variant '{result.value}' ({result.reason.value})")
        return await _run(handler)

    async def kill_switch(
        self,
        flag_key: str,
        protected_fn: Action[T],
        context: ContextLike = None,
        emergency_fallback: Optional[Action[T]] = None,
        alert_on_kill: bool = False,
    ) -> Optional[T]:
        """``protected_fn`` runs while the flag stays on (default on); off means killed."""
        result = await self.service.get_boolean_flag(flag_key, True, context)
        if result.value:
            return await _run(protected_fn)

        if alert_on_kill:
            logger.error(f"Kill switch '{flag_key}' activated ({result.reason.value})")
        if emergency_fallback is not None:
            return await _run(emergency_fallback)
        return None

    async def progressive_rollout(
        self,
        flag_key: str,
        new_fn: Action[T],
        old_fn: Action[T],
        context: ContextLike = None,
    ) -> T:
        result = await self.service.get_boolean_flag(flag_key, False, context)
        logger.info(f"Progressive rollout '{flag_key}': enabled={result.value} ({result.reason.value})")
        return await _run(new_fn if result.value else old_fn)

    async def canary_deployment(
        self,
        flag_key: str,
        canary_fn: Action[T],
        stable_fn: Action[T],
        context: ContextLike = None,
    ) -> T:
        return await self.progressive_rollout(flag_key, canary_fn, stable_fn, context)

    async def conditional_execution(
        self,
        flag_key: str,
        conditions: Mapping[str, Action[T]],
        fallback: Optional[Action[T]] = None,
        context: ContextLike = None,
        log_execution: bool = False,
    ) -> T:
        """Dispatch on a string flag; unknown values use ``fallback`` or raise ``KeyError``."""
        result = await self.service.get_string_flag(flag_key, "default", context)
        if log_execution:
            logger.info(f"Conditional execution '{flag_key}': condition={result.value!r}")

        handler = conditions.get(result.value)
        if handler is not None:
            return await _run(handler)
        if fallback is not None:
            logger.warning(f"No handler for condition {result.value!r} of '{flag_key}', using fallback")
            return await _run(fallback)
        raise KeyError(f"No handler found for condition: {result.value}")

    async def get_config(self, flag_key: str, default_value: T, context: ContextLike = None) -> T:
        """Configuration value typed by its default (``bool`` checked before numbers)."""
        if isinstance(default_value, bool):
            result = await self.service.get_boolean_flag(flag_key, default_value, context)
        elif isinstance(default_value, (int, float)):
            result = await self.service.get_number_flag(flag_key, default_value, context)
        elif isinstance(default_value, str):
            result = await self.service.get_string_flag(flag_key, default_value, context)
        else:
            result = await self.service.get_object_flag(flag_key, default_value, context)
        return result.value

    async def maintenance_mode(
        self,
        normal_fn: Action[T],
        maintenance_fn: Action[T],
        context: ContextLike = None,
    ) -> T:
        result = await self.service.get_typed_flag("maintenanceMode", context)
        if result.value:
            logger.warning("Maintenance mode is active")
            return await _run(maintenance_fn)
        return await _run(normal_fn)

    async def user_segment_targeting(
        self,
        handlers: Mapping[str, Action[T]],
        default_handler: Action[T],
        context: ContextLike = None,
    ) -> T:
        ctx = context if isinstance(context, EvaluationContext) else EvaluationContext.from_dict(context)
        user_type = ctx.user.get("user_type") or "default"
        return await _run(handlers.get(user_type, default_handler))

    async def time_based_activation(
        self,
        flag_key: str,
        active_fn: Action[T],
        inactive_fn: Action[T],
        window: TimeWindow,
        context: ContextLike = None,
        now: Optional[datetime] = None,
    ) -> T:
        """``active_fn`` runs only when the flag is on and ``now`` falls inside ``window``."""
        in_window = window.is_active(now or datetime.now())
        result = await self.service.get_boolean_flag(flag_key, False, context)
        enabled = bool(result.value) and in_window
        logger.debug(
            f"Time-based activation '{flag_key}': flag={result.value} window={in_window} enabled={enabled}"
        )
        return await _run(active_fn if enabled else inactive_fn)


async def check_multiple_flags(
    service: "FeatureFlagsService",
    flags: Mapping[str, bool],
    context: ContextLike = None,
) -> Dict[str, bool]:
    """Evaluate several boolean flags concurrently."""
    results = await service.evaluate_flags(dict(flags), context, parallel=True)
    return {key: bool(result.value) for key, result in results.items()}


def context_from_request(request: Any, user: Optional[Mapping[str, Any]] = None) -> EvaluationContext:
    """Build an evaluation context from an HTTP request.

    ``request`` is anything exposing ``headers`` (a Starlette ``Request`` or a
    plain object); ``user`` defaults to ``request.state.user`` when present.
    """
    headers = getattr(request, "headers", None) or {}
    if user is None:
        state = getattr(request, "state", None)
        user = getattr(state, "user", None) or {}

    client = getattr(request, "client", None)
    ip_address = getattr(client, "host", None) or getattr(request, "ip", None)
    user_agent = headers.get("user-agent", "")
    user_id = user.get("id") or user.get("user_id") or headers.get("x-user-id")

    user_bag = {
        "user_id": user_id,
        "email": user.get("email"),
        "user_type": user.get("type") or user.get("user_type"),
        "subscription_tier": user.get("subscription_tier"),
        "subscription_active": user.get("subscription_active"),
        "beta_opted_in": user.get("beta_opted_in"),
        "registration_date": user.get("registration_date"),
        "country": user.get("country"),
        "language": user.get("language"),
    }
    system_bag = {
        "environment": detect_environment(),
        "device_type": "mobile" if "mobile" in user_agent.lower() else "desktop",
        "user_agent": user_agent,
        "ip_address": ip_address,
        "request_id": headers.get("x-request-id"),
        "timestamp": datetime.now().astimezone().isoformat(),
    }
    return EvaluationContext(
        targeting_key=user_id or ip_address or "anonymous",
        user={k: v for k, v in user_bag.items() if v is not None},
        system={k: v for k, v in system_bag.items() if v is not None},
    )


__all__ = [
    "FeatureDisabledError",
    "FeatureFlagPatterns",
    "FeatureGateOptions",
    "TimeWindow",
    "check_multiple_flags",
    "context_from_request",
    "with_feature_flag",
]
