"""Targeting rules, segment predicates and deterministic percentage rollout."""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping, Optional, Sequence, Union

from flageval.core.feature_flags.context import EvaluationContext
from flageval.core.feature_flags.types import FlagConfig, FlagVariant

logger = logging.getLogger(__name__)

SegmentPredicate = Callable[[EvaluationContext], bool]

INTERNAL_EMAIL_DOMAIN = "@company.com"
NEW_USER_WINDOW = timedelta(days=30)


@dataclass(frozen=True)
class TargetingResult:
    value: Any
    segment: str
    rollout_percentage: float
    variant: Optional[str] = None


def percentage_bucket(identity: str) -> int:
    """Map an identity onto a stable bucket in [0, 100)."""
    digest = hashlib.md5(identity.encode("utf-8")).hexdigest()  # nosec B324 - bucketing only
    return int(digest[:8], 16) % 100


def should_rollout(subject: Union[EvaluationContext, str], rollout_percentage: float) -> bool:
    if rollout_percentage >= 100:
        return True
    if rollout_percentage <= 0:
        return False
    identity = subject.identity if isinstance(subject, EvaluationContext) else (subject or "anonymous")
    return percentage_bucket(identity) < rollout_percentage


def _parse_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _is_beta_user(context: EvaluationContext) -> bool:
    return context.user.get("user_type") == "beta" and context.user.get("beta_opted_in") is True


def _is_premium_user(context: EvaluationContext) -> bool:
    tier = context.user.get("subscription_tier")
    return tier in ("premium", "enterprise") and context.user.get("subscription_active") is True


def _is_internal_user(context: EvaluationContext) -> bool:
    email = context.user.get("email") or ""
    return email.endswith(INTERNAL_EMAIL_DOMAIN) or context.user.get("user_role") == "internal"


def _is_mobile_user(context: EvaluationContext) -> bool:
    return context.system.get("device_type") == "mobile"


def _is_in_country(context: EvaluationContext, country: str) -> bool:
    custom = context.system.get("custom_attributes") or {}
    return context.user.get("country") == country or custom.get("country") == country


def _is_new_user(context: EvaluationContext, now: datetime) -> bool:
    registered = _parse_datetime(context.user.get("registration_date"))
    if registered is None:
        return False
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return registered > now - NEW_USER_WINDOW


def _is_high_traffic_time(now: datetime) -> bool:
    # Monday..Friday, 09:00 through 17:59
    return now.weekday() < 5 and 9 <= now.hour <= 17


def evaluate_segment(
    segment: str,
    context: EvaluationContext,
    custom_segments: Optional[Mapping[str, SegmentPredicate]] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Return True when the context belongs to the named segment."""
    if custom_segments and segment in custom_segments:
        return bool(custom_segments[segment](context))

    if segment == "beta_users":
        return _is_beta_user(context)
    if segment == "premium_users":
        return _is_premium_user(context)
    if segment == "internal_users":
        return _is_internal_user(context)
    if segment == "mobile_users":
        return _is_mobile_user(context)
    if segment.startswith("geographic_") and len(segment) > len("geographic_"):
        return _is_in_country(context, segment[len("geographic_"):].upper())
    if segment == "new_users":
        return _is_new_user(context, now or datetime.now(timezone.utc))
    if segment == "high_traffic_times":
        return _is_high_traffic_time(now or datetime.now())

    logger.warning(f"Unknown segment '{segment}', treating as no match")
    return False


def evaluate_targeting(
    flag: FlagConfig,
    context: EvaluationContext,
    custom_segments: Optional[Mapping[str, SegmentPredicate]] = None,
    now: Optional[datetime] = None,
) -> Optional[TargetingResult]:
    """Walk the flag's rules in order and return the first that applies.

    A rule whose segment matches but whose rollout excludes the context does
    not stop the walk.
    """
    for rule in flag.targeting:
        if not rule.enabled:
            continue
        if not evaluate_segment(rule.segment, context, custom_segments, now):
            continue
        if not should_rollout(context, rule.rollout_percentage):
            logger.debug(
                f"Flag '{flag.key}': segment '{rule.segment}' matched but "
                f"not rolled out ({rule.rollout_percentage}%)"
            )
            continue

        value = rule.value_override if rule.value_override is not None else flag.default_value
        return TargetingResult(
            value=value,
            segment=rule.segment,
            rollout_percentage=rule.rollout_percentage,
            variant=rule.variant_override,
        )
    return None


def select_variant(variants: Sequence[FlagVariant], context: EvaluationContext) -> FlagVariant:
    """Pick a variant by weight, deterministically per identity."""
    if not variants:
        raise ValueError("no variants to select from")

    total_weight = sum(max(v.weight, 0) for v in variants)
    if total_weight <= 0:
        return variants[0]

    digest = hashlib.md5(context.identity.encode("utf-8")).hexdigest()  # nosec B324
    point = (int(digest[:8], 16) % 10000) / 10000 * total_weight

    cumulative = 0.0
    for variant in variants:
        cumulative += max(variant.weight, 0)
        if point < cumulative:
            return variant
    return variants[-1]


__all__ = [
    "SegmentPredicate",
    "TargetingResult",
    "evaluate_segment",
    "evaluate_targeting",
    "percentage_bucket",
    "select_variant",
    "should_rollout",
]
