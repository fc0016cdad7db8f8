"""Evaluation context construction, merging and fingerprinting."""

from __future__ import annotations

import copy
import hashlib
import json
from dataclasses import dataclass, field, replace
from datetime import datetime
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Union

from flageval.core.config import detect_environment

USER_FIELDS = (
    "user_id",
    "user_type",
    "email",
    "subscription_tier",
    "subscription_active",
    "beta_opted_in",
    "registration_date",
    "user_role",
    "country",
    "region",
    "timezone",
    "language",
    "custom_attributes",
)

SYSTEM_FIELDS = (
    "environment",
    "version",
    "device_type",
    "platform",
    "user_agent",
    "ip_address",
    "timestamp",
    "session_id",
    "request_id",
    "custom_attributes",
)

EXPERIMENT_FIELDS = ("id", "variant", "cohort")

_BAGS = ("user", "system", "experiment", "attributes")


@dataclass(frozen=True)
class EvaluationContext:
    """Request-scoped, read-only inputs to an evaluation."""

    targeting_key: Optional[str] = None
    user: Mapping[str, Any] = field(default_factory=dict)
    system: Mapping[str, Any] = field(default_factory=dict)
    experiment: Mapping[str, Any] = field(default_factory=dict)
    attributes: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for name in _BAGS:
            value = getattr(self, name)
            object.__setattr__(self, name, MappingProxyType(copy.deepcopy(dict(value or {}))))

    @property
    def user_id(self) -> Optional[str]:
        return self.user.get("user_id")

    @property
    def identity(self) -> str:
        """Stable bucketing identity: user id, then targeting key, then ``anonymous``."""
        return self.user.get("user_id") or self.targeting_key or "anonymous"

    def with_timestamp(self, timestamp: Union[datetime, str]) -> "EvaluationContext":
        if isinstance(timestamp, datetime):
            timestamp = timestamp.isoformat()
        return replace(self, system={**self.system, "timestamp": timestamp})

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"targeting_key": self.targeting_key}
        for name in _BAGS:
            data[name] = copy.deepcopy(dict(getattr(self, name)))
        return data

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "EvaluationContext":
        if not data:
            return cls()
        extra = {k: v for k, v in data.items() if k not in _BAGS and k != "targeting_key"}
        return cls(
            targeting_key=data.get("targeting_key"),
            user=data.get("user") or {},
            system=data.get("system") or {},
            experiment=data.get("experiment") or {},
            attributes={**extra, **(data.get("attributes") or {})},
        )


ContextLike = Union[EvaluationContext, Mapping[str, Any], None]


def _as_context(value: ContextLike) -> EvaluationContext:
    if isinstance(value, EvaluationContext):
        return value
    return EvaluationContext.from_dict(value)


def _merge_bag(base: Dict[str, Any], update: Mapping[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in update.items():
        if key == "custom_attributes" and isinstance(value, Mapping):
            merged[key] = {**merged.get(key, {}), **value}
        else:
            merged[key] = value
    return merged


def merge_contexts(*contexts: ContextLike) -> EvaluationContext:
    """Merge contexts left to right, bag by bag; later values win.

    An empty targeting key never replaces one set by an earlier context.
    """
    targeting_key: Optional[str] = None
    bags: Dict[str, Dict[str, Any]] = {name: {} for name in _BAGS}

    for raw in contexts:
        if raw is None:
            continue
        ctx = _as_context(raw)
        if ctx.targeting_key:
            targeting_key = ctx.targeting_key
        for name in _BAGS:
            bags[name] = _merge_bag(bags[name], getattr(ctx, name))

    return EvaluationContext(targeting_key=targeting_key, **bags)


def create_evaluation_context(
    user_id: Optional[str] = None,
    user_attributes: Optional[Mapping[str, Any]] = None,
    system_attributes: Optional[Mapping[str, Any]] = None,
    targeting_key: Optional[str] = None,
    experiment: Optional[Mapping[str, Any]] = None,
    **attributes: Any,
) -> EvaluationContext:
    user: Dict[str, Any] = {"user_id": user_id} if user_id else {}
    user.update(user_attributes or {})
    system: Dict[str, Any] = {
        "environment": detect_environment(),
        "timestamp": datetime.now().astimezone().isoformat(),
    }
    system.update(system_attributes or {})
    return EvaluationContext(
        targeting_key=targeting_key or user_id or "anonymous",
        user=user,
        system=system,
        experiment=experiment or {},
        attributes=attributes,
    )


def create_context_key(context: ContextLike) -> str:
    """Fingerprint a context for cache keys.

    Insertion order does not matter and the per-call timestamp is ignored, so
    two semantically identical contexts always produce the same key.
    """
    ctx = _as_context(context)
    payload = ctx.to_dict()
    payload["system"].pop("timestamp", None)

    parts = []
    if ctx.targeting_key:
        parts.append(f"tk:{ctx.targeting_key}")
    if ctx.user.get("user_id"):
        parts.append(f"uid:{ctx.user['user_id']}")
    if ctx.user.get("user_type"):
        parts.append(f"ut:{ctx.user['user_type']}")
    if ctx.system.get("environment"):
        parts.append(f"env:{ctx.system['environment']}")
    if ctx.system.get("device_type"):
        parts.append(f"dt:{ctx.system['device_type']}")

    canonical = json.dumps(payload, sort_keys=True, default=str, separators=(",", ":"))
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]
    parts.append(f"h:{digest}")
    return "|".join(parts)


__all__ = [
    "EXPERIMENT_FIELDS",
    "EvaluationContext",
    "SYSTEM_FIELDS",
    "USER_FIELDS",
    "create_context_key",
    "create_evaluation_context",
    "merge_contexts",
]
