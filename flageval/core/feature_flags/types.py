"""Data model shared by providers, the cache and the evaluation service."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Generic, List, Optional, TypeVar, Union

if TYPE_CHECKING:
    from flageval.core.feature_flags.context import EvaluationContext

T = TypeVar("T")

FlagValue = Union[bool, str, int, float, Dict[str, Any], List[Any]]


class EvaluationReason(str, Enum):
    STATIC = "STATIC"
    DEFAULT = "DEFAULT"
    TARGETING_MATCH = "TARGETING_MATCH"
    SPLIT = "SPLIT"
    DISABLED = "DISABLED"
    ERROR = "ERROR"
    CACHED = "CACHED"
    FALLBACK = "FALLBACK"


class EvaluationSource(str, Enum):
    CACHE = "cache"
    PROVIDER = "provider"
    FALLBACK = "fallback"


class FlagValueType(str, Enum):
    BOOLEAN = "boolean"
    STRING = "string"
    NUMBER = "number"
    VARIANT = "variant"
    OBJECT = "object"


class FlagCategory(str, Enum):
    NEW_FEATURES = "new_features"
    OPERATIONAL = "operational"
    AB_TESTING = "ab_testing"
    KILL_SWITCHES = "kill_switches"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TargetingRule:
    """Segment rule; the first enabled rule that matches and rolls out wins."""

    segment: str
    enabled: bool = True
    rollout_percentage: float = 100.0
    variant_override: Optional[str] = None
    value_override: Optional[Any] = None


@dataclass
class FlagVariant:
    key: str
    name: str = ""
    weight: float = 0.0
    description: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class FlagConfig:
    """Full definition of a flag as held by the in-memory provider."""

    key: str
    default_value: Any
    name: str = ""
    description: str = ""
    category: FlagCategory = FlagCategory.NEW_FEATURES
    type: FlagValueType = FlagValueType.BOOLEAN
    enabled: bool = True
    targeting: List[TargetingRule] = field(default_factory=list)
    variants: List[FlagVariant] = field(default_factory=list)
    fallback_value: Optional[Any] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FlagConfig":
        """Build a flag from a plain mapping, as loaded from YAML or JSON."""
        if "key" not in data:
            raise ValueError("flag definition is missing 'key'")
        if "default_value" not in data:
            raise ValueError(f"flag '{data['key']}' is missing 'default_value'")

        return cls(
            key=data["key"],
            default_value=data["default_value"],
            name=data.get("name", data["key"]),
            description=data.get("description", ""),
            category=FlagCategory(data.get("category", FlagCategory.NEW_FEATURES.value)),
            type=FlagValueType(data.get("type", FlagValueType.BOOLEAN.value)),
            enabled=data.get("enabled", True),
            targeting=[TargetingRule(**rule) for rule in data.get("targeting", [])],
            variants=[FlagVariant(**variant) for variant in data.get("variants", [])],
            fallback_value=data.get("fallback_value"),
            metadata=dict(data.get("metadata", {})),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["category"] = self.category.value
        data["type"] = self.type.value
        return data


@dataclass(frozen=True)
class EvaluationResult(Generic[T]):
    """Outcome of a single evaluation. ``source`` always names the true origin."""

    flag_key: str
    value: T
    reason: EvaluationReason
    source: EvaluationSource
    context: "EvaluationContext"
    evaluation_time: datetime = field(default_factory=utcnow)
    variant: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    provider_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "flag_key": self.flag_key,
            "value": self.value,
            "variant": self.variant,
            "reason": self.reason.value,
            "source": self.source.value,
            "metadata": dict(self.metadata),
            "evaluation_time": self.evaluation_time.isoformat(),
            "provider_name": self.provider_name,
            "context": self.context.to_dict(),
        }


@dataclass
class FlagChangeEvent:
    flag_key: str
    new_value: Any
    old_value: Optional[Any] = None
    timestamp: datetime = field(default_factory=utcnow)
    source: str = "provider"


@dataclass
class EvaluationEvent:
    flag_key: str
    value: Any
    context: "EvaluationContext"
    result: EvaluationResult
    duration_ms: float
    timestamp: datetime = field(default_factory=utcnow)


__all__ = [
    "EvaluationEvent",
    "EvaluationReason",
    "EvaluationResult",
    "EvaluationSource",
    "FlagCategory",
    "FlagChangeEvent",
    "FlagConfig",
    "FlagValue",
    "FlagValueType",
    "FlagVariant",
    "TargetingRule",
    "utcnow",
]
