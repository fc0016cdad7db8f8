"""Feature flag evaluation.

Provides:
- Immutable evaluation contexts and context fingerprints
- Segment targeting, percentage rollouts and weighted variants
- The async evaluation service (``flageval.core.feature_flags.service``)
- Usage patterns and ASGI middleware (``patterns``, ``middleware``)
"""

from flageval.core.feature_flags.context import (
    EvaluationContext,
    create_context_key,
    create_evaluation_context,
    merge_contexts,
)
from flageval.core.feature_flags.targeting import evaluate_targeting, select_variant, should_rollout
from flageval.core.feature_flags.typed import TYPED_FLAG_DEFAULTS
from flageval.core.feature_flags.types import (
    EvaluationReason,
    EvaluationResult,
    EvaluationSource,
    FlagConfig,
    FlagVariant,
    TargetingRule,
)

__all__ = [
    "EvaluationContext",
    "EvaluationReason",
    "EvaluationResult",
    "EvaluationSource",
    "FlagConfig",
    "FlagVariant",
    "TYPED_FLAG_DEFAULTS",
    "TargetingRule",
    "create_context_key",
    "create_evaluation_context",
    "evaluate_targeting",
    "merge_contexts",
    "select_variant",
    "should_rollout",
]
