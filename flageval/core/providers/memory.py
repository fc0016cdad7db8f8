"""In-process flag store with targeting, weighted variants and change listeners."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

import yaml

from flageval.core.config import ProviderSettings
from flageval.core.errors import ProviderError
from flageval.core.feature_flags.context import EvaluationContext
from flageval.core.feature_flags.targeting import SegmentPredicate, evaluate_targeting, select_variant
from flageval.core.feature_flags.types import EvaluationReason, FlagConfig, FlagValueType
from flageval.core.providers.base import FlagProvider, ProviderType, ResolutionDetails

logger = logging.getLogger(__name__)

FlagDefinitions = Union[Mapping[str, Any], Iterable[Union[FlagConfig, Mapping[str, Any]]]]


def parse_flag_definitions(definitions: FlagDefinitions) -> List[FlagConfig]:
    """Accept ``{key: {...}}``, ``{"flags": [...]}`` or a list of flags/mappings."""
    if isinstance(definitions, Mapping):
        if "flags" in definitions:
            return parse_flag_definitions(definitions["flags"])
        definitions = [
            value if isinstance(value, FlagConfig) else {"key": key, **value}
            for key, value in definitions.items()
        ]

    flags = []
    for item in definitions:
        flags.append(item if isinstance(item, FlagConfig) else FlagConfig.from_dict(item))
    return flags


def load_flags_file(path: Union[str, Path]) -> List[FlagConfig]:
    file_path = Path(path)
    content = file_path.read_text()
    if file_path.suffix in (".yaml", ".yml"):
        data = yaml.safe_load(content) or {}
    else:
        data = json.loads(content)
    return parse_flag_definitions(data)


class InMemoryProvider(FlagProvider):
    """Flags held in a dict; the reference provider for development and tests."""

    provider_type = ProviderType.IN_MEMORY

    def __init__(
        self,
        settings: Optional[ProviderSettings] = None,
        flags: Optional[FlagDefinitions] = None,
        segments: Optional[Mapping[str, SegmentPredicate]] = None,
    ):
        super().__init__(settings or ProviderSettings(name="in-memory", type=ProviderType.IN_MEMORY.value))
        self._flags: Dict[str, FlagConfig] = {}
        self._segments = dict(segments or {})
        self._lock = threading.RLock()
        for flag in parse_flag_definitions(flags or []):
            self._flags[flag.key] = flag

    async def _initialize_impl(self) -> None:
        options = self.settings.options
        try:
            if options.get("flags"):
                for flag in parse_flag_definitions(options["flags"]):
                    self._flags[flag.key] = flag
            if options.get("flags_file"):
                for flag in load_flags_file(options["flags_file"]):
                    self._flags[flag.key] = flag
        except (OSError, ValueError, TypeError, yaml.YAMLError) as exc:
            raise ProviderError(
                f"Failed to initialize in-memory provider: {exc}",
                provider_name=self.name,
                cause=exc,
            ) from exc
        logger.info(f"In-memory provider loaded {len(self._flags)} flags")

    async def _dispose_impl(self) -> None:
        with self._lock:
            self._flags.clear()

    def _evaluate(self, flag_key: str, default_value: Any, context: EvaluationContext) -> ResolutionDetails[Any]:
        self._ensure_initialized(flag_key)

        with self._lock:
            flag = self._flags.get(flag_key)

        if flag is None:
            logger.debug(f"Flag '{flag_key}' not found, using default value")
            return ResolutionDetails(value=default_value, reason=EvaluationReason.DEFAULT, variant="default")

        if not flag.enabled:
            value = flag.fallback_value if flag.fallback_value is not None else default_value
            return ResolutionDetails(
                value=value,
                reason=EvaluationReason.DISABLED,
                variant="disabled",
                metadata={"disabled": True},
            )

        try:
            targeting = evaluate_targeting(flag, context, self._segments)
            if targeting is not None:
                return ResolutionDetails(
                    value=targeting.value,
                    reason=EvaluationReason.TARGETING_MATCH,
                    variant=targeting.variant,
                    metadata={
                        "segment": targeting.segment,
                        "rollout_percentage": targeting.rollout_percentage,
                    },
                )

            if flag.type == FlagValueType.VARIANT and flag.variants:
                chosen = select_variant(flag.variants, context)
                return ResolutionDetails(
                    value=chosen.key,
                    reason=EvaluationReason.SPLIT,
                    variant=chosen.key,
                    metadata=dict(chosen.metadata),
                )
        except Exception as exc:
            raise ProviderError(
                f"Error evaluating flag '{flag_key}': {exc}",
                provider_name=self.name,
                flag_key=flag_key,
                cause=exc,
            ) from exc

        return ResolutionDetails(
            value=flag.default_value,
            reason=EvaluationReason.STATIC,
            variant="default",
            metadata={"default_value": True},
        )

    async def resolve_boolean(self, flag_key: str, default_value: bool, context: EvaluationContext) -> ResolutionDetails[bool]:
        return self._evaluate(flag_key, default_value, context)

    async def resolve_string(self, flag_key: str, default_value: str, context: EvaluationContext) -> ResolutionDetails[str]:
        return self._evaluate(flag_key, default_value, context)

    async def resolve_number(self, flag_key: str, default_value: float, context: EvaluationContext) -> ResolutionDetails[float]:
        return self._evaluate(flag_key, default_value, context)

    async def resolve_object(self, flag_key: str, default_value: Any, context: EvaluationContext) -> ResolutionDetails[Any]:
        return self._evaluate(flag_key, default_value, context)

    async def list_flags(self) -> List[FlagConfig]:
        with self._lock:
            return list(self._flags.values())

    def get_flag(self, flag_key: str) -> Optional[FlagConfig]:
        with self._lock:
            return self._flags.get(flag_key)

    def set_flag(self, flag: FlagConfig) -> None:
        self._ensure_initialized(flag.key)
        with self._lock:
            previous = self._flags.get(flag.key)
            self._flags[flag.key] = flag
        logger.debug(f"Flag '{flag.key}' updated")
        self._notify_change(flag.key, previous.default_value if previous else None, flag.default_value)

    def remove_flag(self, flag_key: str) -> bool:
        self._ensure_initialized(flag_key)
        with self._lock:
            previous = self._flags.pop(flag_key, None)
        if previous is None:
            return False
        logger.debug(f"Flag '{flag_key}' removed")
        self._notify_change(flag_key, previous.default_value, None)
        return True

    def clear_flags(self) -> None:
        self._ensure_initialized()
        with self._lock:
            removed = dict(self._flags)
            self._flags.clear()
        for key, flag in removed.items():
            self._notify_change(key, flag.default_value, None)

    def load_flags(self, flags: FlagDefinitions) -> int:
        parsed = parse_flag_definitions(flags)
        for flag in parsed:
            self.set_flag(flag)
        logger.info(f"Loaded {len(parsed)} flags into '{self.name}'")
        return len(parsed)

    def register_segment(self, name: str, predicate: SegmentPredicate) -> None:
        self._segments[name] = predicate

    def status_snapshot(self) -> Dict[str, Any]:
        snapshot = super().status_snapshot()
        with self._lock:
            snapshot["flag_count"] = len(self._flags)
        return snapshot


__all__ = ["InMemoryProvider", "load_flags_file", "parse_flag_definitions"]
