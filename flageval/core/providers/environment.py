"""Flags read from process environment variables.

``newDashboardUi`` is looked up as ``FEATURE_FLAG_NEW_DASHBOARD_UI``;
kebab-case keys map the same way. Variables are read on every call, so
changes made by operators take effect without a restart.
"""

from __future__ import annotations

import json
import logging
import os
import re
from typing import Any, List, Mapping, MutableMapping, Optional

from flageval.core.config import ProviderSettings
from flageval.core.errors import ProviderError
from flageval.core.feature_flags.context import EvaluationContext
from flageval.core.feature_flags.types import EvaluationReason, FlagConfig, FlagValueType
from flageval.core.providers.base import FlagProvider, ProviderType, ResolutionDetails

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "FEATURE_FLAG_"
_PREFIX_PATTERN = re.compile(r"^[A-Z_][A-Z0-9_]*$")
_CAMEL_BOUNDARY = re.compile(r"([a-z])([A-Z])")

TRUE_VALUES = ("true", "1", "yes", "on", "enabled")
FALSE_VALUES = ("false", "0", "no", "off", "disabled")


def parse_bool(raw: str) -> bool:
    normalized = raw.strip().lower()
    if normalized in TRUE_VALUES:
        return True
    if normalized in FALSE_VALUES:
        return False
    raise ValueError(
        f"Invalid boolean value: {raw!r}. Expected true/false, 1/0, yes/no, on/off, enabled/disabled"
    )


def parse_number(raw: str) -> float:
    text = raw.strip()
    try:
        return int(text)
    except ValueError:
        pass
    number = float(text)
    if number != number:
        raise ValueError(f"Invalid number value: {raw!r}")
    return number


class EnvironmentProvider(FlagProvider):
    provider_type = ProviderType.ENVIRONMENT

    def __init__(
        self,
        settings: Optional[ProviderSettings] = None,
        environ: Optional[MutableMapping[str, str]] = None,
    ):
        super().__init__(settings or ProviderSettings(name="environment", type=ProviderType.ENVIRONMENT.value))
        self.prefix = str(self.settings.options.get("prefix") or DEFAULT_PREFIX)
        self._environ: Mapping[str, str] = os.environ if environ is None else environ

    async def _initialize_impl(self) -> None:
        if not _PREFIX_PATTERN.match(self.prefix):
            raise ProviderError(
                f"Invalid environment prefix: {self.prefix}. Must match ^[A-Z_][A-Z0-9_]*$",
                provider_name=self.name,
            )

    def env_key(self, flag_key: str) -> str:
        snake = _CAMEL_BOUNDARY.sub(r"\1_\2", flag_key).replace("-", "_").replace(".", "_")
        return f"{self.prefix}{snake.upper()}"

    def flag_key_for(self, env_key: str) -> str:
        words = env_key[len(self.prefix):].lower().split("_")
        return words[0] + "".join(word.capitalize() for word in words[1:])

    def _resolve(self, flag_key: str, default_value: Any, parse) -> ResolutionDetails[Any]:
        self._ensure_initialized(flag_key)
        env_key = self.env_key(flag_key)
        raw = self._environ.get(env_key)
        if raw is None:
            logger.debug(f"{env_key} not set, using default for '{flag_key}'")
            return ResolutionDetails(value=default_value, reason=EvaluationReason.DEFAULT, variant="default")

        try:
            value = parse(raw)
        except (ValueError, json.JSONDecodeError) as exc:
            raise ProviderError(
                f"Cannot parse {env_key} for flag '{flag_key}': {exc}",
                provider_name=self.name,
                flag_key=flag_key,
                cause=exc,
            ) from exc

        return ResolutionDetails(
            value=value,
            reason=EvaluationReason.STATIC,
            variant="environment",
            metadata={"env_key": env_key, "raw_value": raw},
        )

    async def resolve_boolean(self, flag_key: str, default_value: bool, context: EvaluationContext) -> ResolutionDetails[bool]:
        return self._resolve(flag_key, default_value, parse_bool)

    async def resolve_string(self, flag_key: str, default_value: str, context: EvaluationContext) -> ResolutionDetails[str]:
        return self._resolve(flag_key, default_value, lambda raw: raw)

    async def resolve_number(self, flag_key: str, default_value: float, context: EvaluationContext) -> ResolutionDetails[float]:
        return self._resolve(flag_key, default_value, parse_number)

    async def resolve_object(self, flag_key: str, default_value: Any, context: EvaluationContext) -> ResolutionDetails[Any]:
        return self._resolve(flag_key, default_value, lambda raw: json.loads(raw.strip()))

    def available_flags(self) -> List[str]:
        return [self.flag_key_for(key) for key in self._environ if key.startswith(self.prefix)]

    async def list_flags(self) -> List[FlagConfig]:
        return [
            FlagConfig(
                key=self.flag_key_for(key),
                default_value=value,
                type=FlagValueType.STRING,
                metadata={"env_key": key},
            )
            for key, value in self._environ.items()
            if key.startswith(self.prefix)
        ]

    async def flag_exists(self, flag_key: str) -> bool:
        return self.env_key(flag_key) in self._environ

    def status_snapshot(self):
        snapshot = super().status_snapshot()
        snapshot["prefix"] = self.prefix
        snapshot["available_flags"] = self.available_flags()
        return snapshot


__all__ = ["EnvironmentProvider", "parse_bool", "parse_number"]
