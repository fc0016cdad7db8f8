"""Core provider abstractions.

Every flag backend implements :class:`FlagProvider`. The evaluation service
only ever talks to this interface; concrete backends are chosen by
:func:`flageval.core.providers.factory.create_provider`.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

from flageval.core.config import ProviderSettings
from flageval.core.errors import ErrorCode, ProviderError
from flageval.core.feature_flags.context import EvaluationContext
from flageval.core.feature_flags.types import EvaluationReason, FlagChangeEvent, FlagConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

FlagChangeListener = Callable[[FlagChangeEvent], Any]


class ProviderType(str, Enum):
    IN_MEMORY = "in-memory"
    ENVIRONMENT = "environment"
    REMOTE = "remote"

    @classmethod
    def _missing_(cls, value: object) -> Optional["ProviderType"]:
        if isinstance(value, str):
            normalized = value.strip().lower().replace("_", "-")
            if normalized == "flipt":
                return cls.REMOTE
            for member in cls:
                if member.value == normalized:
                    return member
        return None


class ProviderStatus(str, Enum):
    """Provider runtime status."""

    NOT_READY = "not_ready"
    HEALTHY = "healthy"
    DOWN = "down"


@dataclass
class ResolutionDetails(Generic[T]):
    value: T
    reason: EvaluationReason = EvaluationReason.STATIC
    variant: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class FlagProvider(ABC):
    """Async flag backend.

    Subclasses implement the four ``resolve_*`` methods. ``initialize`` and
    ``dispose`` bracket the provider's lifetime; resolving before
    ``initialize`` raises :class:`ProviderError`.
    """

    provider_type: ProviderType

    def __init__(self, settings: ProviderSettings):
        self.settings = settings
        self._initialized = False
        self._status = ProviderStatus.NOT_READY
        self._last_error: Optional[str] = None
        self._last_health_check_at: Optional[float] = None
        self._last_health_check_latency_ms: Optional[float] = None
        self._listeners: List[FlagChangeListener] = []

    @property
    def name(self) -> str:
        return self.settings.name or self.__class__.__name__

    @property
    def status(self) -> ProviderStatus:
        return self._status

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        await self._initialize_impl()
        self._initialized = True
        self._status = ProviderStatus.HEALTHY
        logger.info(f"Provider '{self.name}' ({self.provider_type.value}) initialized")

    async def dispose(self) -> None:
        await self._dispose_impl()
        self._initialized = False
        self._status = ProviderStatus.NOT_READY
        self._listeners.clear()
        logger.info(f"Provider '{self.name}' disposed")

    async def is_healthy(self) -> bool:
        """Run the provider health check and update runtime status."""
        started_at = time.perf_counter()
        try:
            ok = self._initialized and await self._health_check_impl()
            self._status = ProviderStatus.HEALTHY if ok else ProviderStatus.DOWN
            if ok:
                self._last_error = None
            return ok
        except Exception as exc:  # noqa: BLE001
            self._status = ProviderStatus.DOWN
            self._last_error = str(exc)
            logger.warning(f"Health check for provider '{self.name}' failed: {exc}")
            return False
        finally:
            self._last_health_check_at = time.time()
            self._last_health_check_latency_ms = (time.perf_counter() - started_at) * 1000.0

    def status_snapshot(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "provider_type": self.provider_type.value,
            "status": self._status.value,
            "initialized": self._initialized,
            "last_error": self._last_error,
            "last_health_check_at": self._last_health_check_at,
            "last_health_check_latency_ms": self._last_health_check_latency_ms,
        }

    def on_flag_change(self, listener: FlagChangeListener) -> None:
        self._listeners.append(listener)

    def off_flag_change(self, listener: FlagChangeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify_change(self, flag_key: str, old_value: Any, new_value: Any) -> None:
        event = FlagChangeEvent(flag_key=flag_key, old_value=old_value, new_value=new_value, source=self.name)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as exc:  # noqa: BLE001
                logger.error(f"Flag change listener failed for '{flag_key}': {exc}")

    def _ensure_initialized(self, flag_key: Optional[str] = None) -> None:
        if not self._initialized:
            raise ProviderError(
                f"Provider '{self.name}' is not initialized. Call initialize() first.",
                provider_name=self.name,
                flag_key=flag_key,
                code=ErrorCode.PROVIDER_NOT_READY,
            )

    async def list_flags(self) -> List[FlagConfig]:
        """Flags this provider can enumerate; remote backends may return none."""
        return []

    async def flag_exists(self, flag_key: str) -> bool:
        return any(flag.key == flag_key for flag in await self.list_flags())

    async def _initialize_impl(self) -> None:
        """Optional initialization hook."""

    async def _dispose_impl(self) -> None:
        """Optional cleanup hook."""

    async def _health_check_impl(self) -> bool:
        return True

    @abstractmethod
    async def resolve_boolean(self, flag_key: str, default_value: bool, context: EvaluationContext) -> ResolutionDetails[bool]:
        """Resolve a boolean flag."""

    @abstractmethod
    async def resolve_string(self, flag_key: str, default_value: str, context: EvaluationContext) -> ResolutionDetails[str]:
        """Resolve a string (or variant) flag."""

    @abstractmethod
    async def resolve_number(self, flag_key: str, default_value: float, context: EvaluationContext) -> ResolutionDetails[float]:
        """Resolve a numeric flag."""

    @abstractmethod
    async def resolve_object(self, flag_key: str, default_value: Any, context: EvaluationContext) -> ResolutionDetails[Any]:
        """Resolve a structured (JSON) flag."""


async def resolve_value(
    provider: FlagProvider,
    flag_key: str,
    default_value: Any,
    context: EvaluationContext,
) -> ResolutionDetails[Any]:
    """Dispatch to the resolver matching the default's type. ``bool`` is checked before numbers."""
    if isinstance(default_value, bool):
        return await provider.resolve_boolean(flag_key, default_value, context)
    if isinstance(default_value, (int, float)):
        return await provider.resolve_number(flag_key, default_value, context)
    if isinstance(default_value, str):
        return await provider.resolve_string(flag_key, default_value, context)
    return await provider.resolve_object(flag_key, default_value, context)


__all__ = [
    "FlagChangeListener",
    "FlagProvider",
    "ProviderStatus",
    "ProviderType",
    "ResolutionDetails",
    "resolve_value",
]
