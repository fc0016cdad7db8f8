"""Provider construction keyed by :class:`ProviderType`."""

from __future__ import annotations

from typing import Any, Dict, Type

from flageval.core.config import ProviderSettings
from flageval.core.errors import ConfigurationError
from flageval.core.providers.base import FlagProvider, ProviderType
from flageval.core.providers.environment import EnvironmentProvider
from flageval.core.providers.memory import InMemoryProvider
from flageval.core.providers.remote import RemoteProvider

PROVIDER_CLASSES: Dict[ProviderType, Type[FlagProvider]] = {
    ProviderType.IN_MEMORY: InMemoryProvider,
    ProviderType.ENVIRONMENT: EnvironmentProvider,
    ProviderType.REMOTE: RemoteProvider,
}


def provider_type_of(settings: ProviderSettings) -> ProviderType:
    try:
        return ProviderType(settings.type)
    except ValueError as exc:
        supported = ", ".join(t.value for t in ProviderType)
        raise ConfigurationError(
            f"Unsupported provider type '{settings.type}' for '{settings.name}' (supported: {supported})",
            cause=exc,
        ) from exc


def create_provider(settings: ProviderSettings, **kwargs: Any) -> FlagProvider:
    """Instantiate the provider described by ``settings``.

    Extra keyword arguments go to the provider constructor (``flags`` for the
    in-memory provider, ``transport`` for the remote one, ``environ`` for the
    environment provider).
    """
    provider_type = provider_type_of(settings)
    if provider_type == ProviderType.REMOTE and not settings.endpoint:
        raise ConfigurationError(f"Remote provider '{settings.name}' requires an endpoint")
    return PROVIDER_CLASSES[provider_type](settings, **kwargs)


__all__ = ["PROVIDER_CLASSES", "create_provider", "provider_type_of"]
