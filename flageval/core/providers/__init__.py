"""Flag backends behind a single async provider interface."""

from flageval.core.providers.base import FlagProvider, ProviderStatus, ProviderType, ResolutionDetails, resolve_value
from flageval.core.providers.environment import EnvironmentProvider
from flageval.core.providers.factory import create_provider
from flageval.core.providers.memory import InMemoryProvider
from flageval.core.providers.remote import RemoteProvider

__all__ = [
    "EnvironmentProvider",
    "FlagProvider",
    "InMemoryProvider",
    "ProviderStatus",
    "ProviderType",
    "RemoteProvider",
    "ResolutionDetails",
    "create_provider",
    "resolve_value",
]
