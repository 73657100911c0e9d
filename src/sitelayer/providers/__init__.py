"""Cloud providers and built-in registrations."""

# Import built-in providers for side effects (registration)
from sitelayer.providers import aws as _aws  # noqa: F401
from sitelayer.providers import memory as _memory  # noqa: F401
from sitelayer.providers.base import CloudProvider, ProviderHealth
from sitelayer.providers.memory import MemoryProvider
from sitelayer.providers.registry import (
    create_provider,
    list_providers,
    provider_names,
    register_provider,
)

__all__ = [
    "CloudProvider",
    "MemoryProvider",
    "ProviderHealth",
    "create_provider",
    "list_providers",
    "provider_names",
    "register_provider",
]
