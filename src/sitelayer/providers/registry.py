"""Lookup of cloud providers by the name used in settings and on the command line."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List

from sitelayer.core.errors import ConfigurationError
from sitelayer.providers.base import CloudProvider

# Called with region= and profile= keyword arguments; factories ignore what they do not use
ProviderFactory = Callable[..., CloudProvider]


@dataclass(frozen=True)
class ProviderSpec:
    name: str
    factory: ProviderFactory
    description: str | None = None


class ProviderRegistry:
    """Provider factories keyed by name."""

    def __init__(self) -> None:
        self._specs: Dict[str, ProviderSpec] = {}

    def register(
        self,
        name: str,
        factory: ProviderFactory,
        *,
        description: str | None = None,
    ) -> None:
        if not name:
            raise ValueError("Provider name is required")
        self._specs[name] = ProviderSpec(name, factory, description)

    def create(self, name: str, **options: Any) -> CloudProvider:
        """Instantiate provider ``name``.

        Raises:
            ConfigurationError: no provider is registered under ``name``
        """
        spec = self._specs.get(name)
        if spec is None:
            known = ", ".join(self.names()) or "none"
            raise ConfigurationError(
                f"Provider '{name}' is not registered (known: {known})", {"provider": name}
            )
        return spec.factory(**options)

    def names(self) -> List[str]:
        return sorted(self._specs)

    def list(self) -> List[ProviderSpec]:
        return [self._specs[name] for name in self.names()]


provider_registry = ProviderRegistry()


def register_provider(
    name: str, factory: ProviderFactory, *, description: str | None = None
) -> None:
    provider_registry.register(name, factory, description=description)


def create_provider(name: str, **options: Any) -> CloudProvider:
    return provider_registry.create(name, **options)


def list_providers() -> List[ProviderSpec]:
    return provider_registry.list()


def provider_names() -> List[str]:
    return provider_registry.names()
