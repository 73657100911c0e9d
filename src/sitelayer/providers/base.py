from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal, Protocol, runtime_checkable


@dataclass(frozen=True)
class ProviderHealth:
    status: Literal["healthy", "degraded", "unreachable"]
    details: str | None = None


@runtime_checkable
class CloudProvider(Protocol):
    """Contract between the executor and a cloud API.

    Every call must be safe to repeat after a transient failure. Errors are
    reported as ``TransientProviderError``, ``PermanentProviderError`` or
    ``ResourceNotFound``.
    """

    name: str

    async def create(self, kind: str, attributes: dict[str, Any]) -> str:
        """Create an object and return its provider id."""
        ...

    async def read(self, kind: str, provider_id: str) -> dict[str, Any]:
        """Return the object's outputs. Raises ``ResourceNotFound``."""
        ...

    async def update(self, kind: str, provider_id: str, attributes: dict[str, Any]) -> None:
        ...

    async def delete(self, kind: str, provider_id: str) -> None:
        ...

    async def check_condition(self, kind: str, provider_id: str) -> bool:
        """Side-effect-free readiness check for kinds that await a condition."""
        ...

    async def health_check(self) -> ProviderHealth:
        ...

    async def aclose(self) -> None:
        ...
