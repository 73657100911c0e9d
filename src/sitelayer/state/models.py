from __future__ import annotations

from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class ResourceStatus(StrEnum):
    """Lifecycle status of a provisioned resource."""

    absent = "absent"
    creating = "creating"
    ready = "ready"
    tainted = "tainted"
    destroying = "destroying"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StateRecord(BaseModel):
    """Last-applied state of one resource address."""

    address: str
    kind: str
    last_applied_attributes: dict[str, Any] = Field(default_factory=dict)
    # Attribute values last sent to the provider, references substituted
    resolved_attributes: dict[str, Any] = Field(default_factory=dict)
    outputs: dict[str, Any] = Field(default_factory=dict)
    provider_id: str | None = None
    status: ResourceStatus = ResourceStatus.absent
    dependencies: list[str] = Field(default_factory=list)
    # Original object kept alive by a create-before-destroy replacement
    deposed_id: str | None = None
    updated_at: datetime = Field(default_factory=_utcnow)

    def evolve(self, **changes: Any) -> StateRecord:
        """Copy with ``changes`` applied and a fresh timestamp."""
        changes.setdefault("updated_at", _utcnow())
        return self.model_copy(update=changes, deep=True)
