"""
Resource model.

Typed descriptors of provisionable entities, the references between them,
and the parsed desired-state document.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterator, Mapping

# ${storage_bucket.site.arn} -> target "storage_bucket.site", output "arn"
REFERENCE_PATTERN = re.compile(r"\$\{([a-z][a-z0-9_]*\.[A-Za-z0-9_-]+)\.([A-Za-z0-9_]+)\}")
ADDRESS_PATTERN = re.compile(r"^[a-z][a-z0-9_]*\.[A-Za-z0-9_-]+$")


class ResourceKind(StrEnum):
    """Kinds of resources that make up a static-site pipeline."""

    STORAGE_BUCKET = "storage_bucket"
    BUCKET_POLICY = "bucket_policy"
    CERTIFICATE = "certificate"
    DNS_RECORD = "dns_record"
    CDN_DISTRIBUTION = "cdn_distribution"


@dataclass(frozen=True)
class Reference:
    """A typed edge: ``source``'s ``attribute`` is computed from ``target``'s ``output``."""

    source: str
    target: str
    attribute: str
    output: str

    @property
    def expression(self) -> str:
        return f"${{{self.target}.{self.output}}}"


@dataclass(frozen=True)
class Lifecycle:
    """Lifecycle policy applied when a resource is replaced."""

    create_before_destroy: bool = False


@dataclass(frozen=True)
class ResourceDescriptor:
    """A single resource in the desired state. Immutable once parsed."""

    address: str
    kind: ResourceKind
    attributes: Mapping[str, Any]
    depends_on: frozenset[str] = frozenset()
    lifecycle: Lifecycle = field(default_factory=Lifecycle)
    references: tuple[Reference, ...] = ()

    def __post_init__(self) -> None:
        if not isinstance(self.attributes, MappingProxyType):
            object.__setattr__(self, "attributes", MappingProxyType(dict(self.attributes)))

    @property
    def name(self) -> str:
        return self.address.split(".", 1)[1]

    @property
    def dependencies(self) -> frozenset[str]:
        """Explicit and reference-derived dependencies."""
        return self.depends_on | {ref.target for ref in self.references}

    def plain_attributes(self) -> dict[str, Any]:
        """Attributes as a plain dict, suitable for persisting."""
        return thaw(self.attributes)


@dataclass(frozen=True)
class ContentSpec:
    """Local content to mirror into a provisioned resource after apply."""

    source: Path
    target: str


@dataclass(frozen=True)
class DesiredState:
    """Parsed desired-state document."""

    descriptors: tuple[ResourceDescriptor, ...]
    content: ContentSpec | None = None

    def __iter__(self) -> Iterator[ResourceDescriptor]:
        return iter(self.descriptors)

    def __len__(self) -> int:
        return len(self.descriptors)

    def get(self, address: str) -> ResourceDescriptor | None:
        for descriptor in self.descriptors:
            if descriptor.address == address:
                return descriptor
        return None

    @property
    def addresses(self) -> list[str]:
        return [d.address for d in self.descriptors]


def find_references(value: Any) -> Iterator[tuple[str, str]]:
    """Yield (target address, output) for every reference inside ``value``."""
    if isinstance(value, str):
        for match in REFERENCE_PATTERN.finditer(value):
            yield match.group(1), match.group(2)
    elif isinstance(value, Mapping):
        for item in value.values():
            yield from find_references(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from find_references(item)


def is_reference(value: Any) -> bool:
    return isinstance(value, str) and REFERENCE_PATTERN.search(value) is not None


def freeze(value: Any) -> Any:
    """Recursively convert mappings and lists into read-only equivalents."""
    if isinstance(value, Mapping):
        return MappingProxyType({k: freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(v) for v in value)
    return value


def thaw(value: Any) -> Any:
    """Inverse of :func:`freeze`."""
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [thaw(v) for v in value]
    return value
