"""Resource model: kinds, schemas, descriptors and document parsing."""

from sitelayer.resources.models import (
    ContentSpec,
    DesiredState,
    Lifecycle,
    Reference,
    ResourceDescriptor,
    ResourceKind,
)
from sitelayer.resources.parser import load_document, parse
from sitelayer.resources.registry import (
    AttributeSpec,
    KindRegistry,
    KindSchema,
    default_kind_registry,
)

__all__ = [
    "AttributeSpec",
    "ContentSpec",
    "DesiredState",
    "KindRegistry",
    "KindSchema",
    "Lifecycle",
    "Reference",
    "ResourceDescriptor",
    "ResourceKind",
    "default_kind_registry",
    "load_document",
    "parse",
]
