"""Kind schemas and the registry that holds them."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sitelayer.resources.models import ResourceKind


@dataclass(frozen=True)
class AttributeSpec:
    """Schema for a single attribute of a resource kind."""

    name: str
    type: type | tuple[type, ...]
    required: bool = False
    force_new: bool = False
    default: Any = None
    description: str = ""

    def accepts(self, value: Any) -> bool:
        if value is None:
            return not self.required
        # bool is an int subclass; keep them apart
        if isinstance(value, bool) and bool not in _as_tuple(self.type):
            return False
        return isinstance(value, self.type)


@dataclass(frozen=True)
class KindSchema:
    """Everything the engine needs to know about a resource kind."""

    kind: ResourceKind
    description: str
    attributes: Dict[str, AttributeSpec]
    outputs: tuple[str, ...] = ()
    updatable: bool = True
    awaits_condition: bool = False
    condition_description: str = ""

    @property
    def force_new_attributes(self) -> frozenset[str]:
        return frozenset(name for name, spec in self.attributes.items() if spec.force_new)

    def has_output(self, name: str) -> bool:
        return name in self.outputs or name in self.attributes or name == "id"

    def defaults(self) -> Dict[str, Any]:
        return {
            name: spec.default
            for name, spec in self.attributes.items()
            if not spec.required and spec.default is not None
        }


class KindRegistry:
    """In-memory registry for resource kind schemas."""

    def __init__(self) -> None:
        self._kinds: Dict[str, KindSchema] = {}

    def register(self, schema: KindSchema) -> None:
        """Register a schema by its kind."""
        self._kinds[schema.kind.value] = schema

    def get(self, kind: str) -> Optional[KindSchema]:
        """Get a schema by kind name."""
        return self._kinds.get(str(kind))

    def list(self) -> List[str]:
        """List all registered kind names."""
        return list(self._kinds.keys())


def _as_tuple(value: type | tuple[type, ...]) -> tuple[type, ...]:
    return value if isinstance(value, tuple) else (value,)


def _attr(name: str, type_: type | tuple[type, ...], **kwargs: Any) -> tuple[str, AttributeSpec]:
    return name, AttributeSpec(name=name, type=type_, **kwargs)


STORAGE_BUCKET = KindSchema(
    kind=ResourceKind.STORAGE_BUCKET,
    description="Object storage bucket holding the site content",
    attributes=dict(
        [
            _attr("name", str, required=True, force_new=True, description="Bucket name"),
            _attr("region", str, force_new=True, default="us-east-1"),
            _attr("versioning", bool, default=False),
            _attr("tags", dict, default={}),
        ]
    ),
    outputs=("arn", "regional_domain_name"),
)

BUCKET_POLICY = KindSchema(
    kind=ResourceKind.BUCKET_POLICY,
    description="Access policy attached to a storage bucket",
    attributes=dict(
        [
            _attr("bucket", str, required=True, force_new=True),
            _attr("policy", dict, required=True, description="Policy document"),
        ]
    ),
)

CERTIFICATE = KindSchema(
    kind=ResourceKind.CERTIFICATE,
    description="TLS certificate validated by DNS domain-ownership proof",
    attributes=dict(
        [
            _attr("domain_name", str, required=True, force_new=True),
            _attr("subject_alternative_names", list, force_new=True, default=[]),
            _attr("validation_method", str, force_new=True, default="DNS"),
            _attr(
                "validation_zone_id",
                str,
                description="DNS zone in which the validation record is published",
            ),
            _attr("tags", dict, default={}),
        ]
    ),
    outputs=(
        "arn",
        "status",
        "validation_record_name",
        "validation_record_type",
        "validation_record_value",
    ),
    awaits_condition=True,
    condition_description="certificate validation",
)

DNS_RECORD = KindSchema(
    kind=ResourceKind.DNS_RECORD,
    description="DNS record in a hosted zone",
    attributes=dict(
        [
            _attr("zone_id", str, required=True, force_new=True),
            _attr("name", str, required=True, force_new=True),
            _attr("type", str, force_new=True, default="A"),
            _attr("ttl", int, default=300),
            _attr("values", list, default=[]),
            _attr("alias", dict, description="Alias target: {dns_name, zone_id}"),
        ]
    ),
    outputs=("fqdn",),
)

CDN_DISTRIBUTION = KindSchema(
    kind=ResourceKind.CDN_DISTRIBUTION,
    description="Content-delivery distribution in front of the bucket",
    attributes=dict(
        [
            _attr("origin_domain", str, required=True),
            _attr("aliases", list, default=[]),
            _attr("certificate_arn", str),
            _attr("default_root_object", str, default="index.html"),
            _attr("price_class", str, default="PriceClass_100"),
            # Static allow-list, passed through to the provider untouched
            _attr("geo_restriction", dict, default={"type": "none", "locations": []}),
            _attr("enabled", bool, default=True),
            _attr("comment", str, default=""),
        ]
    ),
    outputs=("arn", "domain_name", "hosted_zone_id", "status"),
    awaits_condition=True,
    condition_description="distribution deployment",
)

SITE_KINDS = (STORAGE_BUCKET, BUCKET_POLICY, CERTIFICATE, DNS_RECORD, CDN_DISTRIBUTION)


def default_kind_registry() -> KindRegistry:
    """Registry with every built-in site kind registered."""
    registry = KindRegistry()
    for schema in SITE_KINDS:
        registry.register(schema)
    return registry


__all__ = [
    "AttributeSpec",
    "KindRegistry",
    "KindSchema",
    "SITE_KINDS",
    "default_kind_registry",
]
