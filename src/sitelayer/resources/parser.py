"""
Desired-state document parsing.

Turns a raw document (as loaded from YAML) into validated, immutable
resource descriptors. References are resolved to typed edges here, so
every later stage works with concrete dependencies.
"""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any, Mapping

import structlog
import yaml

from sitelayer.core.errors import DuplicateAddress, ParseError, SchemaViolation, UnknownReference
from sitelayer.resources.models import (
    ADDRESS_PATTERN,
    ContentSpec,
    DesiredState,
    Lifecycle,
    Reference,
    ResourceDescriptor,
    ResourceKind,
    find_references,
    freeze,
    is_reference,
)
from sitelayer.resources.registry import KindRegistry, KindSchema, default_kind_registry

logger = structlog.get_logger()

_DESCRIPTOR_KEYS = {"address", "name", "kind", "attributes", "depends_on", "lifecycle"}
_LIFECYCLE_KEYS = {"create_before_destroy"}


def parse(raw_config: Any, registry: KindRegistry | None = None) -> DesiredState:
    """Parse and validate a desired-state document.

    Raises:
        DuplicateAddress: two descriptors share an address
        UnknownReference: a reference or depends_on entry names a missing target
        SchemaViolation: the document or an attribute violates a kind schema
    """
    registry = registry or default_kind_registry()

    if raw_config is None:
        raw_config = {}
    if not isinstance(raw_config, Mapping):
        raise SchemaViolation("Desired-state document must be a mapping")

    unknown = set(raw_config) - {"resources", "content"}
    if unknown:
        raise SchemaViolation(f"Unknown top-level keys: {', '.join(sorted(unknown))}")

    raw_resources = raw_config.get("resources") or []
    if not isinstance(raw_resources, list):
        raise SchemaViolation("'resources' must be a list")

    # First pass: shape, kind and attribute schema. Addresses are collected
    # so that references can be checked once every descriptor is known.
    drafts: list[tuple[str, KindSchema, dict[str, Any], Mapping[str, Any]]] = []
    seen: set[str] = set()
    for index, raw in enumerate(raw_resources):
        address, schema, attributes = _parse_shape(index, raw, registry)
        if address in seen:
            raise DuplicateAddress(address)
        seen.add(address)
        drafts.append((address, schema, attributes, raw))

    schemas = {address: schema for address, schema, _, _ in drafts}
    descriptors = tuple(
        _build_descriptor(address, schema, attributes, raw, schemas)
        for address, schema, attributes, raw in drafts
    )

    content = _parse_content(raw_config.get("content"), schemas)

    logger.debug("desired_state_parsed", resources=len(descriptors))
    return DesiredState(descriptors=descriptors, content=content)


def load_document(path: str | Path, registry: KindRegistry | None = None) -> DesiredState:
    """Load and parse a desired-state YAML document."""
    path = Path(path)
    try:
        with open(path) as f:
            raw = yaml.safe_load(f)
    except OSError as e:
        raise ParseError(f"Cannot read {path}: {e}", {"path": str(path)}) from e
    except yaml.YAMLError as e:
        raise ParseError(f"Invalid YAML in {path}: {e}", {"path": str(path)}) from e

    state = parse(raw, registry)

    if state.content is not None and not state.content.source.is_absolute():
        content = ContentSpec(
            source=(path.parent / state.content.source).resolve(),
            target=state.content.target,
        )
        state = DesiredState(descriptors=state.descriptors, content=content)
    return state


def _parse_shape(
    index: int, raw: Any, registry: KindRegistry
) -> tuple[str, KindSchema, dict[str, Any]]:
    if not isinstance(raw, Mapping):
        raise SchemaViolation(f"resources[{index}] must be a mapping")

    unknown = set(raw) - _DESCRIPTOR_KEYS
    if unknown:
        raise SchemaViolation(
            f"resources[{index}] has unknown keys: {', '.join(sorted(unknown))}"
        )

    kind_name = raw.get("kind")
    schema = registry.get(kind_name) if isinstance(kind_name, str) else None
    if schema is None:
        raise SchemaViolation(
            f"resources[{index}] has unknown kind {kind_name!r}",
            {"known": registry.list()},
        )

    address = raw.get("address")
    if address is None and raw.get("name"):
        address = f"{schema.kind.value}.{raw['name']}"
    if not isinstance(address, str) or not ADDRESS_PATTERN.match(address):
        raise SchemaViolation(f"resources[{index}] has invalid address {address!r}")
    if not address.startswith(f"{schema.kind.value}."):
        raise SchemaViolation(
            f"Address {address} does not match kind {schema.kind.value}",
            {"address": address},
        )

    raw_attributes = raw.get("attributes") or {}
    if not isinstance(raw_attributes, Mapping):
        raise SchemaViolation(f"{address}: attributes must be a mapping")

    return address, schema, _validate_attributes(address, schema, raw_attributes)


def _validate_attributes(
    address: str, schema: KindSchema, raw_attributes: Mapping[str, Any]
) -> dict[str, Any]:
    unknown = set(raw_attributes) - set(schema.attributes)
    if unknown:
        raise SchemaViolation(
            f"{address}: unknown attributes {', '.join(sorted(unknown))}",
            {"address": address},
        )

    attributes = copy.deepcopy(schema.defaults())
    for name, value in raw_attributes.items():
        spec = schema.attributes[name]
        # Values holding a reference are checked once resolved
        if not is_reference(value) and not spec.accepts(value):
            raise SchemaViolation(
                f"{address}: attribute {name!r} expects {_type_name(spec.type)}, "
                f"got {type(value).__name__}",
                {"address": address, "attribute": name},
            )
        if value is not None:
            attributes[name] = copy.deepcopy(value)

    missing = [n for n, spec in schema.attributes.items() if spec.required and n not in attributes]
    if missing:
        raise SchemaViolation(
            f"{address}: missing required attributes {', '.join(missing)}",
            {"address": address},
        )
    return attributes


def _build_descriptor(
    address: str,
    schema: KindSchema,
    attributes: dict[str, Any],
    raw: Mapping[str, Any],
    schemas: Mapping[str, KindSchema],
) -> ResourceDescriptor:
    references: list[Reference] = []
    for name, value in attributes.items():
        for target, output in find_references(value):
            target_schema = schemas.get(target)
            if target_schema is None or not target_schema.has_output(output):
                raise UnknownReference(address, target, output)
            if target == address:
                raise SchemaViolation(f"{address}: attribute {name!r} references itself")
            references.append(Reference(source=address, target=target, attribute=name, output=output))

    depends_on = raw.get("depends_on") or []
    if isinstance(depends_on, str) or not isinstance(depends_on, list):
        raise SchemaViolation(f"{address}: depends_on must be a list of addresses")
    for target in depends_on:
        if target not in schemas:
            raise UnknownReference(address, str(target))
        if target == address:
            raise SchemaViolation(f"{address}: depends_on contains itself")

    return ResourceDescriptor(
        address=address,
        kind=ResourceKind(schema.kind),
        attributes=freeze(attributes),
        depends_on=frozenset(depends_on),
        lifecycle=_parse_lifecycle(address, raw.get("lifecycle")),
        references=tuple(references),
    )


def _parse_lifecycle(address: str, raw: Any) -> Lifecycle:
    if raw is None:
        return Lifecycle()
    if not isinstance(raw, Mapping):
        raise SchemaViolation(f"{address}: lifecycle must be a mapping")
    unknown = set(raw) - _LIFECYCLE_KEYS
    if unknown:
        raise SchemaViolation(f"{address}: unknown lifecycle keys {', '.join(sorted(unknown))}")
    cbd = raw.get("create_before_destroy", False)
    if not isinstance(cbd, bool):
        raise SchemaViolation(f"{address}: create_before_destroy must be a boolean")
    return Lifecycle(create_before_destroy=cbd)


def _parse_content(raw: Any, schemas: Mapping[str, KindSchema]) -> ContentSpec | None:
    if raw is None:
        return None
    if not isinstance(raw, Mapping) or not raw.get("source") or not raw.get("target"):
        raise SchemaViolation("'content' requires 'source' and 'target'")
    target = raw["target"]
    schema = schemas.get(target)
    if schema is None:
        raise UnknownReference("content", str(target))
    if schema.kind != ResourceKind.STORAGE_BUCKET:
        raise SchemaViolation(f"content target {target} must be a storage_bucket")
    return ContentSpec(source=Path(str(raw["source"])), target=target)


def _type_name(type_: type | tuple[type, ...]) -> str:
    if isinstance(type_, tuple):
        return " or ".join(t.__name__ for t in type_)
    return type_.__name__
