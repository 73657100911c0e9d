"""
In-process cloud provider.

Deterministic stand-in for a real cloud used by the test suite and by
``--provider memory``. Failures and slow conditions can be scripted per
operation so every executor path can be exercised without network access.
"""

from __future__ import annotations

import asyncio
import copy
import hashlib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import structlog

from sitelayer.core.errors import (
    PermanentProviderError,
    ResourceNotFound,
    TransientProviderError,
)
from sitelayer.providers.base import ProviderHealth
from sitelayer.providers.registry import register_provider
from sitelayer.resources.models import ResourceKind

logger = structlog.get_logger()

ACCOUNT_ID = "000000000000"
CLOUDFRONT_ZONE_ID = "Z2FDTNDATAQYW2"


@dataclass
class MemoryObject:
    """One object held by the in-memory cloud."""

    provider_id: str
    kind: str
    attributes: Dict[str, Any]
    outputs: Dict[str, Any] = field(default_factory=dict)
    checks: int = 0
    ready: bool = False


@dataclass
class ScriptedFailure:
    """A failure injected into matching provider calls.

    ``times`` is the number of calls that fail before the operation starts
    succeeding; ``None`` fails forever.
    """

    operation: str
    kind: Optional[str] = None
    match: Optional[Dict[str, Any]] = None
    transient: bool = False
    times: Optional[int] = 1
    message: str = "scripted failure"

    def matches(self, operation: str, kind: str, attributes: Mapping[str, Any]) -> bool:
        if self.operation != operation:
            return False
        if self.kind is not None and self.kind != kind:
            return False
        if self.match:
            return all(attributes.get(k) == v for k, v in self.match.items())
        return True


@dataclass(frozen=True)
class Call:
    operation: str
    kind: str
    provider_id: Optional[str] = None


class MemoryProvider:
    """Cloud provider backed by dictionaries."""

    name = "memory"

    def __init__(
        self,
        *,
        condition_checks: Optional[Mapping[str, Optional[int]]] = None,
        latency: float = 0.0,
    ) -> None:
        """
        Args:
            condition_checks: Per kind, how many ``check_condition`` calls
                return False before the condition holds. ``None`` never holds.
                Kinds not listed hold on the first check.
            latency: Seconds each call suspends for.
        """
        self.objects: Dict[str, MemoryObject] = {}
        self.calls: List[Call] = []
        self.buckets: Dict[str, Dict[str, bytes]] = {}
        self._condition_checks: Dict[str, Optional[int]] = dict(condition_checks or {})
        self._condition_failures: Dict[str, str] = {}
        self._failures: List[ScriptedFailure] = []
        self._latency = latency
        self._counter = 0
        self.in_flight = 0
        self.max_in_flight = 0

    # -- scripting ---------------------------------------------------------

    def fail(
        self,
        operation: str,
        *,
        kind: Optional[str] = None,
        match: Optional[Dict[str, Any]] = None,
        transient: bool = False,
        times: Optional[int] = 1,
        message: str = "scripted failure",
    ) -> ScriptedFailure:
        """Make matching calls fail. ``match`` filters on the object's attributes."""
        failure = ScriptedFailure(
            operation=operation,
            kind=kind,
            match=match,
            transient=transient,
            times=times,
            message=message,
        )
        self._failures.append(failure)
        return failure

    def set_condition_checks(self, kind: str, checks: Optional[int]) -> None:
        self._condition_checks[kind] = checks

    def fail_condition(self, kind: str, message: str = "validation failed") -> None:
        """Make the condition check for ``kind`` report a permanent failure."""
        self._condition_failures[kind] = message

    def calls_for(self, operation: str, kind: Optional[str] = None) -> List[Call]:
        return [
            call
            for call in self.calls
            if call.operation == operation and (kind is None or call.kind == kind)
        ]

    def find(self, kind: str, **attributes: Any) -> List[MemoryObject]:
        """Live objects of ``kind`` whose attributes include ``attributes``."""
        return [
            obj
            for obj in self.objects.values()
            if obj.kind == kind and all(obj.attributes.get(k) == v for k, v in attributes.items())
        ]

    # -- CloudProvider -----------------------------------------------------

    async def create(self, kind: str, attributes: dict[str, Any]) -> str:
        async with self._call("create", kind, None, attributes):
            self._counter += 1
            provider_id = f"{kind}-{self._counter:04d}"
            obj = MemoryObject(
                provider_id=provider_id,
                kind=kind,
                attributes=copy.deepcopy(attributes),
            )
            obj.outputs = _outputs_for(obj)
            self.objects[provider_id] = obj
            if kind == ResourceKind.STORAGE_BUCKET:
                self.buckets.setdefault(attributes["name"], {})
            logger.debug("memory_object_created", provider_id=provider_id)
            return provider_id

    async def read(self, kind: str, provider_id: str) -> dict[str, Any]:
        obj = self._get(kind, provider_id)
        async with self._call("read", kind, provider_id, obj.attributes):
            return {**copy.deepcopy(obj.outputs), "id": provider_id}

    async def update(self, kind: str, provider_id: str, attributes: dict[str, Any]) -> None:
        obj = self._get(kind, provider_id)
        async with self._call("update", kind, provider_id, attributes):
            obj.attributes = copy.deepcopy(attributes)
            if kind == ResourceKind.CDN_DISTRIBUTION:
                obj.ready = False
                obj.checks = 0
            obj.outputs = _outputs_for(obj)

    async def delete(self, kind: str, provider_id: str) -> None:
        obj = self._get(kind, provider_id)
        async with self._call("delete", kind, provider_id, obj.attributes):
            del self.objects[provider_id]
            if kind == ResourceKind.STORAGE_BUCKET:
                self.buckets.pop(obj.attributes["name"], None)

    async def check_condition(self, kind: str, provider_id: str) -> bool:
        obj = self._get(kind, provider_id)
        async with self._call("check_condition", kind, provider_id, obj.attributes):
            if kind in self._condition_failures:
                raise PermanentProviderError(
                    f"{provider_id}: {self._condition_failures[kind]}",
                    {"provider_id": provider_id},
                )
            obj.checks += 1
            needed = self._condition_checks.get(kind, 0)
            if needed is not None and obj.checks > needed:
                obj.ready = True
            obj.outputs = _outputs_for(obj)
            return obj.ready

    async def health_check(self) -> ProviderHealth:
        return ProviderHealth(status="healthy", details=f"{len(self.objects)} objects")

    async def aclose(self) -> None:
        return None

    # -- internals ---------------------------------------------------------

    def _get(self, kind: str, provider_id: str) -> MemoryObject:
        obj = self.objects.get(provider_id)
        if obj is None or obj.kind != kind:
            self.calls.append(Call("not_found", kind, provider_id))
            raise ResourceNotFound(kind, provider_id)
        return obj

    def _call(
        self, operation: str, kind: str, provider_id: Optional[str], attributes: Mapping[str, Any]
    ) -> "_InFlight":
        self.calls.append(Call(operation, kind, provider_id))
        for failure in self._failures:
            if failure.times == 0 or not failure.matches(operation, kind, attributes):
                continue
            if failure.times is not None:
                failure.times -= 1
            error_type = TransientProviderError if failure.transient else PermanentProviderError
            return _InFlight(self, error_type(f"{operation} {kind}: {failure.message}"))
        return _InFlight(self, None)


class _InFlight:
    """Tracks concurrency and raises the scripted error, if any, after the latency."""

    def __init__(self, provider: MemoryProvider, error: Optional[Exception]) -> None:
        self._provider = provider
        self._error = error

    async def __aenter__(self) -> None:
        provider = self._provider
        provider.in_flight += 1
        provider.max_in_flight = max(provider.max_in_flight, provider.in_flight)
        try:
            await asyncio.sleep(provider._latency)
        except BaseException:
            provider.in_flight -= 1
            raise
        if self._error is not None:
            provider.in_flight -= 1
            raise self._error

    async def __aexit__(self, *exc_info: Any) -> None:
        self._provider.in_flight -= 1


def _outputs_for(obj: MemoryObject) -> Dict[str, Any]:
    attrs = obj.attributes
    digest = hashlib.sha1(obj.provider_id.encode()).hexdigest()[:12]

    if obj.kind == ResourceKind.STORAGE_BUCKET:
        name = attrs["name"]
        region = attrs.get("region", "us-east-1")
        return {
            "arn": f"arn:aws:s3:::{name}",
            "regional_domain_name": f"{name}.s3.{region}.amazonaws.com",
        }
    if obj.kind == ResourceKind.CERTIFICATE:
        domain = attrs["domain_name"]
        return {
            "arn": f"arn:aws:acm:us-east-1:{ACCOUNT_ID}:certificate/{digest}",
            "status": "ISSUED" if obj.ready else "PENDING_VALIDATION",
            "validation_record_name": f"_{digest}.{domain}.",
            "validation_record_type": "CNAME",
            "validation_record_value": f"_{digest[::-1]}.acm-validations.aws.",
        }
    if obj.kind == ResourceKind.DNS_RECORD:
        return {"fqdn": attrs["name"].rstrip(".")}
    if obj.kind == ResourceKind.CDN_DISTRIBUTION:
        return {
            "arn": f"arn:aws:cloudfront::{ACCOUNT_ID}:distribution/E{digest.upper()}",
            "domain_name": f"d{digest}.cloudfront.net",
            "hosted_zone_id": CLOUDFRONT_ZONE_ID,
            "status": "Deployed" if obj.ready else "InProgress",
        }
    return {}


register_provider(
    "memory",
    lambda **_: MemoryProvider(),
    description="In-process cloud for tests and dry runs",
)
