"""
Site orchestrator.

Ties the pipeline together: parse the desired-state document, build the
dependency graph, load (and optionally refresh) state, plan, execute under
the state lock and finally mirror site content into the bucket.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import structlog

from sitelayer.config.settings import Settings, get_settings
from sitelayer.core.errors import ConfigurationError, ResourceNotFound, SiteLayerError
from sitelayer.logging import run_context
from sitelayer.orchestration.engine import ExecutionEngine
from sitelayer.orchestration.graph import DependencyGraph, build
from sitelayer.orchestration.plan_builder import Plan, PlanBuilder
from sitelayer.orchestration.results import ApplyResult, Outcome, PlanResult
from sitelayer.providers.base import CloudProvider
from sitelayer.providers.memory import MemoryProvider
from sitelayer.providers.registry import create_provider
from sitelayer.resources.models import DesiredState, ResourceKind
from sitelayer.resources.parser import load_document
from sitelayer.resources.registry import KindRegistry, default_kind_registry
from sitelayer.state.models import ResourceStatus, StateRecord
from sitelayer.state.store import StateStore, StateTransaction
from sitelayer.sync import ContentSyncer, MemoryContentSync, S3ContentSync

logger = structlog.get_logger()

_SYNCABLE = (Outcome.created, Outcome.updated, Outcome.replaced, Outcome.noop)


def default_syncer(provider: CloudProvider, settings: Settings) -> ContentSyncer | None:
    if isinstance(provider, MemoryProvider):
        return MemoryContentSync(provider)
    if provider.name == "aws":
        return S3ContentSync(region=settings.aws_region)
    return None


class SiteOrchestrator:
    """Plans and applies one desired-state document."""

    def __init__(
        self,
        document: str | Path | None = None,
        *,
        settings: Optional[Settings] = None,
        provider: Optional[CloudProvider] = None,
        store: Optional[StateStore] = None,
        syncer: Optional[ContentSyncer] = None,
        registry: Optional[KindRegistry] = None,
    ) -> None:
        self.document = Path(document) if document is not None else None
        self.settings = settings or get_settings()
        self.registry = registry or default_kind_registry()
        self._provider = provider
        self.store = store or StateStore(self.settings.state_url)
        self._syncer = syncer

    @property
    def provider(self) -> CloudProvider:
        if self._provider is None:
            self._provider = create_provider(
                self.settings.provider,
                region=self.settings.aws_region,
                profile=self.settings.aws_profile,
            )
        return self._provider

    @property
    def syncer(self) -> ContentSyncer | None:
        if self._syncer is None:
            self._syncer = default_syncer(self.provider, self.settings)
        return self._syncer

    async def __aenter__(self) -> SiteOrchestrator:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._provider is not None:
            await self._provider.aclose()
        await self.store.close()

    def load(self) -> Tuple[DesiredState, DependencyGraph]:
        """Parse the document and build its graph. Touches neither state nor provider."""
        if self.document is None:
            raise ConfigurationError("No desired-state document given")
        desired = load_document(self.document, self.registry)
        graph = build(desired.descriptors)
        logger.info("document_loaded", document=str(self.document), resources=len(desired))
        return desired, graph

    async def plan(self, *, destroy: bool = False, refresh: bool = False) -> PlanResult:
        """Dry run: compute the change set without changing anything."""
        desired, graph = self._load_for(destroy)
        state = await self.store.load()
        if refresh:
            state = await self._refreshed(state)
        plan = self._plan(desired, graph, state)
        warnings = []
        if not destroy and not len(desired):
            warnings.append("document declares no resources; every stored resource is destroyed")
        return PlanResult(document=self.document or Path("."), plan=plan, warnings=warnings)

    async def apply(
        self,
        *,
        destroy: bool = False,
        refresh: bool = False,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ApplyResult:
        """Converge the provider to the document, or destroy everything with ``destroy``.

        Raises:
            ParseError, CycleError: before any state or provider access
            StateLockError: another apply is running
        """
        desired, graph = self._load_for(destroy)
        with run_context(mode="destroy" if destroy else "apply"):
            async with self.store.begin_transaction(self.settings.lock_holder) as txn:
                if refresh:
                    await self._refresh(txn)
                plan = self._plan(desired, graph, txn.records)
                engine = ExecutionEngine(
                    self.provider,
                    txn,
                    registry=self.registry,
                    settings=self.settings,
                    cancel_event=cancel_event,
                )
                result = await engine.apply(plan, graph.nodes)
                if not destroy:
                    await self._sync_content(desired, graph, txn, result)
        return result

    async def taint(self, address: str) -> StateRecord:
        """Mark ``address`` for replacement on the next apply."""
        async with self.store.begin_transaction(self.settings.lock_holder) as txn:
            record = await txn.taint(address)
        if record is None:
            raise ConfigurationError(f"No resource {address} in state", {"address": address})
        logger.info("resource_tainted", address=address)
        return record

    async def state(self) -> Dict[str, StateRecord]:
        return await self.store.load()

    def _load_for(self, destroy: bool) -> Tuple[DesiredState, DependencyGraph]:
        if not destroy:
            return self.load()
        if self.document is not None:
            self.load()
        return DesiredState(descriptors=()), build(())

    def _plan(
        self, desired: DesiredState, graph: DependencyGraph, state: Mapping[str, StateRecord]
    ) -> Plan:
        return PlanBuilder(self.registry).build(desired.descriptors, graph, state)

    async def _refreshed(self, state: Mapping[str, StateRecord]) -> Dict[str, StateRecord]:
        """State as the provider reports it, without persisting anything."""
        refreshed: Dict[str, StateRecord] = {}
        for address, record in sorted(state.items()):
            current = await self._read_current(record)
            if current is not None:
                refreshed[address] = current
        return refreshed

    async def _refresh(self, txn: StateTransaction) -> None:
        for address, record in sorted(txn.records.items()):
            current = await self._read_current(record)
            if current is None:
                await txn.remove(address)
            elif current is not record:
                await txn.commit(current)

    async def _read_current(self, record: StateRecord) -> StateRecord | None:
        if not record.provider_id or record.status is ResourceStatus.absent:
            return record
        try:
            outputs = await self.provider.read(record.kind, record.provider_id)
        except ResourceNotFound:
            if record.deposed_id:
                # Only the deposed original is left; keep it for cleanup
                return record.evolve(provider_id=None, status=ResourceStatus.absent)
            logger.warning("resource_missing", address=record.address, provider_id=record.provider_id)
            return None
        if outputs == record.outputs:
            return record
        logger.info("resource_refreshed", address=record.address)
        return record.evolve(outputs=outputs)

    async def _sync_content(
        self,
        desired: DesiredState,
        graph: DependencyGraph,
        txn: StateTransaction,
        result: ApplyResult,
    ) -> None:
        content = desired.content
        if content is None:
            return
        if self.syncer is None:
            result.sync_error = f"provider {self.provider.name} has no content sync"
            return
        outcomes = result.outcomes()
        unready = []
        for address in _serving_path(content.target, graph):
            record = txn.get(address)
            if (
                outcomes.get(address) not in _SYNCABLE
                or record is None
                or record.status is not ResourceStatus.ready
            ):
                unready.append(address)
        if unready:
            result.sync_error = f"{', '.join(unready)} not ready; content was not synced"
            logger.warning("content_sync_skipped", target=content.target, unready=unready)
            return
        target = txn.get(content.target)
        assert target is not None
        try:
            result.sync = await self.syncer.sync(content.source, target)
        except SiteLayerError as exc:
            result.sync_error = str(exc)
            logger.error("content_sync_failed", target=content.target, error=str(exc))


def _serving_path(bucket: str, graph: DependencyGraph) -> list[str]:
    """The bucket plus every distribution that serves from it."""
    distributions = []
    for address in sorted(graph.transitive_dependents(bucket)):
        descriptor = graph.descriptor(address)
        if descriptor is not None and descriptor.kind is ResourceKind.CDN_DISTRIBUTION:
            distributions.append(address)
    return [bucket, *distributions]
