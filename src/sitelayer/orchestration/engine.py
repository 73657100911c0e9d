"""
Change-set executor.

Runs one asyncio task per plan entry. A task starts once every entry it
depends on has finished; failures block dependents while independent
branches keep going. State is committed after each provider call so an
interrupted apply can be resumed by the next plan.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Mapping, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from sitelayer.config.settings import Settings, get_settings
from sitelayer.core.errors import (
    ApplyCancelled,
    PermanentProviderError,
    ResourceNotFound,
    SiteLayerError,
    TransientProviderError,
)
from sitelayer.orchestration.plan_builder import ChangeAction, ChangeSetEntry, Phase, Plan
from sitelayer.orchestration.references import resolve_attributes
from sitelayer.orchestration.results import ApplyResult, Outcome, ResultCollector
from sitelayer.orchestration.waiter import ConditionWaiter, cancellable_sleep
from sitelayer.providers.base import CloudProvider
from sitelayer.resources.models import ResourceDescriptor
from sitelayer.resources.registry import KindRegistry, default_kind_registry
from sitelayer.state.models import ResourceStatus, StateRecord
from sitelayer.state.store import StateTransaction

logger = structlog.get_logger()

T = TypeVar("T")


class ExecutionEngine:
    """Applies a plan against a provider, committing state as it goes."""

    def __init__(
        self,
        provider: CloudProvider,
        txn: StateTransaction,
        *,
        registry: KindRegistry | None = None,
        settings: Settings | None = None,
        waiter: ConditionWaiter | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self._provider = provider
        self._txn = txn
        self._registry = registry or default_kind_registry()
        self._settings = settings or get_settings()
        self._cancel_event = cancel_event or asyncio.Event()
        self._waiter = waiter or ConditionWaiter(
            poll_interval=self._settings.condition_poll_interval,
            timeout=self._settings.condition_timeout,
            cancel_event=self._cancel_event,
        )

    async def apply(
        self, plan: Plan, descriptors: Mapping[str, ResourceDescriptor]
    ) -> ApplyResult:
        """Execute every entry of ``plan``.

        ``descriptors`` supplies the desired attributes for apply-phase
        entries. Never raises for a node failure; inspect the result.
        """
        started = time.monotonic()
        collector = ResultCollector()
        finished = {entry.key: asyncio.Event() for entry in plan}
        semaphore = asyncio.Semaphore(self._settings.concurrency)

        async def run(entry: ChangeSetEntry) -> None:
            try:
                await self._run_node(entry, descriptors, collector, finished, semaphore)
            finally:
                finished[entry.key].set()

        logger.info("apply_started", entries=len(plan), concurrency=self._settings.concurrency)
        await asyncio.gather(*(asyncio.create_task(run(entry)) for entry in plan))

        result = collector.finalize(time.monotonic() - started, plan)
        logger.info(
            "apply_finished",
            succeeded=len(result.succeeded),
            failed=len(result.failed),
            blocked=len(result.blocked),
            cancelled=len(result.cancelled),
            duration_seconds=round(result.duration_seconds, 3),
        )
        return result

    async def _run_node(
        self,
        entry: ChangeSetEntry,
        descriptors: Mapping[str, ResourceDescriptor],
        collector: ResultCollector,
        finished: Mapping[str, asyncio.Event],
        semaphore: asyncio.Semaphore,
    ) -> None:
        deps = [dep for dep in entry.depends_on if dep in finished]
        for dep in deps:
            await finished[dep].wait()

        with structlog.contextvars.bound_contextvars(
            address=entry.address, action=entry.action.value, phase=entry.phase.value
        ):
            upstream = [dep for dep in deps if not _succeeded(collector.outcome(dep))]
            if upstream:
                logger.warning("node_blocked", blocked_by=upstream)
                collector.record(
                    entry,
                    Outcome.blocked,
                    SiteLayerError(f"blocked by {', '.join(upstream)}", {"blocked_by": upstream}),
                )
                return

            if self._cancel_event.is_set():
                collector.record(entry, Outcome.cancelled, ApplyCancelled("Apply cancelled"))
                return

            async with semaphore:
                if self._cancel_event.is_set():
                    collector.record(entry, Outcome.cancelled, ApplyCancelled("Apply cancelled"))
                    return
                logger.info("node_started", reason=entry.reason)
                try:
                    outcome = await self._execute(entry, descriptors)
                except ApplyCancelled as exc:
                    logger.warning("node_cancelled")
                    collector.record(entry, Outcome.cancelled, exc)
                except SiteLayerError as exc:
                    logger.error("node_failed", error_type=type(exc).__name__, error=str(exc))
                    collector.record(entry, Outcome.failed, exc)
                except asyncio.CancelledError:
                    collector.record(entry, Outcome.cancelled, ApplyCancelled("Apply cancelled"))
                    raise
                except Exception as exc:
                    logger.exception("node_failed_unexpectedly", error_type=type(exc).__name__)
                    collector.record(entry, Outcome.failed, exc)
                else:
                    logger.info("node_finished", outcome=outcome.value)
                    collector.record(entry, outcome)

    async def _execute(
        self, entry: ChangeSetEntry, descriptors: Mapping[str, ResourceDescriptor]
    ) -> Outcome:
        if entry.phase is Phase.destroy:
            if entry.deposed:
                await self._destroy_deposed(entry)
                return Outcome.destroyed
            if entry.action is ChangeAction.replace:
                await self._destroy_original(entry)
                return Outcome.replaced
            await self._destroy(entry)
            return Outcome.destroyed

        if entry.action is ChangeAction.noop:
            return Outcome.noop

        descriptor = descriptors[entry.address]
        if entry.action is ChangeAction.create:
            await self._create(descriptor, keep_original=False)
            return Outcome.created
        if entry.action is ChangeAction.replace:
            await self._create(descriptor, keep_original=entry.create_before_destroy)
            return Outcome.replaced
        if entry.resume:
            await self._resume(descriptor)
        else:
            await self._update(descriptor)
        return Outcome.updated

    # -- apply phase -------------------------------------------------------

    async def _create(self, descriptor: ResourceDescriptor, *, keep_original: bool) -> None:
        kind = descriptor.kind.value
        previous = self._txn.get(descriptor.address)
        attributes = resolve_attributes(descriptor, self._txn.records)
        base = StateRecord(
            address=descriptor.address,
            kind=kind,
            last_applied_attributes=descriptor.plain_attributes(),
            resolved_attributes=attributes,
            status=ResourceStatus.creating,
            dependencies=sorted(descriptor.dependencies),
            deposed_id=previous.deposed_id if previous else None,
        )

        if keep_original:
            # The original keeps serving until the replacement exists
            assert previous is not None
            provider_id = await self._call("create", self._provider.create, kind, attributes)
            record = base.evolve(provider_id=provider_id, deposed_id=previous.provider_id)
            await self._txn.commit(record)
        else:
            await self._txn.commit(base)
            provider_id = await self._call("create", self._provider.create, kind, attributes)
            record = base.evolve(provider_id=provider_id)
            await self._txn.commit(record)
        logger.info("resource_created", provider_id=provider_id)

        await self._settle(record)

    async def _update(self, descriptor: ResourceDescriptor) -> None:
        record = self._txn.get(descriptor.address)
        if record is None or not record.provider_id:
            raise PermanentProviderError(f"{descriptor.address} has no provider object to update")
        attributes = resolve_attributes(descriptor, self._txn.records)
        await self._call(
            "update", self._provider.update, record.kind, record.provider_id, attributes
        )
        record = record.evolve(
            last_applied_attributes=descriptor.plain_attributes(),
            resolved_attributes=attributes,
            dependencies=sorted(descriptor.dependencies),
        )
        await self._txn.commit(record)
        await self._settle(record)

    async def _resume(self, descriptor: ResourceDescriptor) -> None:
        """Finish an interrupted readiness wait without touching the provider object."""
        record = self._txn.get(descriptor.address)
        if record is None or not record.provider_id:
            raise PermanentProviderError(f"{descriptor.address} has no provider object to resume")
        record = record.evolve(dependencies=sorted(descriptor.dependencies))
        await self._settle(record)

    async def _settle(self, record: StateRecord) -> None:
        """Read outputs, wait for readiness if the kind needs it, then mark ready."""
        assert record.provider_id is not None
        schema = self._registry.get(record.kind)
        outputs = await self._call("read", self._provider.read, record.kind, record.provider_id)
        record = record.evolve(outputs=outputs)

        if schema is not None and schema.awaits_condition:
            if record.status is not ResourceStatus.creating:
                record = record.evolve(status=ResourceStatus.creating)
            await self._txn.commit(record)
            await self._await_condition(record, schema.condition_description or "readiness")
            outputs = await self._call(
                "read", self._provider.read, record.kind, record.provider_id
            )
            record = record.evolve(outputs=outputs)

        self._check_cancelled()
        await self._txn.commit(record.evolve(status=ResourceStatus.ready))

    async def _await_condition(self, record: StateRecord, what: str) -> None:
        assert record.provider_id is not None
        provider_id = record.provider_id

        async def predicate() -> bool:
            return await self._provider.check_condition(record.kind, provider_id)

        try:
            await self._waiter.wait(predicate, f"{record.address} {what}")
        except PermanentProviderError:
            await self._txn.taint(record.address)
            logger.error("resource_tainted", provider_id=provider_id)
            raise

    # -- destroy phase -----------------------------------------------------

    async def _destroy(self, entry: ChangeSetEntry) -> None:
        record = self._txn.get(entry.address)
        if record is not None and record.provider_id:
            await self._txn.commit(record.evolve(status=ResourceStatus.destroying))
            await self._delete(record.kind, record.provider_id)
        await self._txn.remove(entry.address)

    async def _destroy_original(self, entry: ChangeSetEntry) -> None:
        if not entry.create_before_destroy:
            await self._destroy(entry)
            return
        # The replacement already owns the record; the original is deposed
        if entry.provider_id:
            await self._delete(entry.kind, entry.provider_id)
        await self._clear_deposed(entry.address, entry.provider_id)

    async def _destroy_deposed(self, entry: ChangeSetEntry) -> None:
        assert entry.provider_id is not None
        await self._delete(entry.kind, entry.provider_id)
        await self._clear_deposed(entry.address, entry.provider_id)

    async def _delete(self, kind: str, provider_id: str) -> None:
        try:
            await self._call("delete", self._provider.delete, kind, provider_id)
        except ResourceNotFound:
            logger.info("resource_already_gone", provider_id=provider_id)
        else:
            logger.info("resource_deleted", provider_id=provider_id)

    async def _clear_deposed(self, address: str, provider_id: str | None) -> None:
        record = self._txn.get(address)
        if record is not None and record.deposed_id == provider_id:
            await self._txn.commit(record.evolve(deposed_id=None))

    # -- helpers -----------------------------------------------------------

    async def _call(self, operation: str, func: Callable[..., Awaitable[T]], *args: Any) -> T:
        """Invoke a provider call, retrying transient failures with backoff."""
        self._check_cancelled()
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(TransientProviderError),
            stop=stop_after_attempt(self._settings.max_attempts),
            wait=wait_exponential(
                multiplier=self._settings.backoff_multiplier,
                min=self._settings.backoff_min,
                max=self._settings.backoff_max,
            ),
            sleep=cancellable_sleep(self._cancel_event),
            before_sleep=_log_retry(operation),
            reraise=True,
        ):
            with attempt:
                return await func(*args)
        raise AssertionError("unreachable")  # pragma: no cover

    def _check_cancelled(self) -> None:
        if self._cancel_event.is_set():
            raise ApplyCancelled("Apply cancelled")


def _succeeded(outcome: Outcome | None) -> bool:
    return outcome is not None and outcome.succeeded


def _log_retry(operation: str) -> Callable[[RetryCallState], None]:
    def before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "provider_call_retry",
            operation=operation,
            attempt=retry_state.attempt_number,
            wait_seconds=round(retry_state.next_action.sleep, 2) if retry_state.next_action else None,
            error=str(exc),
        )

    return before_sleep
