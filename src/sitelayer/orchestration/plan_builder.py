"""
Change-set planning.

Diffs the desired state against the stored state and produces an ordered
change set. Each entry lists the entries that must succeed before it may
start, so the executor can run independent branches concurrently while
the list order itself is a valid serial schedule.
"""

from __future__ import annotations

import heapq
from collections import Counter
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Iterable, Mapping

import structlog

from sitelayer.core.errors import CycleError, PermanentProviderError
from sitelayer.orchestration.graph import DependencyGraph, build_stored
from sitelayer.orchestration.references import resolve_value
from sitelayer.resources.models import ResourceDescriptor
from sitelayer.resources.registry import KindRegistry, default_kind_registry
from sitelayer.state.models import ResourceStatus, StateRecord

logger = structlog.get_logger()


class ChangeAction(StrEnum):
    create = "create"
    update = "update"
    replace = "replace"
    destroy = "destroy"
    noop = "noop"


class Phase(StrEnum):
    """Whether an entry brings the desired object up or removes an existing one."""

    apply = "apply"
    destroy = "destroy"


@dataclass(frozen=True)
class ChangeSetEntry:
    """One planned operation on one address."""

    address: str
    kind: str
    action: ChangeAction
    reason: str
    phase: Phase = Phase.apply
    depends_on: tuple[str, ...] = ()
    provider_id: str | None = None
    create_before_destroy: bool = False
    deposed: bool = False
    # Only finish an interrupted readiness wait; the object is left as it is
    resume: bool = False

    @property
    def key(self) -> str:
        if self.phase is Phase.apply:
            return self.address
        if self.deposed:
            return f"{self.address}/deposed"
        return f"{self.address}/destroy"

    @property
    def is_change(self) -> bool:
        return self.action is not ChangeAction.noop

    def describe(self) -> str:
        if self.action is ChangeAction.replace:
            step = "create replacement" if self.phase is Phase.apply else "destroy original"
            return f"replace ({step})"
        return self.action.value


@dataclass(frozen=True)
class Plan:
    """Ordered change set produced once per apply."""

    entries: tuple[ChangeSetEntry, ...] = ()

    def __iter__(self):
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def has_changes(self) -> bool:
        return any(entry.is_change for entry in self.entries)

    @property
    def keys(self) -> list[str]:
        return [entry.key for entry in self.entries]

    def entry(self, key: str) -> ChangeSetEntry | None:
        for entry in self.entries:
            if entry.key == key:
                return entry
        return None

    def index(self, key: str) -> int:
        return self.keys.index(key)

    def summary(self) -> dict[str, int]:
        """Count of planned actions per address; a replace counts once."""
        counts: Counter[str] = Counter()
        for entry in self.entries:
            if entry.action is ChangeAction.replace and entry.phase is Phase.destroy:
                continue
            counts[entry.action.value] += 1
        return dict(counts)


@dataclass
class _Decision:
    action: ChangeAction
    reason: str
    create_before_destroy: bool = False
    changed: set[str] = field(default_factory=set)
    resume: bool = False


class PlanBuilder:
    """Builds the change set for one apply."""

    def __init__(self, registry: KindRegistry | None = None) -> None:
        self._registry = registry or default_kind_registry()

    def build(
        self,
        descriptors: Iterable[ResourceDescriptor],
        graph: DependencyGraph,
        state: Mapping[str, StateRecord],
    ) -> Plan:
        desired = {d.address: d for d in descriptors}
        order = graph.topological_order()
        stored = build_stored(state)

        decisions: dict[str, _Decision] = {}
        for address in order:
            decisions[address] = self._decide(desired[address], state, decisions)
        _propagate_create_before_destroy(order, graph, decisions)

        entries: dict[str, ChangeSetEntry] = {}
        priority: dict[str, tuple[int, int]] = {}

        def add(entry: ChangeSetEntry, rank: tuple[int, int]) -> None:
            entries[entry.key] = entry
            priority[entry.key] = rank

        # Originals left behind by a create-before-destroy replacement
        deferred: set[str] = set()
        for address, record in sorted(state.items()):
            if not record.deposed_id:
                continue
            deps = list(_destroy_deps(address, stored, state, desired, decisions, repoint=False))
            if _defers_deposed_cleanup(address, graph, stored, decisions):
                # The original keeps serving until its replacement is ready
                # and every dependent has moved over to it
                deferred.add(address)
                deps.append(address)
                deps.extend(sorted(graph.dependents(address)))
                deps.extend(user for user in sorted(stored.dependents(address)) if user in desired)
            add(
                ChangeSetEntry(
                    address=address,
                    kind=record.kind,
                    action=ChangeAction.destroy,
                    reason="deposed object left by an earlier replacement",
                    phase=Phase.destroy,
                    depends_on=_unique(deps),
                    provider_id=record.deposed_id,
                    deposed=True,
                ),
                (1, 0),
            )

        for index, address in enumerate(order):
            descriptor = desired[address]
            decision = decisions[address]
            record = state.get(address)

            deps = [dep for dep in sorted(graph.dependencies(address))]
            if record is not None and record.deposed_id and address not in deferred:
                deps.append(f"{address}/deposed")

            if decision.action is ChangeAction.replace:
                assert record is not None
                destroy_key = f"{address}/destroy"
                destroy_deps = list(_destroy_deps(address, stored, state, desired, decisions))
                if record.deposed_id:
                    destroy_deps.append(f"{address}/deposed")
                if decision.create_before_destroy:
                    destroy_deps.append(address)
                    destroy_deps.extend(
                        user for user in sorted(graph.dependents(address)) if user in desired
                    )
                else:
                    deps.append(destroy_key)
                add(
                    ChangeSetEntry(
                        address=address,
                        kind=descriptor.kind.value,
                        action=ChangeAction.replace,
                        reason=decision.reason,
                        phase=Phase.destroy,
                        depends_on=_unique(destroy_deps),
                        provider_id=record.provider_id,
                        create_before_destroy=decision.create_before_destroy,
                    ),
                    (0, index),
                )

            add(
                ChangeSetEntry(
                    address=address,
                    kind=descriptor.kind.value,
                    action=decision.action,
                    reason=decision.reason,
                    depends_on=_unique(deps),
                    provider_id=record.provider_id if record else None,
                    create_before_destroy=decision.create_before_destroy,
                    resume=decision.resume,
                ),
                (0, index),
            )

        reverse_stored = stored.reverse_topological_order()
        for address in reverse_stored:
            if address in desired:
                continue
            record = state[address]
            orphan_deps = _destroy_deps(address, stored, state, desired, decisions)
            if record.deposed_id:
                orphan_deps += (f"{address}/deposed",)
            add(
                ChangeSetEntry(
                    address=address,
                    kind=record.kind,
                    action=ChangeAction.destroy,
                    reason="not in desired state",
                    phase=Phase.destroy,
                    depends_on=orphan_deps,
                    provider_id=record.provider_id,
                ),
                (1, reverse_stored.index(address)),
            )

        plan = Plan(entries=tuple(_schedule(entries, priority)))
        logger.info("plan_built", entries=len(plan), **plan.summary())
        return plan

    def _decide(
        self,
        descriptor: ResourceDescriptor,
        state: Mapping[str, StateRecord],
        decisions: Mapping[str, _Decision],
    ) -> _Decision:
        cbd = descriptor.lifecycle.create_before_destroy
        record = state.get(descriptor.address)

        if record is None or record.status is ResourceStatus.absent:
            return _Decision(ChangeAction.create, "not in state")
        if record.status is ResourceStatus.creating and not record.provider_id:
            return _Decision(ChangeAction.create, "previous create did not complete")
        if record.status is ResourceStatus.tainted:
            return _Decision(ChangeAction.replace, "tainted", cbd)
        if record.status is ResourceStatus.destroying:
            return _Decision(ChangeAction.replace, "previous destroy did not complete", cbd)

        schema = self._registry.get(descriptor.kind)
        assert schema is not None
        desired_attrs = descriptor.plain_attributes()
        stored_attrs = record.last_applied_attributes
        changed = {
            name
            for name in set(desired_attrs) | set(stored_attrs)
            if desired_attrs.get(name) != stored_attrs.get(name)
        }

        # A reference to something that gets a new identity changes the
        # resolved value even when the expression is identical.
        recreated: set[str] = set()
        for ref in descriptor.references:
            upstream = decisions.get(ref.target)
            if upstream and upstream.action in (ChangeAction.create, ChangeAction.replace):
                changed.add(ref.attribute)
                recreated.add(ref.target)

        # The upstream may also have moved in an earlier apply that never
        # reached this resource, e.g. when it was blocked behind a timed out
        # replacement.
        moved: set[str] = set()
        for ref in descriptor.references:
            if ref.attribute in changed:
                continue
            if _resolves_differently(descriptor, ref.attribute, record, state):
                changed.add(ref.attribute)
                moved.add(ref.target)

        reference_reasons = []
        if recreated:
            reference_reasons.append(
                f"references {', '.join(sorted(recreated))} which is being replaced"
            )
        if moved:
            reference_reasons.append(
                f"references {', '.join(sorted(moved))} which now resolves to a different value"
            )

        force_new = changed & schema.force_new_attributes
        if changed and (force_new or not schema.updatable):
            names = ", ".join(sorted(force_new or changed))
            reason = "; ".join([f"{names} requires replacement", *reference_reasons])
            return _Decision(ChangeAction.replace, reason, cbd, changed)

        if changed:
            followed = {
                ref.attribute for ref in descriptor.references if ref.target in recreated | moved
            }
            if reference_reasons and changed == followed:
                reason = "; ".join(reference_reasons)
            else:
                reason = f"{', '.join(sorted(changed))} changed"
            return _Decision(ChangeAction.update, reason, changed=changed)

        if record.status is ResourceStatus.creating:
            return _Decision(ChangeAction.update, "resume readiness wait", resume=True)

        if set(record.dependencies) != set(descriptor.dependencies):
            return _Decision(ChangeAction.update, "dependencies changed")

        return _Decision(ChangeAction.noop, "up to date")


def _propagate_create_before_destroy(
    order: list[str], graph: DependencyGraph, decisions: dict[str, _Decision]
) -> None:
    """A replaced dependency of a create-before-destroy resource must also create first.

    Otherwise its original would have to disappear before the dependent's
    replacement exists, which the ordering cannot satisfy.
    """
    for address in reversed(order):
        decision = decisions[address]
        if decision.action is not ChangeAction.replace or not decision.create_before_destroy:
            continue
        stack = list(graph.dependencies(address))
        while stack:
            dep = stack.pop()
            upstream = decisions[dep]
            if upstream.action is ChangeAction.replace and not upstream.create_before_destroy:
                upstream.create_before_destroy = True
                stack.extend(graph.dependencies(dep))


def _defers_deposed_cleanup(
    address: str,
    graph: DependencyGraph,
    stored: DependencyGraph,
    decisions: Mapping[str, _Decision],
) -> bool:
    """Whether a deposed original at ``address`` can wait for its replacement and dependents.

    Not when the address is created or replaced again, since that reuses the
    deposed slot, nor when anything upstream of it or of its dependents is
    replaced, since destroying those originals waits on this cleanup.
    """
    own = decisions.get(address)
    if own is None or own.action in (ChangeAction.create, ChangeAction.replace):
        return False
    upstream = stored.transitive_dependencies(address) if address in stored else set()
    users = graph.transitive_dependents(address)
    users |= {user for user in stored.dependents(address) if user in graph}
    for node in {address} | users:
        upstream |= graph.transitive_dependencies(node)
    return not any(
        decisions[dep].action is ChangeAction.replace for dep in upstream if dep in decisions
    )


def _resolves_differently(
    descriptor: ResourceDescriptor,
    attribute: str,
    record: StateRecord,
    state: Mapping[str, StateRecord],
) -> bool:
    """Whether ``attribute`` would now resolve to something other than what the provider has.

    Records that never stored resolved values compare as unchanged.
    """
    if attribute not in record.resolved_attributes:
        return False
    try:
        current = resolve_value(descriptor.address, descriptor.plain_attributes()[attribute], state)
    except PermanentProviderError:
        return True
    return current != record.resolved_attributes[attribute]


def _destroy_deps(
    address: str,
    stored: DependencyGraph,
    state: Mapping[str, StateRecord],
    desired: Mapping[str, ResourceDescriptor],
    decisions: Mapping[str, _Decision],
    *,
    repoint: bool = True,
) -> tuple[str, ...]:
    """Entries that must finish before an existing object at ``address`` is destroyed.

    Everything that depended on it at last apply is either destroyed first
    or, if still desired, re-pointed first. Re-pointing is skipped when the
    dependent waits on our own replacement (destroy-then-create) and for
    deposed objects, which are cleaned up before the address is touched.
    """
    deps: list[str] = []
    own = decisions.get(address)
    if own is not None and own.action is ChangeAction.replace and not own.create_before_destroy:
        repoint = False
    for user in sorted(stored.dependents(address)):
        if user not in desired:
            deps.append(f"{user}/destroy")
            continue
        if decisions[user].action is ChangeAction.replace:
            deps.append(f"{user}/destroy")
        if repoint:
            deps.append(user)
        if state[user].deposed_id:
            deps.append(f"{user}/deposed")
    return _unique(deps)


def _schedule(
    entries: Mapping[str, ChangeSetEntry], priority: Mapping[str, tuple[int, int]]
) -> list[ChangeSetEntry]:
    """Kahn's algorithm over entry dependencies, lowest priority first among ready entries."""
    waiting = {key: {dep for dep in entry.depends_on if dep in entries} for key, entry in entries.items()}
    users: dict[str, list[str]] = {key: [] for key in entries}
    for key, deps in waiting.items():
        for dep in deps:
            users[dep].append(key)

    ready = [(priority[key], key) for key, deps in waiting.items() if not deps]
    heapq.heapify(ready)
    ordered: list[ChangeSetEntry] = []
    while ready:
        _, key = heapq.heappop(ready)
        ordered.append(entries[key])
        for user in users[key]:
            waiting[user].discard(key)
            if not waiting[user]:
                heapq.heappush(ready, (priority[user], user))

    if len(ordered) != len(entries):
        stuck = sorted(set(entries) - {entry.key for entry in ordered})
        raise CycleError(stuck)
    return ordered


def _unique(items: Iterable[str]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(items))
