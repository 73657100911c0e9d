"""Result types for plan and apply."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

from sitelayer.orchestration.plan_builder import ChangeAction, ChangeSetEntry, Phase, Plan

if TYPE_CHECKING:
    from sitelayer.sync import SyncResult


class Outcome(StrEnum):
    """Per-node outcome reported at the end of an apply."""

    created = "created"
    updated = "updated"
    replaced = "replaced"
    destroyed = "destroyed"
    noop = "noop"
    failed = "failed"
    blocked = "blocked"
    cancelled = "cancelled"

    @property
    def succeeded(self) -> bool:
        return self not in (Outcome.failed, Outcome.blocked, Outcome.cancelled)


# When several steps touch one address the worst outcome wins
_SEVERITY = [Outcome.failed, Outcome.cancelled, Outcome.blocked]


@dataclass
class NodeResult:
    """Outcome of one change-set entry."""

    key: str
    address: str
    action: ChangeAction
    phase: Phase
    outcome: Outcome
    error: Optional[BaseException] = None

    @property
    def message(self) -> str | None:
        return str(self.error) if self.error is not None else None


@dataclass
class ApplyResult:
    """Result of applying a change set."""

    plan: Optional[Plan] = None
    nodes: Dict[str, NodeResult] = field(default_factory=dict)
    duration_seconds: float = 0.0
    sync: Optional["SyncResult"] = None
    sync_error: Optional[str] = None

    def outcomes(self) -> Dict[str, Outcome]:
        """Outcome per address, collapsing the two steps of a replacement."""
        by_address: Dict[str, List[NodeResult]] = {}
        for node in self.nodes.values():
            by_address.setdefault(node.address, []).append(node)

        outcomes: Dict[str, Outcome] = {}
        for address, nodes in by_address.items():
            found = {node.outcome for node in nodes}
            worst = next((o for o in _SEVERITY if o in found), None)
            if worst is not None:
                outcomes[address] = worst
                continue
            primary = next((n for n in nodes if n.phase is Phase.apply), nodes[0])
            outcomes[address] = primary.outcome
        return outcomes

    @property
    def succeeded(self) -> List[str]:
        return [address for address, outcome in self.outcomes().items() if outcome.succeeded]

    @property
    def failed(self) -> List[Tuple[str, BaseException]]:
        return [
            (node.address, node.error)
            for node in self.nodes.values()
            if node.outcome is Outcome.failed and node.error is not None
        ]

    @property
    def blocked(self) -> List[str]:
        return [a for a, o in self.outcomes().items() if o is Outcome.blocked]

    @property
    def cancelled(self) -> List[str]:
        return [a for a, o in self.outcomes().items() if o is Outcome.cancelled]

    @property
    def changed(self) -> int:
        return sum(1 for o in self.outcomes().values() if o.succeeded and o is not Outcome.noop)

    @property
    def success(self) -> bool:
        """Whether every node succeeded. Content sync is reported apart in ``sync_error``."""
        return all(o.succeeded for o in self.outcomes().values())


@dataclass
class PlanResult:
    """Result of planning (dry-run) a desired-state document."""

    document: Path
    plan: Plan
    warnings: List[str] = field(default_factory=list)

    @property
    def entries(self) -> Tuple[ChangeSetEntry, ...]:
        return self.plan.entries

    @property
    def has_changes(self) -> bool:
        return self.plan.has_changes

    @property
    def summary(self) -> Dict[str, int]:
        return self.plan.summary()


class ResultCollector:
    """Aggregates node outcomes during execution."""

    def __init__(self) -> None:
        self._result = ApplyResult()

    def record(
        self, entry: ChangeSetEntry, outcome: Outcome, error: BaseException | None = None
    ) -> None:
        """Record the outcome of one entry."""
        self._result.nodes[entry.key] = NodeResult(
            key=entry.key,
            address=entry.address,
            action=entry.action,
            phase=entry.phase,
            outcome=outcome,
            error=error,
        )

    def outcome(self, key: str) -> Outcome | None:
        node = self._result.nodes.get(key)
        return node.outcome if node else None

    def finalize(self, duration: float, plan: Plan | None = None) -> ApplyResult:
        """Return the final result with duration set."""
        self._result.duration_seconds = duration
        self._result.plan = plan
        return self._result
