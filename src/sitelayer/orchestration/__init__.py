"""Orchestration package: dependency graph, planning and concurrent execution."""

from sitelayer.orchestration.engine import ExecutionEngine
from sitelayer.orchestration.graph import DependencyGraph, build, build_stored, find_cycle
from sitelayer.orchestration.plan_builder import (
    ChangeAction,
    ChangeSetEntry,
    Phase,
    Plan,
    PlanBuilder,
)
from sitelayer.orchestration.references import resolve_attributes, resolve_value
from sitelayer.orchestration.results import (
    ApplyResult,
    NodeResult,
    Outcome,
    PlanResult,
    ResultCollector,
)
from sitelayer.orchestration.waiter import ConditionWaiter

__all__ = [
    "ApplyResult",
    "ChangeAction",
    "ChangeSetEntry",
    "ConditionWaiter",
    "DependencyGraph",
    "ExecutionEngine",
    "NodeResult",
    "Outcome",
    "Phase",
    "Plan",
    "PlanBuilder",
    "PlanResult",
    "ResultCollector",
    "build",
    "build_stored",
    "find_cycle",
    "resolve_attributes",
    "resolve_value",
]
