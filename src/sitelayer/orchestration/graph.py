"""Dependency graph construction and cycle detection."""

from __future__ import annotations

import heapq
from types import MappingProxyType
from typing import TYPE_CHECKING, Callable, Iterable, Iterator, Mapping

from sitelayer.core.errors import CycleError, UnknownReference
from sitelayer.resources.models import ResourceDescriptor

if TYPE_CHECKING:
    from sitelayer.state.models import StateRecord


class DependencyGraph:
    """Immutable directed acyclic graph of resource addresses.

    An edge ``a -> b`` means ``a`` depends on ``b``: ``b`` must be ready
    before ``a`` starts, and ``a`` must be gone before ``b`` is destroyed.
    """

    def __init__(
        self,
        dependencies: Mapping[str, Iterable[str]],
        descriptors: Mapping[str, ResourceDescriptor] | None = None,
    ) -> None:
        self._deps: Mapping[str, frozenset[str]] = MappingProxyType(
            {address: frozenset(deps) for address, deps in dependencies.items()}
        )
        dependents: dict[str, set[str]] = {address: set() for address in self._deps}
        for address, deps in self._deps.items():
            for dep in deps:
                dependents.setdefault(dep, set()).add(address)
        self._dependents: Mapping[str, frozenset[str]] = MappingProxyType(
            {address: frozenset(users) for address, users in dependents.items()}
        )
        self._descriptors: Mapping[str, ResourceDescriptor] = MappingProxyType(
            dict(descriptors or {})
        )

    def __contains__(self, address: object) -> bool:
        return address in self._deps

    def __len__(self) -> int:
        return len(self._deps)

    def __iter__(self) -> Iterator[str]:
        return iter(self._deps)

    @property
    def nodes(self) -> Mapping[str, ResourceDescriptor]:
        return self._descriptors

    def descriptor(self, address: str) -> ResourceDescriptor | None:
        return self._descriptors.get(address)

    def dependencies(self, address: str) -> frozenset[str]:
        """Addresses ``address`` depends on."""
        return self._deps.get(address, frozenset())

    def dependents(self, address: str) -> frozenset[str]:
        """Addresses that depend on ``address``."""
        return self._dependents.get(address, frozenset())

    def edges(self) -> list[tuple[str, str]]:
        return sorted((a, b) for a, deps in self._deps.items() for b in deps)

    def transitive_dependents(self, address: str) -> set[str]:
        return self._reachable(address, self.dependents)

    def transitive_dependencies(self, address: str) -> set[str]:
        return self._reachable(address, self.dependencies)

    def _reachable(self, address: str, step: Callable[[str], Iterable[str]]) -> set[str]:
        seen: set[str] = set()
        stack = list(step(address))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(step(current))
        return seen

    def topological_order(self) -> list[str]:
        """Dependencies first; ties keep the order nodes were declared in."""
        rank = {address: index for index, address in enumerate(self._deps)}
        remaining = {
            address: sum(1 for dep in deps if dep in self._deps)
            for address, deps in self._deps.items()
        }
        ready = [(rank[address], address) for address, count in remaining.items() if count == 0]
        heapq.heapify(ready)
        order: list[str] = []
        while ready:
            _, address = heapq.heappop(ready)
            order.append(address)
            for user in self.dependents(address):
                if user not in remaining:
                    continue
                remaining[user] -= 1
                if remaining[user] == 0:
                    heapq.heappush(ready, (rank[user], user))
        if len(order) != len(self._deps):
            raise CycleError(find_cycle(self._deps) or sorted(set(self._deps) - set(order)))
        return order

    def reverse_topological_order(self) -> list[str]:
        return list(reversed(self.topological_order()))


def build(descriptors: Iterable[ResourceDescriptor]) -> DependencyGraph:
    """Build the dependency graph for a set of descriptors.

    Adds an edge for every explicit ``depends_on`` entry and every
    reference. Raises ``CycleError`` if the result is not acyclic.
    """
    by_address = {d.address: d for d in descriptors}
    dependencies: dict[str, set[str]] = {}
    for address, descriptor in by_address.items():
        deps = set(descriptor.depends_on)
        for ref in descriptor.references:
            deps.add(ref.target)
        for target in deps:
            if target not in by_address:
                raise UnknownReference(address, target)
        dependencies[address] = deps

    cycle = find_cycle(dependencies)
    if cycle:
        raise CycleError(cycle)

    return DependencyGraph(dependencies, by_address)


def build_stored(records: Mapping[str, StateRecord]) -> DependencyGraph:
    """Graph over persisted records, from the dependencies recorded at last apply.

    Edges to addresses no longer in state are dropped. A cycle cannot be
    produced by a successful apply, so one here means the state was edited
    by hand and is reported the same way.
    """
    dependencies = {
        address: {dep for dep in record.dependencies if dep in records and dep != address}
        for address, record in sorted(records.items())
    }
    cycle = find_cycle(dependencies)
    if cycle:
        raise CycleError(cycle)
    return DependencyGraph(dependencies)


def find_cycle(dependencies: Mapping[str, Iterable[str]]) -> list[str] | None:
    """Depth-first search with a recursion stack.

    Returns the addresses on the first back edge found, closing the loop
    (``[a, b, a]``), or None when the graph is acyclic.
    """
    visited: set[str] = set()
    on_stack: set[str] = set()
    stack: list[str] = []

    def visit(node: str) -> list[str] | None:
        visited.add(node)
        on_stack.add(node)
        stack.append(node)
        for dep in sorted(dependencies.get(node, ())):
            if dep in on_stack:
                return stack[stack.index(dep):] + [dep]
            if dep not in visited:
                found = visit(dep)
                if found:
                    return found
        on_stack.discard(node)
        stack.pop()
        return None

    for node in sorted(dependencies):
        if node not in visited:
            found = visit(node)
            if found:
                return found
    return None
