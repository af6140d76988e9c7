"""Dependency ordering of activation mappings.

Activation order puts every dependency before its dependents; deactivation
order is the reverse. Mappings without an ordering constraint between them
keep their manifest insertion order, so plans are reproducible.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Sequence, Set

from rollover.core.exceptions import DependencyCycleError
from rollover.core.models import ActivationMapping, MappingRef

_WHITE, _GREY, _BLACK = 0, 1, 2


class DependencyGraph:
    """Dependency edges between the mappings of one manifest."""

    def __init__(self, mappings: Sequence[ActivationMapping]):
        self.mappings: Dict[MappingRef, ActivationMapping] = {m.key: m for m in mappings}
        self.dependencies: Dict[MappingRef, List[MappingRef]] = {
            m.key: [d for d in m.depends_on if d in self.mappings] for m in mappings
        }
        self.dependents: Dict[MappingRef, List[MappingRef]] = {key: [] for key in self.mappings}
        for key, deps in self.dependencies.items():
            for dep in deps:
                self.dependents[dep].append(key)
        self._order: Optional[List[MappingRef]] = None

    def topological_order(self) -> List[MappingRef]:
        """Depth-first topological sort, dependencies first.

        Raises DependencyCycleError naming the cycle.
        """
        if self._order is not None:
            return list(self._order)

        color = {key: _WHITE for key in self.mappings}
        order: List[MappingRef] = []

        for root in self.mappings:
            if color[root] != _WHITE:
                continue
            # iterative DFS; each frame is (node, index of next dependency)
            stack = [(root, 0)]
            color[root] = _GREY
            while stack:
                node, index = stack[-1]
                deps = self.dependencies[node]
                if index < len(deps):
                    stack[-1] = (node, index + 1)
                    dep = deps[index]
                    if color[dep] == _GREY:
                        path = [str(n) for n, _ in stack]
                        cycle = path[path.index(str(dep)):] + [str(dep)]
                        raise DependencyCycleError(cycle)
                    if color[dep] == _WHITE:
                        color[dep] = _GREY
                        stack.append((dep, 0))
                else:
                    stack.pop()
                    color[node] = _BLACK
                    order.append(node)

        self._order = order
        return list(order)

    def check(self) -> None:
        """Fail with DependencyCycleError if the graph is not a DAG."""
        self.topological_order()

    def activation_order(self, keys: Iterable[MappingRef]) -> List[ActivationMapping]:
        """Mappings in ``keys`` ordered dependencies first."""
        wanted = set(keys)
        return [self.mappings[k] for k in self.topological_order() if k in wanted]

    def deactivation_order(self, keys: Iterable[MappingRef]) -> List[ActivationMapping]:
        """Mappings in ``keys`` ordered dependents first."""
        return list(reversed(self.activation_order(keys)))

    def _reachable_members(self, start: MappingRef, edges: Dict[MappingRef, List[MappingRef]], members: Set[MappingRef]) -> Set[MappingRef]:
        # walk through non-members, stop at the first member on each path
        found: Set[MappingRef] = set()
        seen: Set[MappingRef] = set()
        stack = list(edges.get(start, []))
        while stack:
            node = stack.pop()
            if node in seen:
                continue
            seen.add(node)
            if node in members:
                found.add(node)
            else:
                stack.extend(edges.get(node, []))
        return found

    def prerequisites_for_activation(self, keys: Iterable[MappingRef]) -> Dict[MappingRef, Set[MappingRef]]:
        """For each mapping in ``keys``, the members of ``keys`` it waits for.

        Dependencies outside ``keys`` count as already active; a path that
        passes through one of them still orders the members on either end.
        """
        members = set(keys)
        return {key: self._reachable_members(key, self.dependencies, members) for key in members}

    def prerequisites_for_deactivation(self, keys: Iterable[MappingRef]) -> Dict[MappingRef, Set[MappingRef]]:
        """For each mapping in ``keys``, the dependents in ``keys`` that go first."""
        members = set(keys)
        return {key: self._reachable_members(key, self.dependents, members) for key in members}
