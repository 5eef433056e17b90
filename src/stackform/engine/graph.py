"""Dependency graph utilities and the built resource graph."""

from __future__ import annotations

import heapq
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from stackform.core.expressions import references
from stackform.errors import DependencyCycleError

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from stackform.core.expressions import Expr

_WHITE, _GRAY, _BLACK = 0, 1, 2


class DependencyGraph:
    """A directed graph where nodes depend on other nodes."""

    def __init__(
        self,
        nodes: Iterable[str],
        dependencies: Mapping[str, Iterable[str]],
    ) -> None:
        self._nodes = set(nodes)
        # node -> filtered deps within graph
        self._deps: dict[str, set[str]] = {}
        for node in self._nodes:
            deps = set(dependencies.get(node, []))
            self._deps[node] = {d for d in deps if d in self._nodes}
        self._dependents: dict[str, set[str]] = {n: set() for n in self._nodes}
        for node, deps in self._deps.items():
            for dep in deps:
                self._dependents[dep].add(node)

    def transitive_dependents(self, node: str) -> set[str]:
        seen: set[str] = set()
        stack = list(self._dependents[node])
        while stack:
            n = stack.pop()
            if n not in seen:
                seen.add(n)
                stack.extend(self._dependents[n])
        return seen

    def find_cycle(self) -> list[str] | None:
        """Depth-first coloring; return a cycle path (first node repeated) or None.

        Iterative so that deep graphs never hit the interpreter recursion limit.
        """
        color = dict.fromkeys(self._nodes, _WHITE)
        for start in sorted(self._nodes):
            if color[start] != _WHITE:
                continue
            color[start] = _GRAY
            path = [start]
            stack = [iter(sorted(self._deps[start]))]
            while stack:
                nxt = next(stack[-1], None)
                if nxt is None:
                    color[path.pop()] = _BLACK
                    stack.pop()
                    continue
                if color[nxt] == _GRAY:
                    return [*path[path.index(nxt) :], nxt]
                if color[nxt] == _WHITE:
                    color[nxt] = _GRAY
                    path.append(nxt)
                    stack.append(iter(sorted(self._deps[nxt])))
        return None

    def validate(self) -> None:
        cycle = self.find_cycle()
        if cycle is not None:
            raise DependencyCycleError(cycle)

    def topological_order(self) -> list[str]:
        """Return deterministic topo order (lexicographic tie-break)."""
        indegree = {n: len(deps) for n, deps in self._deps.items()}
        ready = [n for n, deg in indegree.items() if deg == 0]
        heapq.heapify(ready)

        order: list[str] = []
        while ready:
            node = heapq.heappop(ready)
            order.append(node)
            for child in self._dependents[node]:
                indegree[child] -= 1
                if indegree[child] == 0:
                    heapq.heappush(ready, child)

        if len(order) != len(self._nodes):
            raise DependencyCycleError(self.find_cycle() or sorted(self._nodes - set(order)))

        return order

    def reverse_topological_order(self) -> list[str]:
        order = self.topological_order()
        order.reverse()
        return order


@dataclass
class ResourceNode:
    """A concrete resource after module expansion and reference resolution."""

    address: str
    resource_type: str
    name: str
    module_path: tuple[str, ...] = ()
    attributes: dict[str, Expr] = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)

    def references(self) -> set[str]:
        return {ref.address for expr in self.attributes.values() for ref in references(expr)}

    def dependencies(self) -> list[str]:
        return sorted(self.references() | set(self.depends_on))


@dataclass
class OutputNode:
    name: str
    expr: Expr
    sensitive: bool = False
    description: str = ""


@dataclass
class ResourceGraph:
    """Output of the graph builder: acyclic, fully resolved."""

    nodes: dict[str, ResourceNode] = field(default_factory=dict)
    outputs: dict[str, OutputNode] = field(default_factory=dict)
    providers: dict[str, dict[str, Any]] = field(default_factory=dict)

    def dependency_map(self) -> dict[str, list[str]]:
        return {addr: node.dependencies() for addr, node in self.nodes.items()}

    def dependency_graph(self) -> DependencyGraph:
        return DependencyGraph(self.nodes, self.dependency_map())

    def topological_order(self) -> list[str]:
        return self.dependency_graph().topological_order()
