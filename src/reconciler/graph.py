"""Graph module for declaration-based reconciliation.

Builds a dependency graph from ResourceSpecs and computes traversal
orderings for create (dependencies first) and destroy (dependents first).
"""

import heapq
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from config import ConfigError
from declarations import ResourceSpec
from reconciler.errors import CycleError, UnresolvedReferenceError

logger = logging.getLogger(__name__)


def topological_sort(nodes: list[str], deps: Mapping[str, Iterable[str]]) -> list[str]:
    """Order nodes so every node follows its dependencies (Kahn's algorithm).

    Ties are broken by position in ``nodes`` so the result is deterministic.
    Dependencies outside ``nodes`` are ignored.

    Raises:
        CycleError: Naming the resources of one cycle, in order
    """
    position = {name: i for i, name in enumerate(nodes)}
    indegree = {name: 0 for name in nodes}
    dependents: dict[str, list[str]] = {name: [] for name in nodes}
    for name in nodes:
        for dep in set(deps.get(name, ())):
            if dep in position:
                indegree[name] += 1
                dependents[dep].append(name)

    ready = [position[name] for name in nodes if indegree[name] == 0]
    heapq.heapify(ready)
    ordered: list[str] = []
    while ready:
        name = nodes[heapq.heappop(ready)]
        ordered.append(name)
        for dependent in dependents[name]:
            indegree[dependent] -= 1
            if indegree[dependent] == 0:
                heapq.heappush(ready, position[dependent])

    if len(ordered) != len(nodes):
        remaining = [name for name in nodes if indegree[name] > 0]
        raise CycleError(_find_cycle(remaining, deps))
    return ordered


def _find_cycle(remaining: list[str], deps: Mapping[str, Iterable[str]]) -> list[str]:
    """Walk dependency edges among unsorted nodes until one repeats.

    Every node left over by Kahn's algorithm has a dependency that is also
    left over, so following those edges must revisit a node.
    """
    left = set(remaining)
    path: list[str] = []
    seen: dict[str, int] = {}
    node = remaining[0]
    while node not in seen:
        seen[node] = len(path)
        path.append(node)
        node = sorted(d for d in deps.get(node, ()) if d in left)[0]
    cycle = path[seen[node]:]
    # Report in dependency direction: a -> b means a depends on b
    return cycle + [node]


@dataclass
class GraphNode:
    """A node in the dependency graph.

    Attributes:
        spec: The underlying ResourceSpec
        dependencies: Ids this resource depends on
        dependents: Ids depending on this resource
        index: Declaration position (tie-breaker for ordering)
    """
    spec: ResourceSpec
    dependencies: set[str] = field(default_factory=set)
    dependents: set[str] = field(default_factory=set)
    index: int = 0

    @property
    def id(self) -> str:
        return self.spec.id

    def __repr__(self) -> str:
        return f"GraphNode({self.id}, deps={sorted(self.dependencies)})"


class DependencyGraph:
    """Acyclic dependency graph built from resource declarations.

    Edges come from attribute references and explicit depends_on entries.

    Provides ordered traversal for lifecycle operations:
    - create_order(): dependencies before dependents
    - destroy_order(): dependents before dependencies
    """

    def __init__(self, specs: list[ResourceSpec]):
        """Build and validate the graph.

        Raises:
            ConfigError: On duplicate resource ids
            UnresolvedReferenceError: If a dependency is not declared
            CycleError: If dependencies form a cycle
        """
        self._nodes: dict[str, GraphNode] = {}
        for i, spec in enumerate(specs):
            if spec.id in self._nodes:
                raise ConfigError(f"Duplicate resource: '{spec.id}'")
            self._nodes[spec.id] = GraphNode(spec=spec, index=i)

        for node in self._nodes.values():
            for ref in node.spec.references:
                if ref.resource_id not in self._nodes:
                    raise UnresolvedReferenceError(node.id, ref.target)
            for dep in node.spec.dependencies:
                if dep not in self._nodes:
                    raise UnresolvedReferenceError(node.id, dep)
                if dep == node.id:
                    raise CycleError([node.id, node.id])
                node.dependencies.add(dep)
                self._nodes[dep].dependents.add(node.id)

        self._order = topological_sort(
            list(self._nodes),
            {rid: n.dependencies for rid, n in self._nodes.items()},
        )
        logger.debug(f"Resource graph: {len(self._nodes)} node(s), order {self._order}")

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, resource_id: str) -> bool:
        return resource_id in self._nodes

    @property
    def ids(self) -> list[str]:
        """Resource ids in declaration order."""
        return list(self._nodes)

    def get(self, resource_id: str) -> ResourceSpec:
        """Get a ResourceSpec by id.

        Raises:
            KeyError: If resource not declared
        """
        return self._nodes[resource_id].spec

    def get_node(self, resource_id: str) -> GraphNode:
        return self._nodes[resource_id]

    def dependencies(self, resource_id: str) -> set[str]:
        """Direct dependencies of a resource."""
        return set(self._nodes[resource_id].dependencies)

    def dependents(self, resource_id: str) -> set[str]:
        """Resources that directly depend on this one."""
        return set(self._nodes[resource_id].dependents)

    def transitive_dependents(self, resource_id: str) -> set[str]:
        """Every resource that depends on this one, directly or not."""
        found: set[str] = set()
        stack = list(self._nodes[resource_id].dependents)
        while stack:
            rid = stack.pop()
            if rid not in found:
                found.add(rid)
                stack.extend(self._nodes[rid].dependents)
        return found

    def create_order(self) -> list[ResourceSpec]:
        """Specs in creation order (dependencies first, ties by declaration order)."""
        return [self._nodes[rid].spec for rid in self._order]

    def destroy_order(self) -> list[ResourceSpec]:
        """Specs in destruction order (dependents first).

        Reverse of create_order.
        """
        return list(reversed(self.create_order()))

    def roots(self) -> list[ResourceSpec]:
        """Resources without dependencies."""
        return [n.spec for n in self._nodes.values() if not n.dependencies]

