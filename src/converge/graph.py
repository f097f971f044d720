"""Dependency graph construction and validation.

This module turns a set of resource declarations into a directed acyclic
graph:
1. Explicit edges from ``depends_on`` declarations
2. Implicit edges from every attribute value that is a Reference
3. Reference validation (target node exists and exposes the output)
4. Cycle detection by depth-first traversal with three-color marking

DESIGN PHILOSOPHY:
- Building is a pure transformation, no side effects
- A malformed graph is a hard error, cycles are never silently broken
- Node order is declaration order, which the planner uses for tie-breaks
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from enum import Enum

from .models import ResourceNode

logger = logging.getLogger(__name__)


class GraphError(Exception):
    """Raised when the resource graph is malformed."""

    pass


class CycleError(GraphError):
    """Raised when a dependency cycle is detected."""

    def __init__(self, participants: list[str]) -> None:
        self.participants = participants
        super().__init__(f"Circular dependency detected: {' -> '.join(participants)}")


class UnresolvedReferenceError(GraphError):
    """Raised when a dependency or reference points at nothing."""

    def __init__(self, node: str, attribute: str, target: str) -> None:
        self.node = node
        self.attribute = attribute
        self.target = target
        super().__init__(f"Unresolved reference in '{node}' at '{attribute}': {target}")


class DuplicateResourceError(GraphError):
    """Raised when two declarations share an identity."""

    pass


class EdgeKind(str, Enum):
    """Why an edge exists."""

    EXPLICIT = "explicit"  # depends_on declaration
    REFERENCE = "reference"  # attribute references another node's output


@dataclass(frozen=True)
class Edge:
    """Producer-to-consumer edge: ``target`` depends on ``source``."""

    source: str
    target: str
    kind: EdgeKind


class _Mark(Enum):
    UNVISITED = 0
    IN_PROGRESS = 1
    DONE = 2


@dataclass
class ResourceGraph:
    """Validated directed acyclic graph of resources."""

    nodes: dict[str, ResourceNode] = field(default_factory=dict)
    edges: list[Edge] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._dependencies: dict[str, list[str]] = {node_id: [] for node_id in self.nodes}
        self._dependents: dict[str, list[str]] = {node_id: [] for node_id in self.nodes}
        for edge in self.edges:
            if edge.source not in self._dependencies[edge.target]:
                self._dependencies[edge.target].append(edge.source)
                self._dependents[edge.source].append(edge.target)
        self._order = {node_id: index for index, node_id in enumerate(self.nodes)}

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def dependencies_of(self, node_id: str) -> list[str]:
        """Direct dependencies of a node, in first-seen order."""
        return list(self._dependencies.get(node_id, []))

    def dependents_of(self, node_id: str) -> list[str]:
        """Direct dependents of a node, in first-seen order."""
        return list(self._dependents.get(node_id, []))

    def transitive_dependents(self, node_id: str) -> set[str]:
        """Every node that depends on ``node_id`` directly or indirectly."""
        seen: set[str] = set()
        stack = list(self._dependents.get(node_id, []))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self._dependents.get(current, []))
        return seen

    def declaration_index(self, node_id: str) -> int:
        """Position of a node in declaration order."""
        return self._order[node_id]


def build_graph(nodes: Iterable[ResourceNode]) -> ResourceGraph:
    """Build and validate the resource graph.

    Args:
        nodes: Resource declarations, in declaration order.

    Returns:
        Validated ResourceGraph.

    Raises:
        DuplicateResourceError: If two declarations share an identity.
        UnresolvedReferenceError: If a dependency or reference cannot resolve.
        CycleError: If the edges form a cycle.
    """
    by_id: dict[str, ResourceNode] = {}
    for node in nodes:
        if node.id in by_id:
            raise DuplicateResourceError(f"Resource '{node.id}' is declared more than once")
        by_id[node.id] = node

    edges: list[Edge] = []
    for node in by_id.values():
        for dep in node.depends_on:
            if dep not in by_id:
                raise UnresolvedReferenceError(node.id, "depends_on", dep)
            edges.append(Edge(source=dep, target=node.id, kind=EdgeKind.EXPLICIT))

        for path, ref in node.references():
            producer = by_id.get(ref.node)
            if producer is None:
                raise UnresolvedReferenceError(node.id, path, str(ref))
            if not producer.exposes(ref.output):
                raise UnresolvedReferenceError(node.id, path, str(ref))
            edges.append(Edge(source=ref.node, target=node.id, kind=EdgeKind.REFERENCE))

    graph = ResourceGraph(nodes=by_id, edges=edges)
    _check_acyclic(graph)

    logger.debug(
        "Resource graph built",
        extra={"node_count": len(graph.nodes), "edge_count": len(graph.edges)},
    )
    return graph


def _check_acyclic(graph: ResourceGraph) -> None:
    """Depth-first traversal; a back-edge to an in-progress node is a cycle."""
    marks = {node_id: _Mark.UNVISITED for node_id in graph.nodes}

    for root in graph.nodes:
        if marks[root] is not _Mark.UNVISITED:
            continue

        # Iterative DFS keeps deep chains clear of the recursion limit
        path: list[str] = [root]
        marks[root] = _Mark.IN_PROGRESS
        stack: list[Iterator[str]] = [iter(graph.dependencies_of(root))]

        while stack:
            advanced = False
            for dep in stack[-1]:
                if marks[dep] is _Mark.IN_PROGRESS:
                    start = path.index(dep)
                    raise CycleError(path[start:] + [dep])
                if marks[dep] is _Mark.UNVISITED:
                    marks[dep] = _Mark.IN_PROGRESS
                    path.append(dep)
                    stack.append(iter(graph.dependencies_of(dep)))
                    advanced = True
                    break
            if not advanced:
                marks[path.pop()] = _Mark.DONE
                stack.pop()
