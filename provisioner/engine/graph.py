"""
Provisioner - Resource Graph Builder

Builds the dependency DAG from expanded resource instances. An edge
(A, B) means A must exist before B can be created. Edges come from
attribute references and from explicit depends_on constraints; both
kinds land in the same graph.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple
import logging

from provisioner.engine.references import Reference, extract_references
from provisioner.errors import CycleError, UnresolvedReferenceError
from provisioner.models import (
    FamilyInfo,
    FamilyMode,
    ResourceInstance,
    format_address,
    parse_address,
)

logger = logging.getLogger(__name__)

Edge = Tuple[str, str]

# DFS colours
_WHITE, _GREY, _BLACK = 0, 1, 2


@dataclass
class ResourceGraph:
    """Directed acyclic graph of resource instances."""
    nodes: Dict[str, ResourceInstance] = field(default_factory=dict)
    families: Dict[str, FamilyInfo] = field(default_factory=dict)
    reference_edges: Set[Edge] = field(default_factory=set)
    explicit_edges: Set[Edge] = field(default_factory=set)
    references: Dict[str, List[Reference]] = field(default_factory=dict)

    @property
    def edges(self) -> Set[Edge]:
        return self.reference_edges | self.explicit_edges

    def position(self, address: str) -> int:
        return self.nodes[address].position

    def dependencies(self, address: str) -> List[str]:
        """Addresses that must exist before the given resource, in declaration order."""
        deps = {src for src, dst in self.edges if dst == address}
        return sorted(deps, key=self.position)

    def dependents(self, address: str) -> List[str]:
        """Addresses that depend directly on the given resource, in declaration order."""
        deps = {dst for src, dst in self.edges if src == address}
        return sorted(deps, key=self.position)

    def adjacency(self) -> Dict[str, List[str]]:
        """Map of address -> direct dependents, sorted by declaration order."""
        adjacency: Dict[str, List[str]] = {address: [] for address in self.nodes}
        for src, dst in self.edges:
            adjacency[src].append(dst)
        for targets in adjacency.values():
            targets.sort(key=self.position)
        return adjacency


class GraphBuilder:
    """
    Builds a ResourceGraph.

    Fails with:
    - UnresolvedReferenceError: a reference or constraint names an
      undeclared resource, a missing member, or a repeated family
      without an index
    - CycleError: the edges contain a cycle (full path reported)
    """

    def __init__(self):
        """Initialize builder."""
        self.logger = logging.getLogger(__name__)

    def build(
        self,
        instances: List[ResourceInstance],
        families: Dict[str, FamilyInfo],
    ) -> ResourceGraph:
        """
        Build the dependency graph.

        Args:
            instances: Expanded resource instances in declaration order
            families: Family information from the expander

        Returns:
            Acyclic ResourceGraph
        """
        graph = ResourceGraph(families=families)
        for instance in sorted(instances, key=lambda i: i.position):
            graph.nodes[instance.address] = instance

        for instance in graph.nodes.values():
            refs = extract_references(instance.attributes)
            graph.references[instance.address] = refs

            for ref in refs:
                for target in self._reference_targets(graph, instance, ref):
                    graph.reference_edges.add((target, instance.address))

            for constraint in instance.depends_on:
                for target in self._constraint_targets(graph, instance, constraint):
                    graph.explicit_edges.add((target, instance.address))

        cycle = self._find_cycle(graph)
        if cycle:
            raise CycleError(cycle)

        self.logger.info(
            f"Built resource graph: {len(graph.nodes)} nodes, {len(graph.edges)} edges"
        )
        return graph

    def _reference_targets(
        self,
        graph: ResourceGraph,
        instance: ResourceInstance,
        ref: Reference,
    ) -> List[str]:
        """Resolve an attribute reference to the addresses it depends on."""
        family = graph.families.get(ref.family)
        if family is None:
            raise UnresolvedReferenceError(
                f"'{instance.address}' references undeclared resource '{ref.family}'",
                source=instance.address,
                target=str(ref),
            )

        if ref.is_splat:
            if family.mode == FamilyMode.SINGLE:
                raise UnresolvedReferenceError(
                    f"'{instance.address}' uses a splat on '{ref.family}' "
                    f"which is not a repeated resource",
                    source=instance.address,
                    target=str(ref),
                )
            return [format_address(ref.resource_type, ref.name, key) for key in family.keys]

        if ref.index is None and family.mode != FamilyMode.SINGLE:
            raise UnresolvedReferenceError(
                f"'{instance.address}' must reference a member of repeated "
                f"resource '{ref.family}' by index or key",
                source=instance.address,
                target=str(ref),
            )

        if ref.address not in graph.nodes:
            raise UnresolvedReferenceError(
                f"'{instance.address}' references missing resource '{ref.address}'",
                source=instance.address,
                target=str(ref),
            )
        return [ref.address]

    def _constraint_targets(
        self,
        graph: ResourceGraph,
        instance: ResourceInstance,
        constraint: str,
    ) -> List[str]:
        """Resolve a depends_on entry: a whole family or one member."""
        parsed = parse_address(constraint)
        if parsed is None:
            raise UnresolvedReferenceError(
                f"'{instance.address}' has malformed depends_on entry '{constraint}'",
                source=instance.address,
                target=constraint,
            )
        resource_type, name, key = parsed
        family = graph.families.get(format_address(resource_type, name))
        if family is None:
            raise UnresolvedReferenceError(
                f"'{instance.address}' depends on undeclared resource '{constraint}'",
                source=instance.address,
                target=constraint,
            )
        if key is None:
            return [format_address(resource_type, name, k) for k in family.keys]
        address = format_address(resource_type, name, key)
        if address not in graph.nodes:
            raise UnresolvedReferenceError(
                f"'{instance.address}' depends on missing resource '{address}'",
                source=instance.address,
                target=constraint,
            )
        return [address]

    def _find_cycle(self, graph: ResourceGraph) -> Optional[List[str]]:
        """
        Depth-first search with visiting/visited colouring.

        Returns:
            Cycle path with the first node repeated at the end, or None
        """
        adjacency = graph.adjacency()
        colour: Dict[str, int] = {address: _WHITE for address in graph.nodes}

        for root in graph.nodes:
            if colour[root] != _WHITE:
                continue
            stack: List[Tuple[str, int]] = [(root, 0)]
            path: List[str] = [root]
            colour[root] = _GREY

            while stack:
                node, child_index = stack[-1]
                children = adjacency[node]
                if child_index >= len(children):
                    stack.pop()
                    path.pop()
                    colour[node] = _BLACK
                    continue

                stack[-1] = (node, child_index + 1)
                child = children[child_index]
                if colour[child] == _GREY:
                    start = path.index(child)
                    return path[start:] + [child]
                if colour[child] == _WHITE:
                    colour[child] = _GREY
                    stack.append((child, 0))
                    path.append(child)

        return None
