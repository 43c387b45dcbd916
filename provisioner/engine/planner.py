"""
Provisioner - Execution Planner

Creates execution plans by diffing the desired resource graph against
the State Store. Determines operation order and the dependencies each
operation waits for.
"""

from __future__ import annotations
from collections import defaultdict
from typing import Any, Dict, List
import heapq
import logging

from provisioner.engine.context import RunContext
from provisioner.engine.graph import ResourceGraph
from provisioner.engine.references import (
    UNKNOWN,
    Attr,
    Reference,
    contains_unknown,
    lookup_path,
    render,
)
from provisioner.errors import (
    AmbiguousCountIndexError,
    CycleError,
    StateCorruptionError,
)
from provisioner.models import (
    ExecutionPlan,
    FamilyInfo,
    FamilyMode,
    PlanAction,
    PlanCounts,
    PlanEntry,
    StateRecord,
    format_address,
)

logger = logging.getLogger(__name__)

_MISSING = object()


def record_outputs(record: StateRecord) -> Dict[str, Any]:
    """Values other resources may reference: provider outputs plus the id."""
    outputs = dict(record.outputs)
    outputs["id"] = record.provider_id
    return outputs


def topological_order(graph: ResourceGraph) -> List[str]:
    """
    Topologically sort the graph (Kahn's algorithm).

    Ties are broken by declaration order, so an unchanged graph always
    yields the same order.

    Returns:
        List of addresses, dependencies first
    """
    indegree: Dict[str, int] = {address: 0 for address in graph.nodes}
    for _, dst in graph.edges:
        indegree[dst] += 1
    adjacency = graph.adjacency()

    available = [
        (graph.position(address), address)
        for address, degree in indegree.items()
        if degree == 0
    ]
    heapq.heapify(available)

    result: List[str] = []
    while available:
        _, address = heapq.heappop(available)
        result.append(address)
        for dependent in adjacency[address]:
            indegree[dependent] -= 1
            if indegree[dependent] == 0:
                heapq.heappush(available, (graph.position(dependent), dependent))

    if len(result) != len(graph.nodes):
        remaining = [a for a in graph.nodes if a not in set(result)]
        raise CycleError(remaining + remaining[:1])
    return result


class ExecutionPlanner:
    """
    Creates execution plans from the desired graph and current state.

    For each resource:
    - Create: absent from state
    - Update: rendered attributes differ from the last-applied snapshot
    - NoOp: identical
    - Delete: in state but no longer declared

    Create/Update/NoOp entries follow the topological order; Delete
    entries follow the reverse order of the dependencies recorded in
    state, so dependents are removed before their dependencies.
    """

    def __init__(self):
        """Initialize planner."""
        self.logger = logging.getLogger(__name__)

    def create_plan(self, ctx: RunContext) -> ExecutionPlan:
        """
        Create execution plan for a run.

        Args:
            ctx: Run context with graph and state store

        Returns:
            ExecutionPlan with ordered entries

        Raises:
            AmbiguousCountIndexError: If repeated resources cannot be
                matched to state
            StateCorruptionError: If recorded dependencies are cyclic
        """
        graph = ctx.graph
        records: Dict[str, StateRecord] = {r.address: r for r in ctx.state.list()}

        self._check_index_bindings(graph, records)
        order = topological_order(graph)

        desired: Dict[str, Dict[str, Any]] = {}
        actions: Dict[str, PlanAction] = {}
        entries: List[PlanEntry] = []

        # Phase 1: Create / Update / NoOp in dependency order
        for address in order:
            node = graph.nodes[address]
            prior = records.get(address)

            def resolve(ref: Reference) -> Any:
                return self._resolve(ref, graph, records, desired, actions)

            rendered = render(node.attributes, resolve)
            desired[address] = rendered

            if prior is None:
                action = PlanAction.CREATE
                changed = sorted(rendered)
            else:
                changed = self._diff(prior.attributes, rendered)
                action = PlanAction.UPDATE if changed else PlanAction.NOOP
            actions[address] = action

            entries.append(
                PlanEntry(
                    address=address,
                    resource_type=node.resource_type,
                    name=node.name,
                    key=node.key,
                    action=action,
                    before=prior.attributes if prior else None,
                    after=rendered,
                    changed_attributes=changed,
                    depends_on=graph.dependencies(address),
                    provider_id=prior.provider_id if prior else None,
                )
            )

        # Phase 2: Deletes in reverse dependency order
        orphaned = [r for r in records.values() if r.address not in graph.nodes]
        for address in self._delete_order(orphaned):
            record = records[address]
            waits_for = [
                other.address
                for other in orphaned
                if address in other.dependencies
            ]
            waits_for += [
                kept
                for kept in order
                if kept in records and address in records[kept].dependencies
            ]
            entries.append(
                PlanEntry(
                    address=address,
                    resource_type=record.resource_type,
                    name=record.name,
                    key=record.key,
                    action=PlanAction.DELETE,
                    before=record.attributes,
                    after=None,
                    depends_on=waits_for,
                    provider_id=record.provider_id,
                )
            )

        plan = ExecutionPlan(
            run_id=ctx.run_id,
            project_name=ctx.project_name,
            destroy=ctx.destroy,
            entries=entries,
            counts=self._count(entries),
        )

        self.logger.info(
            f"Created execution plan: {plan.counts.to_create} to create, "
            f"{plan.counts.to_update} to update, {plan.counts.to_delete} to delete, "
            f"{plan.counts.unchanged} unchanged"
        )
        ctx.plan = plan
        return plan

    def _resolve(
        self,
        ref: Reference,
        graph: ResourceGraph,
        records: Dict[str, StateRecord],
        desired: Dict[str, Dict[str, Any]],
        actions: Dict[str, PlanAction],
    ) -> Any:
        """Resolve a reference against planned values and state outputs."""
        if ref.is_splat:
            family = graph.families[ref.family]
            return [
                self._resolve_member(
                    format_address(ref.resource_type, ref.name, key),
                    ref, records, desired, actions,
                )
                for key in family.keys
            ]
        return self._resolve_member(ref.address, ref, records, desired, actions)

    def _resolve_member(
        self,
        address: str,
        ref: Reference,
        records: Dict[str, StateRecord],
        desired: Dict[str, Dict[str, Any]],
        actions: Dict[str, PlanAction],
    ) -> Any:
        action = actions[address]
        head = ref.path[0]

        # A value the dependency is about to set is known now
        if action in (PlanAction.CREATE, PlanAction.UPDATE):
            if isinstance(head, Attr) and head.name in desired[address]:
                return lookup_path(desired[address], ref.path, str(ref))
        if action == PlanAction.CREATE:
            return UNKNOWN

        return lookup_path(record_outputs(records[address]), ref.path, str(ref))

    def _diff(self, before: Dict[str, Any], after: Dict[str, Any]) -> List[str]:
        """Names of attributes whose value changes."""
        changed = []
        for name in set(before) | set(after):
            old = before.get(name, _MISSING)
            new = after.get(name, _MISSING)
            if old != new or (new is not _MISSING and contains_unknown(new)):
                changed.append(name)
        return sorted(changed)

    def _check_index_bindings(
        self,
        graph: ResourceGraph,
        records: Dict[str, StateRecord],
    ) -> None:
        """
        Ensure every state record of a declared family binds by (family, index)
        or (family, key) the same way the declaration repeats.
        """
        by_family: Dict[str, List[StateRecord]] = defaultdict(list)
        for record in records.values():
            by_family[record.family].append(record)

        for family_address, family in graph.families.items():
            mismatched = [
                record.address
                for record in by_family.get(family_address, [])
                if not self._key_matches(family, record.key)
            ]
            if mismatched:
                raise AmbiguousCountIndexError(
                    family_address,
                    mismatched,
                    f"declared as {family.mode.value} but state holds "
                    f"{', '.join(mismatched)}",
                )

    @staticmethod
    def _key_matches(family: FamilyInfo, key: Any) -> bool:
        if family.mode == FamilyMode.SINGLE:
            return key is None
        if family.mode == FamilyMode.COUNT:
            return isinstance(key, int) and not isinstance(key, bool)
        return isinstance(key, str)

    def _delete_order(self, orphaned: List[StateRecord]) -> List[str]:
        """
        Order deletions: reverse topological order of the dependencies
        recorded in state (dependents first).

        Raises:
            StateCorruptionError: If the recorded dependencies are cyclic
        """
        position = {record.address: i for i, record in enumerate(orphaned)}
        indegree = {address: 0 for address in position}
        dependents: Dict[str, List[str]] = defaultdict(list)
        for record in orphaned:
            for dependency in record.dependencies:
                if dependency in position:
                    indegree[record.address] += 1
                    dependents[dependency].append(record.address)

        available = [(position[a], a) for a, degree in indegree.items() if degree == 0]
        heapq.heapify(available)
        order: List[str] = []
        while available:
            _, address = heapq.heappop(available)
            order.append(address)
            for dependent in dependents[address]:
                indegree[dependent] -= 1
                if indegree[dependent] == 0:
                    heapq.heappush(available, (position[dependent], dependent))

        if len(order) != len(position):
            raise StateCorruptionError(
                "Recorded dependencies between state records are cyclic",
                {"addresses": [a for a in position if a not in set(order)]},
            )
        order.reverse()
        return order

    @staticmethod
    def _count(entries: List[PlanEntry]) -> PlanCounts:
        counts = PlanCounts()
        for entry in entries:
            if entry.action == PlanAction.CREATE:
                counts.to_create += 1
            elif entry.action == PlanAction.UPDATE:
                counts.to_update += 1
            elif entry.action == PlanAction.DELETE:
                counts.to_delete += 1
            else:
                counts.unchanged += 1
        return counts


# Singleton instance
planner = ExecutionPlanner()


def get_planner() -> ExecutionPlanner:
    """Get planner instance."""
    return planner
