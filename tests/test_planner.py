"""Tests for plan computation against the State Store."""

import pytest

from provisioner.engine.planner import get_planner, topological_order
from provisioner.engine.references import UNKNOWN
from provisioner.errors import (
    AmbiguousCountIndexError,
    ConfigurationError,
    StateCorruptionError,
)
from provisioner.engine.runner import ProvisioningEngine
from provisioner.models import PlanAction, RunStatus, StateRecord
from provisioner.state import StateStore


def actions(plan):
    return [(e.address, e.action) for e in plan.entries]


class TestOrdering:
    """Test topological ordering of plan entries."""

    def test_network_before_dependent(self, engine, network_and_dependent):
        """N is planned strictly before D, and D waits for N."""
        plan = engine.plan_declarations(network_and_dependent).plan

        assert [e.address for e in plan.entries] == ["network.main", "subnet.app"]
        assert plan.entry("subnet.app").depends_on == ["network.main"]
        assert plan.entry("subnet.app").after["network_id"] == UNKNOWN

    def test_dependencies_first_regardless_of_declaration_order(self, engine, declare):
        """A resource declared before its dependency still comes after it."""
        plan = engine.plan_declarations(declare(
            {"type": "subnet", "name": "app", "attributes": {"network_id": "${network.main.id}"}},
            {"type": "network", "name": "main"},
        )).plan

        assert [e.address for e in plan.entries] == ["network.main", "subnet.app"]

    def test_ties_broken_by_declaration_order(self, engine, declare):
        """Independent resources keep declaration order."""
        plan = engine.plan_declarations(declare(
            {"type": "thing", "name": "z"},
            {"type": "thing", "name": "a"},
            {"type": "thing", "name": "m", "attributes": {"p": "${thing.z.id}"}},
            {"type": "thing", "name": "b"},
        )).plan

        assert [e.address for e in plan.entries] == ["thing.z", "thing.a", "thing.m", "thing.b"]

    def test_order_is_deterministic(self, engine, sample_yaml):
        """Re-planning unchanged declarations yields the identical order."""
        orders = [
            [e.address for e in engine.plan(sample_yaml).plan.entries]
            for _ in range(5)
        ]
        graph_orders = [
            topological_order(engine.build_graph(engine.parser.parse(sample_yaml)))
            for _ in range(5)
        ]

        assert all(order == orders[0] for order in orders)
        assert all(order == orders[0] for order in graph_orders)


class TestActions:
    """Test Create/Update/Delete/NoOp decisions."""

    def test_everything_created_on_empty_state(self, engine, sample_yaml):
        """Nothing in state means every resource is created."""
        plan = engine.plan(sample_yaml).plan

        assert {e.action for e in plan.entries} == {PlanAction.CREATE}
        assert plan.counts.to_create == 5

    def test_idempotent_after_apply(self, engine, run, chain):
        """An unchanged declaration set against matching state is all NoOp."""
        _, summary = run(chain)
        assert summary.status == RunStatus.COMPLETED

        plan = engine.plan_declarations(chain).plan

        assert {e.action for e in plan.entries} == {PlanAction.NOOP}
        assert not plan.has_changes
        assert plan.counts.unchanged == 3

    def test_idempotent_with_families(self, engine, sample_yaml):
        """Count and for_each families also re-plan as NoOp."""
        engine.apply(engine.plan(sample_yaml))

        assert not engine.plan(sample_yaml).plan.has_changes

    def test_idempotent_after_reload(self, engine, settings, provider, run, declare):
        """Plans against a reopened State Store are still all NoOp."""
        declarations = declare(
            {"type": "network", "name": "main", "attributes": {"tags": {1: "a", "env": "prod"}}},
            {
                "type": "subnet",
                "name": "s",
                "for_each": {"z\u00fcrich": "1", "a\\b": "2", 'q"x': "3"},
                "attributes": {"network_id": "${network.main.id}", "cidr": "${each.value}"},
            },
        )
        _, summary = run(declarations)
        assert summary.status == RunStatus.COMPLETED

        reopened = ProvisioningEngine(
            settings=settings, state=StateStore(settings.state_path), provider=provider,
        )
        plan = reopened.plan_declarations(declarations).plan

        assert {e.action for e in plan.entries} == {PlanAction.NOOP}
        assert reopened.state.get('subnet.s["q\\"x"]').key == 'q"x'

    def test_changed_attribute_is_update(self, engine, run, declare, network_and_dependent):
        """A changed literal plans an update listing the changed attribute."""
        run(network_and_dependent)
        changed = declare(
            {"type": "network", "name": "main", "attributes": {"cidr_block": "10.1.0.0/16"}},
            network_and_dependent.resources[1].model_dump(),
        )

        plan = engine.plan_declarations(changed).plan

        entry = plan.entry("network.main")
        assert entry.action == PlanAction.UPDATE
        assert entry.changed_attributes == ["cidr_block"]
        assert entry.before["cidr_block"] == "10.0.0.0/16"
        assert entry.after["cidr_block"] == "10.1.0.0/16"
        # The subnet only references the id, which an update keeps
        assert plan.entry("subnet.app").action == PlanAction.NOOP

    def test_update_propagates_known_value(self, engine, run, declare):
        """A dependent referencing an updated attribute sees the new value at plan time."""
        first = declare(
            {"type": "iam_role", "name": "node", "attributes": {"name": "old"}},
            {"type": "policy", "name": "p", "attributes": {"role": "${iam_role.node.name}"}},
        )
        run(first)
        second = declare(
            {"type": "iam_role", "name": "node", "attributes": {"name": "new"}},
            first.resources[1].model_dump(),
        )

        plan = engine.plan_declarations(second).plan

        assert plan.entry("policy.p").action == PlanAction.UPDATE
        assert plan.entry("policy.p").after == {"role": "new"}

    def test_removed_resource_is_deleted(self, engine, run, declare, chain):
        """Resources in state but no longer declared are deleted."""
        run(chain)

        plan = engine.plan_declarations(declare(*[r.model_dump() for r in chain.resources[:2]])).plan

        assert actions(plan) == [
            ("thing.a", PlanAction.NOOP),
            ("thing.b", PlanAction.NOOP),
            ("thing.c", PlanAction.DELETE),
        ]
        assert plan.entry("thing.c").after is None


class TestDeletion:
    """Test reverse-order deletion."""

    def test_chain_deleted_in_reverse(self, engine, run, declare, chain):
        """Removing A -> B -> C entirely deletes C, then B, then A."""
        run(chain)

        plan = engine.plan_declarations(declare()).plan

        assert actions(plan) == [
            ("thing.c", PlanAction.DELETE),
            ("thing.b", PlanAction.DELETE),
            ("thing.a", PlanAction.DELETE),
        ]
        assert plan.entry("thing.c").depends_on == []
        assert plan.entry("thing.b").depends_on == ["thing.c"]
        assert plan.entry("thing.a").depends_on == ["thing.b"]

    def test_destroy_plans_every_record(self, engine, sample_yaml):
        """destroy plans the deletion of everything in state."""
        engine.apply(engine.plan(sample_yaml))

        plan = engine.plan(sample_yaml, destroy=True).plan

        assert plan.destroy
        assert plan.counts.to_delete == 5
        assert plan.entries[-1].address == "network.main"

    def test_delete_waits_for_kept_dependents(self, engine, run, declare):
        """A deleted dependency waits for a kept resource that used to reference it."""
        run(declare(
            {"type": "network", "name": "old"},
            {"type": "subnet", "name": "s", "attributes": {"net": "${network.old.id}"}},
        ))

        plan = engine.plan_declarations(declare(
            {"type": "network", "name": "new"},
            {"type": "subnet", "name": "s", "attributes": {"net": "${network.new.id}"}},
        )).plan

        assert plan.entry("subnet.s").action == PlanAction.UPDATE
        assert plan.entry("network.old").action == PlanAction.DELETE
        assert plan.entry("network.old").depends_on == ["subnet.s"]

    def test_cyclic_recorded_dependencies(self, engine, state):
        """Cyclic dependencies between state records are state corruption."""
        for name, other in (("a", "b"), ("b", "a")):
            state.put(StateRecord(
                address=f"thing.{name}", resource_type="thing", name=name,
                provider_id=f"id-{name}", dependencies=[f"thing.{other}"],
            ))

        with pytest.raises(StateCorruptionError):
            engine.plan("project: {name: t}\nresources: []\n")


class TestRepeatedResources:
    """Test matching of count / for_each members to state."""

    @staticmethod
    def subnets(cidrs, mode="count"):
        declaration = {"type": "subnet", "name": "s", "attributes": {}}
        if mode == "count":
            declaration["count"] = len(cidrs)
            declaration["attributes"]["cidr"] = "${var.cidrs[count.index]}"
        else:
            declaration["for_each"] = cidrs
            declaration["attributes"]["cidr"] = "${each.value}"
        return declaration

    def test_count_removal_from_middle_rebinds_by_index(self, engine, run, declare):
        """Removing a middle element shifts later members and deletes the last index."""
        run(declare(self.subnets(["a", "b", "c"]), variables={"cidrs": ["a", "b", "c"]}))

        plan = engine.plan_declarations(
            declare(self.subnets(["a", "c"]), variables={"cidrs": ["a", "c"]})
        ).plan

        assert actions(plan) == [
            ("subnet.s[0]", PlanAction.NOOP),
            ("subnet.s[1]", PlanAction.UPDATE),
            ("subnet.s[2]", PlanAction.DELETE),
        ]
        assert plan.entry("subnet.s[1]").after == {"cidr": "c"}

    def test_for_each_keys_are_stable(self, engine, run, declare):
        """Removing a for_each key deletes only that member."""
        run(declare(self.subnets({"a": "1", "b": "2", "c": "3"}, mode="for_each")))

        plan = engine.plan_declarations(
            declare(self.subnets({"a": "1", "c": "3"}, mode="for_each"))
        ).plan

        assert actions(plan) == [
            ('subnet.s["a"]', PlanAction.NOOP),
            ('subnet.s["c"]', PlanAction.NOOP),
            ('subnet.s["b"]', PlanAction.DELETE),
        ]

    def test_count_grows(self, engine, run, declare):
        """Increasing count creates only the new indices."""
        run(declare(self.subnets(["a"]), variables={"cidrs": ["a"]}))

        plan = engine.plan_declarations(
            declare(self.subnets(["a", "b"]), variables={"cidrs": ["a", "b"]})
        ).plan

        assert actions(plan) == [
            ("subnet.s[0]", PlanAction.NOOP),
            ("subnet.s[1]", PlanAction.CREATE),
        ]

    def test_count_to_for_each_is_ambiguous(self, engine, run, declare):
        """Index-keyed state cannot be matched to a key-keyed family."""
        run(declare(self.subnets(["a", "b"]), variables={"cidrs": ["a", "b"]}))

        with pytest.raises(AmbiguousCountIndexError) as exc_info:
            engine.plan_declarations(declare(self.subnets(["a", "b"], mode="for_each")))

        assert exc_info.value.family == "subnet.s"
        assert sorted(exc_info.value.addresses) == ["subnet.s[0]", "subnet.s[1]"]

    def test_single_to_count_is_ambiguous(self, engine, run, declare):
        """Unindexed state cannot be matched to a count family."""
        run(declare({"type": "subnet", "name": "s"}))

        with pytest.raises(ConfigurationError):
            engine.plan_declarations(declare(self.subnets(["a"]), variables={"cidrs": ["a"]}))


class TestPlanner:
    """Test planner helpers."""

    def test_singleton(self):
        """get_planner returns a shared instance."""
        assert get_planner() is get_planner()
