"""Unit tests for the resource graph builder."""

import random

import pytest

from provisioner.engine.expander import DeclarationExpander
from provisioner.engine.graph import GraphBuilder
from provisioner.errors import ConfigurationError, CycleError, UnresolvedReferenceError


def build(declarations):
    instances, families = DeclarationExpander().expand(declarations)
    return GraphBuilder().build(instances, families)


class TestEdges:
    """Test edge derivation from references and constraints."""

    def test_reference_and_explicit_edges(self, declare):
        """Attribute references and depends_on both become edges."""
        graph = build(declare(
            {"type": "network", "name": "main"},
            {"type": "internet_gateway", "name": "main", "attributes": {"network_id": "${network.main.id}"}},
            {"type": "elastic_ip", "name": "nat"},
            {"type": "nat_gateway", "name": "main",
             "depends_on": ["internet_gateway.main"],
             "attributes": {"allocation_id": "${elastic_ip.nat.id}"}},
        ))

        assert graph.reference_edges == {
            ("network.main", "internet_gateway.main"),
            ("elastic_ip.nat", "nat_gateway.main"),
        }
        assert graph.explicit_edges == {("internet_gateway.main", "nat_gateway.main")}
        assert graph.edges == graph.reference_edges | graph.explicit_edges
        assert graph.dependencies("nat_gateway.main") == ["internet_gateway.main", "elastic_ip.nat"]
        assert graph.dependents("network.main") == ["internet_gateway.main"]

    def test_splat_depends_on_every_member(self, declare):
        """A splat reference depends on all members of the family."""
        graph = build(declare(
            {"type": "subnet", "name": "private", "for_each": ["a", "b"]},
            {"type": "kubernetes_cluster", "name": "main",
             "attributes": {"subnet_ids": "${subnet.private[*].id}"}},
        ))

        assert graph.dependencies("kubernetes_cluster.main") == [
            'subnet.private["a"]', 'subnet.private["b"]',
        ]

    def test_family_constraint_expands(self, declare):
        """depends_on naming a family waits for every member; a member address waits for one."""
        graph = build(declare(
            {"type": "policy", "name": "p", "count": 3},
            {"type": "role", "name": "all", "depends_on": ["policy.p"]},
            {"type": "role", "name": "one", "depends_on": ["policy.p[1]"]},
        ))

        assert graph.dependencies("role.all") == ["policy.p[0]", "policy.p[1]", "policy.p[2]"]
        assert graph.dependencies("role.one") == ["policy.p[1]"]

    @pytest.mark.parametrize("seed", range(20))
    def test_edge_set_is_union_of_constraints(self, declare, seed):
        """For random acyclic declaration sets, edges are exactly references plus constraints."""
        rng = random.Random(seed)
        size = rng.randint(2, 12)
        resources = []
        expected_refs, expected_explicit = set(), set()

        for i in range(size):
            earlier = list(range(i))
            refs = rng.sample(earlier, k=rng.randint(0, min(3, i)))
            constraints = rng.sample(earlier, k=rng.randint(0, min(2, i)))
            resources.append({
                "type": "node",
                "name": f"n{i}",
                "attributes": {f"in{j}": f"x-${{node.n{j}.id}}" for j in refs},
                "depends_on": [f"node.n{j}" for j in constraints],
            })
            expected_refs |= {(f"node.n{j}", f"node.n{i}") for j in refs}
            expected_explicit |= {(f"node.n{j}", f"node.n{i}") for j in constraints}

        # Shuffle declaration order: edges must not depend on it
        rng.shuffle(resources)
        graph = build(declare(*resources))

        assert graph.reference_edges == expected_refs
        assert graph.explicit_edges == expected_explicit
        assert graph.edges == expected_refs | expected_explicit


class TestCycles:
    """Test cycle detection."""

    def test_two_node_cycle(self, declare):
        """Mutual references fail with the cycle path."""
        with pytest.raises(CycleError) as exc_info:
            build(declare(
                {"type": "thing", "name": "a", "attributes": {"peer": "${thing.b.id}"}},
                {"type": "thing", "name": "b", "attributes": {"peer": "${thing.a.id}"}},
            ))

        assert exc_info.value.path == ["thing.a", "thing.b", "thing.a"]
        assert "thing.a -> thing.b -> thing.a" in str(exc_info.value)

    def test_cycle_through_explicit_constraint(self, declare):
        """Cycles mixing references and depends_on are detected."""
        with pytest.raises(CycleError) as exc_info:
            build(declare(
                {"type": "thing", "name": "root"},
                {"type": "thing", "name": "a", "depends_on": ["thing.c"],
                 "attributes": {"r": "${thing.root.id}"}},
                {"type": "thing", "name": "b", "attributes": {"peer": "${thing.a.id}"}},
                {"type": "thing", "name": "c", "attributes": {"peer": "${thing.b.id}"}},
            ))

        path = exc_info.value.path
        assert path[0] == path[-1]
        assert set(path) == {"thing.a", "thing.b", "thing.c"}

    def test_self_reference(self, declare):
        """A resource referencing itself is a cycle."""
        with pytest.raises(CycleError) as exc_info:
            build(declare({"type": "thing", "name": "a", "attributes": {"me": "${thing.a.id}"}}))

        assert exc_info.value.path == ["thing.a", "thing.a"]

    def test_cycle_is_configuration_error(self, declare):
        """Cycles are fatal configuration errors."""
        with pytest.raises(ConfigurationError):
            build(declare(
                {"type": "thing", "name": "a", "depends_on": ["thing.b"]},
                {"type": "thing", "name": "b", "depends_on": ["thing.a"]},
            ))


class TestUnresolved:
    """Test references to resources that do not exist."""

    @pytest.mark.parametrize(
        "resource, target",
        [
            ({"type": "subnet", "name": "s", "attributes": {"n": "${network.missing.id}"}},
             "network.missing.id"),
            ({"type": "subnet", "name": "s", "depends_on": ["network.missing"]},
             "network.missing"),
            ({"type": "subnet", "name": "s", "attributes": {"n": "${network.list[5].id}"}},
             "network.list[5].id"),
            ({"type": "subnet", "name": "s", "attributes": {"n": "${network.list.id}"}},
             "network.list.id"),
            ({"type": "subnet", "name": "s", "attributes": {"n": "${network.main[*].id}"}},
             "network.main[*].id"),
            ({"type": "subnet", "name": "s", "depends_on": ['network.list["k"]']},
             'network.list["k"]'),
        ],
    )
    def test_unresolved_reference(self, declare, resource, target):
        """Undeclared resources, missing members and bad indexing are rejected."""
        with pytest.raises(UnresolvedReferenceError) as exc_info:
            build(declare(
                {"type": "network", "name": "main"},
                {"type": "network", "name": "list", "count": 2},
                resource,
            ))

        assert exc_info.value.source == "subnet.s"
        assert exc_info.value.target == target
