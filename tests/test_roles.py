"""Tests for master/replica role planning."""

import pytest

from clusterform.core.errors import NoMastersAvailableError
from clusterform.topology.partitioner import fresh_partition
from clusterform.topology.roles import master_capable, plan_roles
from clusterform.topology.types import NodeRole, NodeState, ReplicaLink, Topology
from tests.conftest import make_node


def topology(masters, links=(), epoch=1, total=100):
    return Topology.create(
        epoch=epoch,
        total_slots=total,
        slot_map=fresh_partition(masters, total),
        replica_links=links,
    )


class TestPlanRoles:
    def test_fresh_nodes_are_promoted_up_to_desired(self):
        plan = plan_roles(
            [make_node("c"), make_node("a"), make_node("b")],
            {},
            None,
            min_masters=3,
            desired_masters=3,
        )

        assert plan.master_ids == ("a", "b", "c")
        assert plan.replicas == ()
        assert plan.promoted == ("a", "b", "c")

    def test_surplus_fresh_nodes_become_replica_candidates(self):
        plan = plan_roles(
            [make_node(node_id) for node_id in ("a", "b", "c", "d")],
            {},
            None,
            min_masters=1,
            desired_masters=2,
        )

        assert plan.master_ids == ("a", "b")
        assert [node.node_id for node in plan.replicas] == ["c", "d"]

    def test_previous_roles_are_kept(self):
        previous = topology(["a", "b"], [ReplicaLink("a", "c")])
        plan = plan_roles(
            [make_node("a"), make_node("b"), make_node("c")],
            {},
            previous,
            min_masters=1,
            desired_masters=3,
        )

        assert plan.master_ids == ("a", "b")
        assert [node.node_id for node in plan.replicas] == ["c"]
        assert plan.promoted == ()

    def test_orphaned_replica_is_promoted(self):
        previous = topology(["a", "b"], [ReplicaLink("b", "c")])
        plan = plan_roles(
            [make_node("a"), make_node("c")],
            {},
            previous,
            min_masters=1,
            desired_masters=2,
        )

        assert plan.master_ids == ("a", "c")
        assert plan.promoted == ("c",)

    def test_unassigned_promoted_before_orphans(self):
        previous = topology(["a", "b"], [ReplicaLink("b", "c")])
        plan = plan_roles(
            [make_node("a"), make_node("c"), make_node("z")],
            {},
            previous,
            min_masters=1,
            desired_masters=2,
        )

        assert plan.master_ids == ("a", "z")
        assert [node.node_id for node in plan.replicas] == ["c"]

    def test_declared_master_role_is_honoured(self):
        plan = plan_roles(
            [make_node("a"), make_node("b", role=NodeRole.MASTER)],
            {},
            None,
            min_masters=1,
            desired_masters=1,
        )

        assert plan.master_ids == ("b",)

    def test_self_reported_role_used_without_registry_role(self):
        plan = plan_roles(
            [make_node("a"), make_node("b")],
            {"b": NodeState(node_id="b", role=NodeRole.MASTER)},
            None,
            min_masters=1,
            desired_masters=1,
        )

        assert plan.master_ids == ("b",)

    def test_too_few_masters(self):
        with pytest.raises(NoMastersAvailableError):
            plan_roles(
                [make_node("a", role=NodeRole.REPLICA)],
                {},
                None,
                min_masters=1,
                desired_masters=1,
            )


class TestMasterCapable:
    def test_counts_every_possible_master(self):
        assert master_capable([make_node(n) for n in "abc"], {}, None) == 3

    def test_declared_replicas_cannot_be_masters(self):
        nodes = [make_node(n, role=NodeRole.REPLICA) for n in "ab"]
        assert master_capable(nodes, {}, None) == 0

    def test_no_nodes(self):
        assert master_capable([], {}, None) == 0
