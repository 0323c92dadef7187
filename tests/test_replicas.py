"""Tests for replica placement."""

import pytest

from clusterform.core.config import ExcessReplicaPolicy
from clusterform.topology.replicas import assign_replicas
from clusterform.topology.types import ReplicaLink
from tests.conftest import make_node


def nodes(*node_ids, domain=None):
    return [make_node(node_id, failure_domain=domain) for node_id in node_ids]


class TestAssignReplicas:
    def test_round_robin_by_master_id(self):
        result = assign_replicas(nodes("m1", "m2"), nodes("r1", "r2", "r3", "r4", "r5"))

        assert result.links == (
            ReplicaLink("m1", "r1"),
            ReplicaLink("m1", "r3"),
            ReplicaLink("m1", "r5"),
            ReplicaLink("m2", "r2"),
            ReplicaLink("m2", "r4"),
        )
        assert result.counts(["m1", "m2"]) == {"m1": 3, "m2": 2}
        assert result.unassigned == ()

    def test_prefers_other_failure_domain(self):
        masters = [
            make_node("m1", failure_domain="zone-a"),
            make_node("m2", failure_domain="zone-b"),
        ]
        replicas = [
            make_node("r1", failure_domain="zone-a"),
            make_node("r2", failure_domain="zone-b"),
        ]
        result = assign_replicas(masters, replicas)

        assert set(result.links) == {ReplicaLink("m2", "r1"), ReplicaLink("m1", "r2")}

    def test_domain_preference_never_unbalances(self):
        masters = [
            make_node("m1", failure_domain="zone-a"),
            make_node("m2", failure_domain="zone-b"),
        ]
        replicas = [
            make_node("r1", failure_domain="zone-a"),
            make_node("r2", failure_domain="zone-a"),
        ]
        result = assign_replicas(masters, replicas)

        assert result.counts(["m1", "m2"]) == {"m1": 1, "m2": 1}

    def test_missing_domains_degrade_to_round_robin(self):
        masters = [make_node("m1", failure_domain="zone-a"), make_node("m2")]
        result = assign_replicas(masters, nodes("r1", "r2"))

        assert result.links == (ReplicaLink("m1", "r1"), ReplicaLink("m2", "r2"))

    def test_no_masters_leaves_everything_unassigned(self):
        result = assign_replicas([], nodes("r1", "r2"))
        assert result.links == ()
        assert result.unassigned == ("r1", "r2")

    def test_master_and_replica_sets_must_be_disjoint(self):
        with pytest.raises(ValueError):
            assign_replicas(nodes("a", "b"), nodes("b", "c"))


class TestExcessReplicaPolicy:
    def test_pending_caps_at_target(self):
        result = assign_replicas(
            nodes("m1", "m2"),
            nodes("r1", "r2", "r3"),
            replicas_per_master=1,
            policy=ExcessReplicaPolicy.PENDING,
        )

        assert result.counts(["m1", "m2"]) == {"m1": 1, "m2": 1}
        assert result.unassigned == ("r3",)

    def test_overprovision_places_everyone(self):
        result = assign_replicas(
            nodes("m1", "m2"),
            nodes("r1", "r2", "r3"),
            replicas_per_master=1,
            policy=ExcessReplicaPolicy.OVERPROVISION,
        )

        assert len(result.links) == 3
        assert result.unassigned == ()

    def test_zero_target_keeps_all_pending(self):
        result = assign_replicas(
            nodes("m1"), nodes("r1", "r2"), replicas_per_master=0
        )
        assert result.links == ()
        assert result.unassigned == ("r1", "r2")

    def test_target_not_reached_places_everyone(self):
        result = assign_replicas(nodes("m1", "m2"), nodes("r1"), replicas_per_master=2)
        assert result.links == (ReplicaLink("m1", "r1"),)


class TestPreviousLinks:
    def test_valid_previous_links_are_kept(self):
        previous = [ReplicaLink("m1", "r2"), ReplicaLink("m2", "r1")]
        result = assign_replicas(nodes("m1", "m2"), nodes("r1", "r2"), previous=previous)

        assert result.links == tuple(sorted(previous))

    def test_previous_links_never_unbalance(self):
        previous = [
            ReplicaLink("m1", "r1"),
            ReplicaLink("m1", "r2"),
            ReplicaLink("m1", "r3"),
        ]
        result = assign_replicas(
            nodes("m1", "m2"), nodes("r1", "r2", "r3"), previous=previous
        )

        assert result.links == (
            ReplicaLink("m1", "r1"),
            ReplicaLink("m1", "r2"),
            ReplicaLink("m2", "r3"),
        )

    def test_links_to_departed_masters_are_dropped(self):
        previous = [ReplicaLink("gone", "r1")]
        result = assign_replicas(nodes("m1"), nodes("r1"), previous=previous)

        assert result.links == (ReplicaLink("m1", "r1"),)
