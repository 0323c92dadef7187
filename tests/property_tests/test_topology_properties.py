"""
Property-based tests for topology planning.

Validates, using Hypothesis:
- partitions cover the keyspace exactly once
- removing a master moves a bounded number of slots
- adding a master moves only its share, never slots between existing masters
- replica counts per master differ by at most one
- re-planning an applied topology is a no-op
"""

import math

from hypothesis import given, settings
from hypothesis import strategies as st

from clusterform.core.config import ExcessReplicaPolicy
from clusterform.topology.builder import TopologyBuilder, validate_topology
from clusterform.topology.partitioner import moved_slots, partition
from clusterform.topology.replicas import assign_replicas
from clusterform.topology.types import NodeState, ReplicaLink, Topology
from tests.conftest import make_node


@st.composite
def node_ids(draw, min_size: int = 1, max_size: int = 12) -> list[str]:
    """Unique node ids with a shared prefix, as registries tend to produce."""
    numbers = draw(
        st.lists(
            st.integers(min_value=0, max_value=999),
            min_size=min_size,
            max_size=max_size,
            unique=True,
        )
    )
    return [f"node-{number:03d}" for number in numbers]


@st.composite
def masters_and_slots(draw, min_masters: int = 1) -> tuple[list[str], int]:
    masters = draw(node_ids(min_size=min_masters))
    total_slots = draw(st.integers(min_value=len(masters), max_value=2048))
    return masters, total_slots


@st.composite
def replica_layouts(draw):
    """Masters, replica candidates and a possibly stale set of previous links."""
    ids = draw(node_ids(min_size=1, max_size=16))
    split = draw(st.integers(min_value=1, max_value=len(ids)))
    masters, replicas = ids[:split], ids[split:]
    previous = draw(
        st.lists(
            st.builds(
                ReplicaLink,
                st.sampled_from(masters + ["departed"]),
                st.sampled_from(replicas or ["nobody"]),
            ),
            max_size=8,
        )
    )
    return masters, replicas, previous


def owners(assignment) -> dict[int, str]:
    result = {}
    for node_id, ranges in assignment.items():
        for slot_range in ranges:
            for slot in slot_range.slots():
                assert slot not in result
                result[slot] = node_id
    return result


class TestPartitionProperties:
    @given(masters_and_slots())
    @settings(max_examples=60, deadline=None)
    def test_disjoint_and_complete(self, case):
        masters, total_slots = case
        assignment = partition(masters, total_slots)

        assert set(owners(assignment)) == set(range(total_slots))
        counts = [sum(len(r) for r in ranges) for ranges in assignment.values()]
        assert max(counts) - min(counts) <= 1
        assert all(counts)

    @given(masters_and_slots(min_masters=2), st.data())
    @settings(max_examples=60, deadline=None)
    def test_removal_moves_bounded_slots(self, case, data):
        masters, total_slots = case
        removed = data.draw(st.sampled_from(masters))
        survivors = [master for master in masters if master != removed]
        before = partition(masters, total_slots)

        after = partition(survivors, total_slots, before)

        bound = math.ceil(total_slots / len(masters)) + math.ceil(
            total_slots / len(survivors)
        )
        assert moved_slots(before, after) <= bound
        assert set(owners(after)) == set(range(total_slots))

    @given(masters_and_slots())
    @settings(max_examples=60, deadline=None)
    def test_addition_moves_only_new_share(self, case):
        masters, total_slots = case
        newcomer = "node-new"
        if len(masters) + 1 > total_slots:
            total_slots = len(masters) + 1
        before = partition(masters, total_slots)

        after = partition(masters + [newcomer], total_slots, before)

        owners_before = owners(before)
        new_share = 0
        for slot, owner in owners(after).items():
            if owner == newcomer:
                new_share += 1
            else:
                assert owners_before[slot] == owner
        assert moved_slots(before, after) == new_share

    @given(masters_and_slots())
    @settings(max_examples=40, deadline=None)
    def test_unchanged_masters_move_nothing(self, case):
        masters, total_slots = case
        before = partition(masters, total_slots)
        assert partition(list(reversed(masters)), total_slots, before) == before


class TestReplicaProperties:
    @given(replica_layouts())
    @settings(max_examples=80, deadline=None)
    def test_balanced_within_one(self, layout):
        masters, replicas, previous = layout
        result = assign_replicas(
            [make_node(m) for m in masters],
            [make_node(r) for r in replicas],
            previous=previous,
        )

        counts = result.counts(masters)
        assert max(counts.values()) - min(counts.values()) <= 1
        assert sorted(link.replica_id for link in result.links) == sorted(replicas)

    @given(replica_layouts(), st.integers(min_value=0, max_value=3))
    @settings(max_examples=80, deadline=None)
    def test_pending_policy_respects_target(self, layout, target):
        masters, replicas, previous = layout
        result = assign_replicas(
            [make_node(m) for m in masters],
            [make_node(r) for r in replicas],
            replicas_per_master=target,
            previous=previous,
            policy=ExcessReplicaPolicy.PENDING,
        )

        counts = result.counts(masters)
        assert max(counts.values()) - min(counts.values()) <= 1
        if len(replicas) > target * len(masters):
            assert all(count == target for count in counts.values())
        assert len(result.links) + len(result.unassigned) == len(replicas)


class TestBuilderProperties:
    @given(node_ids(min_size=1, max_size=10), st.integers(min_value=1, max_value=5))
    @settings(max_examples=40, deadline=None)
    def test_replanning_applied_topology_is_idempotent(self, ids, desired):
        builder = TopologyBuilder(
            total_slots=512,
            min_masters=1,
            desired_masters=desired,
            replicas_per_master=1,
        )
        nodes = [make_node(node_id) for node_id in ids]
        first = builder.build(nodes, {}).topology
        validate_topology(first)

        states = {
            node_id: NodeState(
                node_id=node_id,
                role=first.role_of(node_id),
                epoch=first.epoch,
                topology=first,
            )
            for node_id in ids
        }
        second = builder.build(nodes, states)

        assert second.topology == first
        assert second.unchanged
        assert second.moved_slots == 0

    @given(node_ids(min_size=2, max_size=10))
    @settings(max_examples=40, deadline=None)
    def test_epochs_strictly_increase_on_change(self, ids):
        builder = TopologyBuilder(
            total_slots=256, min_masters=1, desired_masters=len(ids)
        )
        nodes = [make_node(node_id) for node_id in ids]
        first = builder.build(nodes[:-1], {}).topology
        states = {
            node.node_id: NodeState(node_id=node.node_id, epoch=1, topology=first)
            for node in nodes[:-1]
        }

        second = builder.build(nodes, states).topology

        assert isinstance(second, Topology)
        assert second.epoch == first.epoch + 1
        assert not second.same_assignment(first)
