"""
Topology construction and validation.

The builder stitches role planning, slot partitioning and replica placement
into one ``Topology`` and stamps it with an epoch derived from what the nodes
reported, never from local state. A plan identical to the latest applied
topology keeps that topology's epoch, which is what makes an unchanged re-run
a no-op.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from loguru import logger

from clusterform.core.config import ExcessReplicaPolicy
from clusterform.core.errors import MalformedTopologyError
from clusterform.datastructures.type_aliases import Epoch, NodeId, SlotCount

from .partitioner import moved_slots, partition
from .replicas import assign_replicas
from .roles import RolePlan, plan_roles
from .types import Node, NodeState, Topology


@dataclass(frozen=True, slots=True)
class TopologyPlan:
    """A built topology plus what it took to get there."""

    topology: Topology
    roles: RolePlan
    previous: Topology | None
    unassigned_replicas: tuple[NodeId, ...] = field(default_factory=tuple)
    moved_slots: SlotCount = 0

    @property
    def unchanged(self) -> bool:
        """True when the plan re-states the previous topology."""
        return self.previous is not None and self.topology.same_assignment(
            self.previous
        )


def validate_topology(topology: Topology) -> None:
    """Check the structural invariants of a topology.

    Raises:
        MalformedTopologyError: on gaps, overlaps, out-of-range slots, masters
            without slots, dangling or duplicate replica links, or a node that
            is both master and replica.
    """
    if topology.epoch < 1:
        raise MalformedTopologyError(f"epoch must be positive, got {topology.epoch}")
    if topology.total_slots < 1:
        raise MalformedTopologyError("total_slots must be positive")
    if not topology.slot_map:
        raise MalformedTopologyError("topology has no masters")

    spans = []
    for node_id, ranges in topology.slot_map.items():
        if not ranges:
            raise MalformedTopologyError(
                f"master {node_id} owns no slots", node_id=node_id
            )
        for slot_range in ranges:
            if slot_range.end >= topology.total_slots:
                raise MalformedTopologyError(
                    f"range {slot_range} of {node_id} exceeds {topology.total_slots} slots",
                    node_id=node_id,
                )
            spans.append((slot_range.start, slot_range.end, node_id))

    spans.sort()
    expected = 0
    for start, end, node_id in spans:
        if start > expected:
            raise MalformedTopologyError(f"slots {expected}-{start - 1} are unassigned")
        if start < expected:
            raise MalformedTopologyError(
                f"slot {start} assigned twice (second owner {node_id})",
                node_id=node_id,
            )
        expected = end + 1
    if expected != topology.total_slots:
        raise MalformedTopologyError(
            f"slots {expected}-{topology.total_slots - 1} are unassigned"
        )

    seen_replicas: set[NodeId] = set()
    for link in topology.replica_links:
        if link.master_id not in topology.slot_map:
            raise MalformedTopologyError(
                f"replica {link.replica_id} follows non-master {link.master_id}",
                node_id=link.replica_id,
            )
        if link.replica_id in topology.slot_map:
            raise MalformedTopologyError(
                f"{link.replica_id} is both master and replica",
                node_id=link.replica_id,
            )
        if link.replica_id in seen_replicas:
            raise MalformedTopologyError(
                f"replica {link.replica_id} follows more than one master",
                node_id=link.replica_id,
            )
        seen_replicas.add(link.replica_id)


def latest_topology(states: Mapping[NodeId, NodeState]) -> Topology | None:
    """The applied topology with the highest epoch among ``states``.

    Between different assignments at that epoch, the greater digest wins, as
    it does on the nodes themselves.
    """
    applied = [state.topology for state in states.values() if state.topology is not None]
    if not applied:
        return None
    return max(applied, key=lambda topology: (topology.epoch, topology.digest()))


def split_at_epoch(states: Mapping[NodeId, NodeState], epoch: Epoch) -> bool:
    """True when nodes at ``epoch`` hold more than one assignment."""
    digests = {
        state.topology.digest() if state.topology is not None else None
        for state in states.values()
        if state.epoch == epoch
    }
    return len(digests) > 1


def highest_epoch(states: Mapping[NodeId, NodeState]) -> Epoch:
    return max((state.epoch for state in states.values()), default=0)


@dataclass(slots=True)
class TopologyBuilder:
    """Builds the next topology from probed node states."""

    total_slots: SlotCount
    min_masters: int = 1
    desired_masters: int = 1
    replicas_per_master: int | None = None
    excess_replica_policy: ExcessReplicaPolicy = ExcessReplicaPolicy.PENDING

    def build(
        self,
        nodes: Sequence[Node],
        states: Mapping[NodeId, NodeState],
    ) -> TopologyPlan:
        """Plan roles, partition slots, place replicas and stamp the epoch.

        ``nodes`` are the reachable candidates of this run and ``states`` what
        they reported.
        """
        previous = latest_topology(states)
        observed_epoch = highest_epoch(states)
        if previous is not None and previous.total_slots != self.total_slots:
            logger.warning(
                "Previous topology epoch {} uses {} slots, configured {}; ignoring it",
                previous.epoch,
                previous.total_slots,
                self.total_slots,
            )
            previous = None

        roles = plan_roles(
            nodes,
            states,
            previous,
            min_masters=self.min_masters,
            desired_masters=self.desired_masters,
        )
        slot_map = partition(
            roles.masters,
            self.total_slots,
            previous.slot_map if previous is not None else None,
        )
        replicas = assign_replicas(
            roles.masters,
            roles.replicas,
            replicas_per_master=self.replicas_per_master,
            previous=previous.replica_links if previous is not None else (),
            policy=self.excess_replica_policy,
        )
        candidate = Topology.create(
            epoch=observed_epoch + 1,
            total_slots=self.total_slots,
            slot_map=slot_map,
            replica_links=replicas.links,
        )
        split = split_at_epoch(states, observed_epoch)
        if split:
            logger.warning(
                "Nodes disagree on the assignment at epoch {}; planning epoch {}",
                observed_epoch,
                candidate.epoch,
            )
        elif (
            previous is not None
            and candidate.same_assignment(previous)
            and previous.epoch == observed_epoch
        ):
            candidate = candidate.with_epoch(previous.epoch)

        validate_topology(candidate)
        moved = moved_slots(previous.slot_map, candidate.slot_map) if previous else 0
        logger.info(
            "Planned epoch {}: {} master(s), {} replica link(s), {} slot(s) moved",
            candidate.epoch,
            len(candidate.slot_map),
            len(candidate.replica_links),
            moved,
        )
        return TopologyPlan(
            topology=candidate,
            roles=roles,
            previous=previous,
            unassigned_replicas=replicas.unassigned,
            moved_slots=moved,
        )
