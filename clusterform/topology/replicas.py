"""
Replica placement.

Greedy round-robin: replica candidates are visited in id order and each goes
to the master with the fewest replicas so far, ties broken by master id. When
failure domains are known, a master in a different domain than the candidate
is preferred among the least-loaded ones. Domains are a preference, never a
constraint, so missing domain data degrades to plain round-robin.

Links from the previous topology are honoured first where they are still
valid and do not unbalance the layout, so a stable cluster keeps its pairs.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from loguru import logger

from clusterform.core.config import ExcessReplicaPolicy
from clusterform.datastructures.type_aliases import NodeId

from .types import Node, ReplicaLink


@dataclass(frozen=True, slots=True)
class ReplicaAssignment:
    """Result of replica placement."""

    links: tuple[ReplicaLink, ...] = field(default_factory=tuple)
    unassigned: tuple[NodeId, ...] = field(default_factory=tuple)

    def counts(self, master_ids: Iterable[NodeId]) -> dict[NodeId, int]:
        counts = {master_id: 0 for master_id in master_ids}
        for link in self.links:
            counts[link.master_id] = counts.get(link.master_id, 0) + 1
        return counts


def _domains_differ(master: Node, replica: Node) -> bool:
    if master.failure_domain is None or replica.failure_domain is None:
        return False
    return master.failure_domain != replica.failure_domain


def _cap_for(
    master_count: int,
    replica_count: int,
    replicas_per_master: int | None,
    policy: ExcessReplicaPolicy,
) -> int | None:
    if replicas_per_master is None or policy is ExcessReplicaPolicy.OVERPROVISION:
        return None
    if replica_count > replicas_per_master * master_count:
        return replicas_per_master
    return None


def assign_replicas(
    masters: Sequence[Node],
    replicas: Sequence[Node],
    *,
    replicas_per_master: int | None = None,
    previous: Iterable[ReplicaLink] = (),
    policy: ExcessReplicaPolicy = ExcessReplicaPolicy.PENDING,
) -> ReplicaAssignment:
    """Link every replica candidate to a master.

    ``replicas_per_master`` is the per-master target. With the ``pending``
    policy, candidates beyond ``target * len(masters)`` stay unassigned; with
    ``overprovision`` they keep being balanced across masters. ``None`` means
    no target: every candidate is placed.
    """
    master_by_id = {master.node_id: master for master in masters}
    master_ids = sorted(master_by_id)
    ordered = sorted(replicas, key=lambda node: node.node_id)
    overlap = set(master_by_id) & {node.node_id for node in ordered}
    if overlap:
        raise ValueError(f"nodes cannot be both master and replica: {sorted(overlap)}")
    if not master_ids:
        return ReplicaAssignment(unassigned=tuple(node.node_id for node in ordered))

    cap = _cap_for(len(master_ids), len(ordered), replicas_per_master, policy)
    placed = len(ordered) if cap is None else cap * len(master_ids)
    # at most `extra` masters may carry base + 1 replicas, the rest carry base
    base, extra = divmod(placed, len(master_ids))

    counts = {master_id: 0 for master_id in master_ids}
    links: list[ReplicaLink] = []
    assigned: set[NodeId] = set()

    replica_ids = {node.node_id for node in ordered}
    for link in sorted(previous):
        if (
            link.master_id not in counts
            or link.replica_id not in replica_ids
            or link.replica_id in assigned
        ):
            continue
        current = counts[link.master_id]
        above_base = sum(1 for count in counts.values() if count > base)
        if current < base or (current == base and above_base < extra):
            counts[link.master_id] += 1
            links.append(link)
            assigned.add(link.replica_id)

    unassigned: list[NodeId] = []
    for replica in ordered:
        if replica.node_id in assigned:
            continue
        if len(links) >= placed:
            unassigned.append(replica.node_id)
            continue
        fewest = min(counts.values())
        least_loaded = [master_id for master_id in master_ids if counts[master_id] == fewest]
        preferred = [
            master_id
            for master_id in least_loaded
            if _domains_differ(master_by_id[master_id], replica)
        ]
        master_id = (preferred or least_loaded)[0]
        counts[master_id] += 1
        links.append(ReplicaLink(master_id=master_id, replica_id=replica.node_id))
        assigned.add(replica.node_id)

    if unassigned:
        logger.info(
            "{} replica candidate(s) left pending beyond target of {} per master: {}",
            len(unassigned),
            replicas_per_master,
            unassigned,
        )

    return ReplicaAssignment(links=tuple(sorted(links)), unassigned=tuple(unassigned))
