"""Decide which reachable nodes serve as masters and which as replicas."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from loguru import logger

from clusterform.core.errors import NoMastersAvailableError
from clusterform.datastructures.type_aliases import NodeId

from .types import Node, NodeRole, NodeState, Topology


@dataclass(frozen=True, slots=True)
class RolePlan:
    masters: tuple[Node, ...]
    replicas: tuple[Node, ...]
    promoted: tuple[NodeId, ...] = field(default_factory=tuple)

    @property
    def master_ids(self) -> tuple[NodeId, ...]:
        return tuple(node.node_id for node in self.masters)


def _current_role(
    node: Node, state: NodeState | None, previous: Topology | None
) -> NodeRole:
    if previous is not None and node.node_id in previous.members:
        return previous.role_of(node.node_id)
    if node.declared_role is not NodeRole.UNASSIGNED:
        return node.declared_role
    if state is not None:
        return state.role
    return NodeRole.UNASSIGNED


def plan_roles(
    nodes: Sequence[Node],
    states: Mapping[NodeId, NodeState],
    previous: Topology | None,
    *,
    min_masters: int,
    desired_masters: int,
) -> RolePlan:
    """Split reachable ``nodes`` into masters and replica candidates.

    Previous masters keep their role, as do nodes the registry declares as
    masters. Masters are topped up to ``desired_masters`` from unassigned
    nodes first, then from replicas whose master is gone.

    Raises:
        NoMastersAvailableError: when fewer than ``min_masters`` masters result.
    """
    ordered = sorted(nodes, key=lambda node: node.node_id)
    masters: list[Node] = []
    unassigned: list[Node] = []
    orphans: list[Node] = []
    replicas: list[Node] = []
    reachable_ids = {node.node_id for node in ordered}

    for node in ordered:
        role = _current_role(node, states.get(node.node_id), previous)
        if role is NodeRole.MASTER:
            masters.append(node)
        elif role is NodeRole.REPLICA:
            master_id = previous.master_of(node.node_id) if previous else None
            if master_id is not None and master_id not in reachable_ids:
                orphans.append(node)
            else:
                replicas.append(node)
        else:
            unassigned.append(node)

    promoted: list[NodeId] = []
    for pool in (unassigned, orphans):
        while pool and len(masters) < desired_masters:
            node = pool.pop(0)
            masters.append(node)
            promoted.append(node.node_id)

    if promoted:
        logger.info("Promoting to master: {}", promoted)

    if len(masters) < min_masters:
        raise NoMastersAvailableError(
            f"{len(masters)} master candidate(s) reachable, {min_masters} required"
        )

    replicas.extend(orphans)
    replicas.extend(unassigned)
    return RolePlan(
        masters=tuple(sorted(masters, key=lambda node: node.node_id)),
        replicas=tuple(sorted(replicas, key=lambda node: node.node_id)),
        promoted=tuple(promoted),
    )


def master_capable(
    nodes: Sequence[Node],
    states: Mapping[NodeId, NodeState],
    previous: Topology | None,
) -> int:
    """How many of ``nodes`` could serve as master this run."""
    plan_nodes = list(nodes)
    if not plan_nodes:
        return 0
    plan = plan_roles(
        plan_nodes,
        states,
        previous,
        min_masters=0,
        desired_masters=len(plan_nodes),
    )
    return len(plan.masters)
