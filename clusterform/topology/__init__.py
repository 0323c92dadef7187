"""Pure topology computation: data model, partitioning, replica placement."""

from .builder import (
    TopologyBuilder,
    TopologyPlan,
    highest_epoch,
    latest_topology,
    validate_topology,
)
from .partitioner import fresh_partition, moved_slots, partition, quotas
from .replicas import ReplicaAssignment, assign_replicas
from .roles import RolePlan, master_capable, plan_roles
from .types import (
    Node,
    NodeHealth,
    NodeRole,
    NodeState,
    Reachability,
    ReplicaLink,
    SlotRange,
    Topology,
    ranges_from_slots,
    slot_count,
)

__all__ = [
    "Node",
    "NodeHealth",
    "NodeRole",
    "NodeState",
    "Reachability",
    "ReplicaAssignment",
    "ReplicaLink",
    "RolePlan",
    "SlotRange",
    "Topology",
    "TopologyBuilder",
    "TopologyPlan",
    "assign_replicas",
    "fresh_partition",
    "highest_epoch",
    "latest_topology",
    "master_capable",
    "moved_slots",
    "partition",
    "plan_roles",
    "quotas",
    "ranges_from_slots",
    "slot_count",
    "validate_topology",
]
