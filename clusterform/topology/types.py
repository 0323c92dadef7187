"""
Topology data model.

Nodes, slot ranges, replica links and the epoch-stamped ``Topology`` that the
orchestrator computes each run. Everything here is an immutable value; the
orchestrator never stores topology itself, it only reads what nodes report
and pushes a new value.
"""

from __future__ import annotations

import hashlib
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TypeAlias

from clusterform.core.payloads import (
    PAYLOAD_KEEP_EMPTY,
    PAYLOAD_LIST,
    Payload,
    PayloadMapping,
    payload_from_dataclass,
    read_int,
    read_list,
    read_mapping,
    read_str,
)
from clusterform.core.serialization import JsonSerializer
from clusterform.datastructures.type_aliases import (
    Epoch,
    FailureDomain,
    NodeAddress,
    NodeId,
    SlotCount,
    SlotNumber,
    Timestamp,
)

_serializer = JsonSerializer()


class NodeRole(Enum):
    """Role a node declares in the registry or reports about itself."""

    UNASSIGNED = "unassigned"
    MASTER = "master"
    REPLICA = "replica"


class Reachability(Enum):
    """Reachability of a node as last observed by the prober."""

    UNKNOWN = "unknown"
    REACHABLE = "reachable"
    UNREACHABLE = "unreachable"


class NodeHealth(Enum):
    """Health a node reports about itself."""

    OK = "ok"
    DEGRADED = "degraded"
    FAILING = "failing"


@dataclass(frozen=True, slots=True)
class Node:
    """A candidate node as seen by the orchestrator."""

    node_id: NodeId
    address: NodeAddress
    declared_role: NodeRole = NodeRole.UNASSIGNED
    failure_domain: FailureDomain | None = None
    reachability: Reachability = Reachability.UNKNOWN
    last_probed_at: Timestamp | None = None

    def with_probe(self, reachability: Reachability, at: Timestamp) -> Node:
        return replace(self, reachability=reachability, last_probed_at=at)

    @property
    def is_reachable(self) -> bool:
        return self.reachability is Reachability.REACHABLE

    def to_dict(self) -> Payload:
        return payload_from_dataclass(self)


@dataclass(frozen=True, slots=True, order=True)
class SlotRange:
    """Inclusive interval ``[start, end]`` of slots."""

    start: SlotNumber
    end: SlotNumber

    def __post_init__(self) -> None:
        if self.start < 0 or self.end < self.start:
            raise ValueError(f"invalid slot range [{self.start}, {self.end}]")

    def __len__(self) -> int:
        return self.end - self.start + 1

    def contains(self, slot: SlotNumber) -> bool:
        return self.start <= slot <= self.end

    def slots(self) -> range:
        return range(self.start, self.end + 1)

    def __str__(self) -> str:
        if self.start == self.end:
            return str(self.start)
        return f"{self.start}-{self.end}"

    def to_dict(self) -> list[int]:
        return [self.start, self.end]

    @classmethod
    def from_dict(cls, payload: Iterable[int]) -> SlotRange:
        start, end = payload
        return cls(int(start), int(end))


def ranges_from_slots(slots: Iterable[SlotNumber]) -> tuple[SlotRange, ...]:
    """Compress slot numbers into the fewest sorted ranges."""
    ordered = sorted(set(slots))
    if not ordered:
        return ()
    ranges: list[SlotRange] = []
    start = prev = ordered[0]
    for slot in ordered[1:]:
        if slot != prev + 1:
            ranges.append(SlotRange(start, prev))
            start = slot
        prev = slot
    ranges.append(SlotRange(start, prev))
    return tuple(ranges)


def slot_count(ranges: Iterable[SlotRange]) -> SlotCount:
    return sum(len(slot_range) for slot_range in ranges)


@dataclass(frozen=True, slots=True, order=True)
class ReplicaLink:
    """A replica following a master."""

    master_id: NodeId
    replica_id: NodeId

    def to_dict(self) -> Payload:
        return payload_from_dataclass(self)

    @classmethod
    def from_dict(cls, payload: PayloadMapping) -> ReplicaLink:
        return cls(
            master_id=read_str(payload, "master_id"),
            replica_id=read_str(payload, "replica_id"),
        )


SlotMap: TypeAlias = Mapping[NodeId, tuple[SlotRange, ...]]


@dataclass(frozen=True, slots=True)
class Topology:
    """Slot ownership and replica links, stamped with an epoch."""

    epoch: Epoch
    total_slots: SlotCount
    slot_map: dict[NodeId, tuple[SlotRange, ...]] = field(
        default_factory=dict, metadata={PAYLOAD_KEEP_EMPTY: True}
    )
    replica_links: tuple[ReplicaLink, ...] = field(
        default_factory=tuple, metadata={PAYLOAD_LIST: True, PAYLOAD_KEEP_EMPTY: True}
    )

    @classmethod
    def create(
        cls,
        *,
        epoch: Epoch,
        total_slots: SlotCount,
        slot_map: SlotMap,
        replica_links: Iterable[ReplicaLink] = (),
    ) -> Topology:
        """Build a topology with canonical ordering of masters, ranges and links."""
        return cls(
            epoch=epoch,
            total_slots=total_slots,
            slot_map={
                node_id: tuple(sorted(slot_map[node_id])) for node_id in sorted(slot_map)
            },
            replica_links=tuple(sorted(set(replica_links))),
        )

    @property
    def masters(self) -> tuple[NodeId, ...]:
        return tuple(self.slot_map)

    @property
    def replicas(self) -> tuple[NodeId, ...]:
        return tuple(link.replica_id for link in self.replica_links)

    @property
    def members(self) -> frozenset[NodeId]:
        return frozenset(self.masters) | frozenset(self.replicas)

    def role_of(self, node_id: NodeId) -> NodeRole:
        if node_id in self.slot_map:
            return NodeRole.MASTER
        if node_id in self.replicas:
            return NodeRole.REPLICA
        return NodeRole.UNASSIGNED

    def slots_of(self, node_id: NodeId) -> tuple[SlotRange, ...]:
        return self.slot_map.get(node_id, ())

    def slot_owners(self) -> dict[SlotNumber, NodeId]:
        owners: dict[SlotNumber, NodeId] = {}
        for node_id, ranges in self.slot_map.items():
            for slot_range in ranges:
                for slot in slot_range.slots():
                    owners[slot] = node_id
        return owners

    def owner_of(self, slot: SlotNumber) -> NodeId | None:
        for node_id, ranges in self.slot_map.items():
            if any(slot_range.contains(slot) for slot_range in ranges):
                return node_id
        return None

    def replicas_of(self, master_id: NodeId) -> tuple[NodeId, ...]:
        return tuple(
            link.replica_id for link in self.replica_links if link.master_id == master_id
        )

    def master_of(self, replica_id: NodeId) -> NodeId | None:
        for link in self.replica_links:
            if link.replica_id == replica_id:
                return link.master_id
        return None

    def same_assignment(self, other: Topology | None) -> bool:
        """True when ``other`` assigns the same slots and links, whatever its epoch."""
        if other is None:
            return False
        return (
            self.total_slots == other.total_slots
            and self.slot_map == other.slot_map
            and self.replica_links == other.replica_links
        )

    def with_epoch(self, epoch: Epoch) -> Topology:
        return replace(self, epoch=epoch)

    def digest(self) -> str:
        """Content hash of the assignment, epoch excluded."""
        content = self.to_dict()
        content.pop("epoch", None)
        return hashlib.sha256(_serializer.serialize_canonical(content)).hexdigest()

    def to_dict(self) -> Payload:
        return payload_from_dataclass(self)

    @classmethod
    def from_dict(cls, payload: PayloadMapping) -> Topology:
        slot_map = read_mapping(payload, "slot_map")
        return cls.create(
            epoch=read_int(payload, "epoch"),
            total_slots=read_int(payload, "total_slots"),
            slot_map={
                str(node_id): read_list(slot_map, node_id, SlotRange.from_dict)
                for node_id in slot_map
            },
            replica_links=read_list(payload, "replica_links", ReplicaLink.from_dict),
        )


@dataclass(frozen=True, slots=True)
class NodeState:
    """Self-reported state of a node, as returned by its control plane."""

    node_id: NodeId
    role: NodeRole = NodeRole.UNASSIGNED
    epoch: Epoch = 0
    peers: tuple[NodeId, ...] = field(default_factory=tuple, metadata={PAYLOAD_LIST: True})
    health: NodeHealth = NodeHealth.OK
    topology: Topology | None = None

    @property
    def is_empty(self) -> bool:
        """Never configured by any orchestrator run."""
        return self.epoch == 0 and self.topology is None

    def has_applied(self, topology: Topology) -> bool:
        return (
            self.epoch == topology.epoch
            and self.topology is not None
            and self.topology.same_assignment(topology)
        )

    def to_dict(self) -> Payload:
        return payload_from_dataclass(self)

    @classmethod
    def from_dict(cls, payload: PayloadMapping) -> NodeState:
        topology_payload = payload.get("topology")
        return cls(
            node_id=read_str(payload, "node_id"),
            role=NodeRole(payload.get("role", NodeRole.UNASSIGNED.value)),
            epoch=read_int(payload, "epoch", 0),
            peers=read_list(payload, "peers", str),
            health=NodeHealth(payload.get("health", NodeHealth.OK.value)),
            topology=(
                Topology.from_dict(topology_payload)
                if isinstance(topology_payload, Mapping)
                else None
            ),
        )
