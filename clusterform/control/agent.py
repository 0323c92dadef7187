"""
Node-side control endpoint logic.

A ``NodeAgent`` holds the topology a node has applied and enforces the one
rule the whole system relies on for concurrency control: a push is only
accepted when its epoch is newer than the applied one. Re-sending the exact
topology already applied is acknowledged, so a push whose ack was lost can be
retried safely.

Two runs that race can plan different topologies at the same epoch. Every
agent then keeps the one with the greater ``digest()``, so all nodes settle on
the same assignment whatever order the pushes arrive in, and the other run
sees a ``StaleEpoch`` rejection or a foreign assignment and aborts.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

from loguru import logger

from clusterform.core.errors import (
    MalformedTopologyError,
    RejectReason,
    TopologyRejectedError,
)
from clusterform.datastructures.type_aliases import Epoch, NodeId
from clusterform.topology.builder import validate_topology
from clusterform.topology.types import NodeHealth, NodeRole, NodeState, Topology

from .plane import ApplyAck


@dataclass(slots=True)
class NodeAgent:
    node_id: NodeId
    health: NodeHealth = NodeHealth.OK
    epoch: Epoch = 0
    topology: Topology | None = None
    applied_count: int = 0
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def role(self) -> NodeRole:
        if self.topology is None:
            return NodeRole.UNASSIGNED
        return self.topology.role_of(self.node_id)

    def state(self) -> NodeState:
        peers: tuple[NodeId, ...] = ()
        if self.topology is not None:
            peers = tuple(sorted(self.topology.members - {self.node_id}))
        return NodeState(
            node_id=self.node_id,
            role=self.role,
            epoch=self.epoch,
            peers=peers,
            health=self.health,
            topology=self.topology,
        )

    async def apply(self, topology: Topology) -> ApplyAck:
        """Apply ``topology`` if it is newer than the current one.

        Raises:
            TopologyRejectedError: ``StaleEpoch`` for an epoch below the
                applied one, or the same epoch with a smaller digest; or
                ``MalformedTopology`` when invariants do not hold.
        """
        async with self._lock:
            replaces_peer = False
            if topology.epoch == self.epoch and self.topology is not None:
                if topology.same_assignment(self.topology):
                    return ApplyAck(node_id=self.node_id, epoch=self.epoch)
                replaces_peer = topology.digest() > self.topology.digest()
            if topology.epoch <= self.epoch and not replaces_peer:
                logger.info(
                    "[{}] Rejecting epoch {}: already at epoch {}",
                    self.node_id,
                    topology.epoch,
                    self.epoch,
                )
                raise TopologyRejectedError(
                    RejectReason.STALE_EPOCH,
                    f"epoch {topology.epoch} does not supersede applied epoch {self.epoch}",
                    node_id=self.node_id,
                    current_epoch=self.epoch,
                )
            try:
                validate_topology(topology)
            except MalformedTopologyError as e:
                logger.error(
                    "[{}] Rejecting malformed topology epoch {}: {}",
                    self.node_id,
                    topology.epoch,
                    e.message,
                )
                raise TopologyRejectedError(
                    RejectReason.MALFORMED_TOPOLOGY,
                    e.message,
                    node_id=self.node_id,
                    current_epoch=self.epoch,
                ) from e

            if replaces_peer:
                logger.info(
                    "[{}] Epoch {} planned twice; keeping assignment {} over {}",
                    self.node_id,
                    self.epoch,
                    topology.digest()[:12],
                    self.topology.digest()[:12],
                )
            return self._install(topology)

    def _install(self, topology: Topology) -> ApplyAck:
        self.epoch = topology.epoch
        self.topology = topology
        self.applied_count += 1
        logger.debug(
            "[{}] Applied epoch {} as {}", self.node_id, topology.epoch, self.role.value
        )
        return ApplyAck(node_id=self.node_id, epoch=self.epoch)
