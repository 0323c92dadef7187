from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from clusterform.datastructures.type_aliases import Epoch, NodeId
from clusterform.topology.types import Node, NodeState, Topology


@dataclass(frozen=True, slots=True)
class ApplyAck:
    """A node accepted a topology."""

    node_id: NodeId
    epoch: Epoch


class NodeControlPlane(ABC):
    """Orchestrator-side access to node control endpoints.

    Implementations raise ``NodeUnreachableError`` for transient transport
    failures and ``TopologyRejectedError`` when the node answers with a
    rejection. Timeouts are enforced by callers.
    """

    @abstractmethod
    async def get_state(self, node: Node) -> NodeState:
        """Ask ``node`` for its self-reported state."""
        pass

    @abstractmethod
    async def apply_topology(self, node: Node, topology: Topology) -> ApplyAck:
        """Push ``topology`` to ``node``."""
        pass

    async def close(self) -> None:
        """Release any pooled connections."""
        return None
