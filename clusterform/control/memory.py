"""In-process control plane backed by ``NodeAgent`` objects.

Used by tests and local demos. Faults can be injected per node: permanent
unreachability, a number of transient failures before calls succeed, and a
fixed delay per call.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import Iterable

from clusterform.core.errors import NodeUnreachableError
from clusterform.datastructures.type_aliases import DurationSeconds, NodeId
from clusterform.topology.types import Node, NodeState, Topology

from .agent import NodeAgent
from .plane import ApplyAck, NodeControlPlane


class InMemoryControlPlane(NodeControlPlane):
    def __init__(self, agents: Iterable[NodeAgent] = ()) -> None:
        self.agents: dict[NodeId, NodeAgent] = {agent.node_id: agent for agent in agents}
        self.unreachable: set[NodeId] = set()
        self.transient_failures: dict[NodeId, int] = defaultdict(int)
        self.delays: dict[NodeId, DurationSeconds] = {}
        self.push_attempts: dict[NodeId, int] = defaultdict(int)
        self.state_calls: dict[NodeId, int] = defaultdict(int)

    def add_agent(self, agent: NodeAgent) -> NodeAgent:
        self.agents[agent.node_id] = agent
        return agent

    def agent(self, node_id: NodeId) -> NodeAgent:
        return self.agents[node_id]

    @property
    def total_pushes(self) -> int:
        return sum(self.push_attempts.values())

    def reset_counters(self) -> None:
        self.push_attempts.clear()
        self.state_calls.clear()

    async def _reach(self, node: Node) -> NodeAgent:
        delay = self.delays.get(node.node_id)
        if delay:
            await asyncio.sleep(delay)
        if node.node_id in self.unreachable or node.node_id not in self.agents:
            raise NodeUnreachableError(
                f"{node.node_id} at {node.address} is unreachable", node_id=node.node_id
            )
        if self.transient_failures[node.node_id] > 0:
            self.transient_failures[node.node_id] -= 1
            raise NodeUnreachableError(
                f"transient failure talking to {node.node_id}", node_id=node.node_id
            )
        return self.agents[node.node_id]

    async def get_state(self, node: Node) -> NodeState:
        self.state_calls[node.node_id] += 1
        agent = await self._reach(node)
        return agent.state()

    async def apply_topology(self, node: Node, topology: Topology) -> ApplyAck:
        self.push_attempts[node.node_id] += 1
        agent = await self._reach(node)
        return await agent.apply(topology)
