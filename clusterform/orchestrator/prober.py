"""
Concurrent node probing.

Each candidate is asked for its self-reported state. Probes run in parallel
under a concurrency cap and are joined before anything else happens, so
planning never starts from a partial view. A node that errors or times out is
marked unreachable and left out of this run; it never aborts the run.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from loguru import logger

from clusterform.control.plane import NodeControlPlane
from clusterform.core.errors import ClusterformError, NodeUnreachableError
from clusterform.core.task_manager import TaskManager
from clusterform.datastructures.type_aliases import (
    DurationSeconds,
    Epoch,
    NodeId,
    Timestamp,
)
from clusterform.topology.builder import highest_epoch, latest_topology
from clusterform.topology.types import Node, NodeState, Reachability, Topology


@dataclass(slots=True)
class ProbeReport:
    """Joined result of probing every candidate."""

    nodes: dict[NodeId, Node] = field(default_factory=dict)
    states: dict[NodeId, NodeState] = field(default_factory=dict)
    failures: dict[NodeId, str] = field(default_factory=dict)
    timed_out: set[NodeId] = field(default_factory=set)

    @property
    def reachable(self) -> list[Node]:
        return [node for node in self.nodes.values() if node.is_reachable]

    @property
    def unreachable(self) -> list[Node]:
        return [node for node in self.nodes.values() if not node.is_reachable]

    @property
    def highest_epoch(self) -> Epoch:
        return highest_epoch(self.states)

    @property
    def latest_topology(self) -> Topology | None:
        return latest_topology(self.states)


class NodeProber:
    def __init__(
        self,
        control_plane: NodeControlPlane,
        *,
        probe_timeout: DurationSeconds = 2.0,
        max_concurrency: int = 16,
        clock: Callable[[], Timestamp] = time.time,
    ) -> None:
        self.control_plane = control_plane
        self.probe_timeout = probe_timeout
        self.max_concurrency = max_concurrency
        self.clock = clock

    async def probe(self, node: Node, timeout: DurationSeconds | None = None) -> NodeState:
        """Fetch ``node``'s state within ``timeout`` seconds.

        Raises:
            NodeUnreachableError: on timeout, transport failure, or when the
                endpoint answers for a different node id.
        """
        limit = self.probe_timeout if timeout is None else timeout
        try:
            state = await asyncio.wait_for(self.control_plane.get_state(node), limit)
        except TimeoutError as e:
            raise NodeUnreachableError(
                f"probe timed out after {limit:.2f}s", node_id=node.node_id
            ) from e
        if state.node_id != node.node_id:
            raise NodeUnreachableError(
                f"endpoint {node.address} reports identity {state.node_id}",
                node_id=node.node_id,
            )
        return state

    async def probe_all(
        self, nodes: Sequence[Node], deadline: float | None = None
    ) -> ProbeReport:
        """Probe every node concurrently and join.

        ``deadline`` is an event-loop time. Probes still running when it
        passes are cancelled and their nodes counted unreachable; whoever
        answered in time is the candidate set for the run.
        """
        loop = asyncio.get_running_loop()
        report = ProbeReport()

        async with TaskManager("probe", self.max_concurrency) as tasks:
            for node in nodes:
                tasks.create_task(node.node_id, self.probe(node))
            remaining = None if deadline is None else deadline - loop.time()
            report.timed_out = await tasks.join(remaining)
            results = tasks.results()
            errors = tasks.exceptions()

        probed_at = self.clock()
        for node in nodes:
            node_id = node.node_id
            if node_id in results:
                report.states[node_id] = results[node_id]
                report.nodes[node_id] = node.with_probe(Reachability.REACHABLE, probed_at)
                continue

            if node_id in report.timed_out:
                reason = "run deadline reached before probe completed"
            elif isinstance(errors.get(node_id), ClusterformError):
                reason = errors[node_id].message
            elif node_id in errors:
                error = errors[node_id]
                logger.error("Unexpected probe error for {}: {!r}", node_id, error)
                reason = f"{type(error).__name__}: {error}"
            else:
                reason = "probe cancelled"
            report.failures[node_id] = reason
            report.nodes[node_id] = node.with_probe(Reachability.UNREACHABLE, probed_at)
            logger.warning("Node {} unreachable: {}", node_id, reason)

        logger.info(
            "Probed {} node(s): {} reachable, {} unreachable, highest epoch {}",
            len(nodes),
            len(report.reachable),
            len(report.failures),
            report.highest_epoch,
        )
        return report
