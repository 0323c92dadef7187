"""Pytest configuration and fixtures for clusterform testing.

Clusters are simulated in-process: every node is a ``NodeAgent`` behind an
``InMemoryControlPlane`` and the registry is an ``InMemoryRegistry``. Faults
(unreachable nodes, transient failures, slow nodes) are injected on the
control plane.
"""

from collections.abc import Iterable

import pytest
from loguru import logger

from clusterform.control.agent import NodeAgent
from clusterform.control.memory import InMemoryControlPlane
from clusterform.core.config import OrchestratorSettings
from clusterform.discovery.registry import CandidateRecord, InMemoryRegistry
from clusterform.topology.types import Node, NodeRole


class InMemoryCluster:
    """A registry plus control plane describing one simulated cluster."""

    def __init__(self) -> None:
        self.registry = InMemoryRegistry()
        self.control_plane = InMemoryControlPlane()

    def add_node(
        self,
        node_id: str,
        *,
        role: NodeRole = NodeRole.UNASSIGNED,
        failure_domain: str | None = None,
    ) -> NodeAgent:
        self.registry.register(
            CandidateRecord(
                node_id=node_id,
                address=f"mem://{node_id}",
                declared_role=role,
                failure_domain=failure_domain,
            )
        )
        return self.control_plane.add_agent(NodeAgent(node_id=node_id))

    def add_nodes(self, node_ids: Iterable[str], **kwargs) -> list[NodeAgent]:
        return [self.add_node(node_id, **kwargs) for node_id in node_ids]

    def agent(self, node_id: str) -> NodeAgent:
        return self.control_plane.agent(node_id)

    def take_down(self, node_id: str) -> None:
        self.control_plane.unreachable.add(node_id)

    def bring_up(self, node_id: str) -> None:
        self.control_plane.unreachable.discard(node_id)


def make_node(
    node_id: str,
    *,
    role: NodeRole = NodeRole.UNASSIGNED,
    failure_domain: str | None = None,
) -> Node:
    return Node(
        node_id=node_id,
        address=f"mem://{node_id}",
        declared_role=role,
        failure_domain=failure_domain,
    )


def fast_settings(**overrides) -> OrchestratorSettings:
    """Settings with short timeouts and no retry delay, for in-memory runs."""
    values = {
        "probe_timeout": 0.5,
        "converge_timeout": 2.0,
        "run_timeout": 5.0,
        "poll_interval": 0.01,
        "retry_initial_delay": 0.0,
        "retry_max_delay": 0.0,
        "retry_jitter": 0.0,
    }
    values.update(overrides)
    return OrchestratorSettings(**values)


@pytest.fixture
def cluster() -> InMemoryCluster:
    return InMemoryCluster()


@pytest.fixture(autouse=True)
def _quiet_logging():
    """Keep loguru output out of test reports unless a test asks for it."""
    logger.remove()
    yield
    logger.remove()
