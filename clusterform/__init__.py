"""
clusterform - cluster bootstrap and topology orchestration

Forms and re-forms a hash-partitioned, replicated in-memory store from a
dynamic set of nodes: discovers candidates, probes them, partitions a fixed
keyspace of slots across masters, links replicas, and drives every node to
an epoch-stamped topology.

## Architecture

- **topology**: pure planning (data model, partitioner, replica placement, builder)
- **discovery**: registry backends and the discovery client
- **control**: node control planes (in-memory, WebSocket) and the node agent
- **orchestrator**: prober, convergence driver and the run controller
- **core**: settings, errors, logging, retry and serialization

## Quick Start

```python
from clusterform import OrchestratorSettings, run_orchestration
from clusterform.control import WebSocketControlPlane
from clusterform.discovery import StaticFileRegistry

result = await run_orchestration(
    OrchestratorSettings(min_masters=3),
    StaticFileRegistry("registry.json"),
    WebSocketControlPlane(),
)
print(result.state, result.epoch)
```

Runs are idempotent: re-running against an unchanged cluster computes the
same topology at the same epoch and pushes nothing.
"""

from .core.config import ExcessReplicaPolicy, OrchestratorSettings
from .core.errors import (
    ClusterformError,
    DiscoveryUnavailableError,
    InsufficientSlotGranularityError,
    MalformedTopologyError,
    NoMastersAvailableError,
    NodeUnreachableError,
    StaleEpochError,
    TopologyRejectedError,
)
from .orchestrator import (
    NodeOutcome,
    OrchestratorController,
    RunResult,
    RunState,
    run_orchestration,
)
from .topology import Node, NodeRole, ReplicaLink, SlotRange, Topology

__version__ = "0.1.0"

__all__ = [
    "ClusterformError",
    "DiscoveryUnavailableError",
    "ExcessReplicaPolicy",
    "InsufficientSlotGranularityError",
    "MalformedTopologyError",
    "NoMastersAvailableError",
    "Node",
    "NodeOutcome",
    "NodeRole",
    "NodeUnreachableError",
    "OrchestratorController",
    "OrchestratorSettings",
    "ReplicaLink",
    "RunResult",
    "RunState",
    "SlotRange",
    "StaleEpochError",
    "Topology",
    "TopologyRejectedError",
    "run_orchestration",
]
