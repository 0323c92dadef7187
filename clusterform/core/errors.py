"""Error taxonomy for orchestrator runs.

Every error carries a stable ``code`` so that run results and logs can be
matched without parsing messages.
"""

from __future__ import annotations

from enum import Enum

from clusterform.datastructures.type_aliases import Epoch, NodeId


class RejectReason(Enum):
    """Reasons a node gives for refusing a topology push."""

    STALE_EPOCH = "StaleEpoch"
    MALFORMED_TOPOLOGY = "MalformedTopology"


class ClusterformError(Exception):
    """Base exception for clusterform errors."""

    code: str = "ClusterformError"

    def __init__(self, message: str, *, node_id: NodeId | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.node_id = node_id


class ConfigurationError(ClusterformError):
    """Raised when settings are inconsistent."""

    code = "ConfigurationError"


class RegistryError(ClusterformError):
    """Raised by a registry backend when a single lookup fails."""

    code = "RegistryError"


class DiscoveryUnavailableError(ClusterformError):
    """Raised when the registry stays unreachable after retries."""

    code = "DiscoveryUnavailable"


class NoMastersAvailableError(ClusterformError):
    """Raised when there are no (or too few) master candidates."""

    code = "NoMastersAvailable"


class InsufficientSlotGranularityError(ClusterformError):
    """Raised when there are more masters than slots."""

    code = "InsufficientSlotGranularity"


class NodeUnreachableError(ClusterformError):
    """Raised when a node's control plane cannot be reached."""

    code = "NodeUnreachable"


class MalformedTopologyError(ClusterformError):
    """Raised when a topology violates its structural invariants."""

    code = "MalformedTopology"


class TopologyRejectedError(ClusterformError):
    """Raised when a node refuses a topology push."""

    code = "PushRejected"

    def __init__(
        self,
        reason: RejectReason,
        message: str = "",
        *,
        node_id: NodeId | None = None,
        current_epoch: Epoch | None = None,
    ) -> None:
        super().__init__(message or reason.value, node_id=node_id)
        self.reason = reason
        self.current_epoch = current_epoch

    @property
    def is_stale(self) -> bool:
        return self.reason is RejectReason.STALE_EPOCH


class StaleEpochError(ClusterformError):
    """Raised when a newer orchestrator run has superseded this one."""

    code = "StaleEpoch"

    def __init__(
        self,
        message: str,
        *,
        observed_epoch: Epoch,
        node_id: NodeId | None = None,
    ) -> None:
        super().__init__(message, node_id=node_id)
        self.observed_epoch = observed_epoch
