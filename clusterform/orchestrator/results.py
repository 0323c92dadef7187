"""Outcome types for probing, convergence and whole orchestrator runs."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from clusterform.core.errors import ClusterformError
from clusterform.core.payloads import (
    PAYLOAD_KEEP_EMPTY,
    PAYLOAD_LIST,
    Payload,
    payload_from_dataclass,
)
from clusterform.datastructures.type_aliases import (
    Epoch,
    ErrorCode,
    ErrorMessage,
    NodeId,
    RunId,
    SlotCount,
    Timestamp,
)
from clusterform.topology.types import NodeRole, Topology


class RunState(Enum):
    """Controller states. The last four are terminal."""

    IDLE = "idle"
    DISCOVERING = "discovering"
    PROBING = "probing"
    PLANNING = "planning"
    CONVERGING = "converging"
    SUCCEEDED = "succeeded"
    DEGRADED_SUCCEEDED = "degraded_succeeded"
    FAILED = "failed"
    ABORTED = "aborted"


class NodeOutcome(Enum):
    """Per-node result of a convergence attempt."""

    CONVERGED = "converged"
    PENDING = "pending"
    REJECTED = "rejected"
    UNREACHABLE = "unreachable"


class ConvergenceStatus(Enum):
    CONVERGED = "converged"
    DEGRADED = "degraded"
    FAILED = "failed"
    SUPERSEDED = "superseded"


@dataclass(frozen=True, slots=True)
class RunError:
    """One diagnosable failure: where it happened, to whom, and why."""

    phase: RunState
    code: ErrorCode
    reason: ErrorMessage
    node_id: NodeId | None = None

    @classmethod
    def from_exception(
        cls, phase: RunState, error: ClusterformError, node_id: NodeId | None = None
    ) -> RunError:
        return cls(
            phase=phase,
            code=error.code,
            reason=error.message,
            node_id=node_id or error.node_id,
        )

    def to_dict(self) -> Payload:
        return payload_from_dataclass(self)

    def __str__(self) -> str:
        target = f" node={self.node_id}" if self.node_id else ""
        return f"[{self.phase.value}] {self.code}{target}: {self.reason}"


@dataclass(frozen=True, slots=True)
class NodeReport:
    node_id: NodeId
    outcome: NodeOutcome
    role: NodeRole = NodeRole.UNASSIGNED
    epoch: Epoch = 0
    detail: str = ""

    def to_dict(self) -> Payload:
        return payload_from_dataclass(self)


@dataclass(slots=True)
class ConvergenceResult:
    topology: Topology
    status: ConvergenceStatus
    reports: dict[NodeId, NodeReport] = field(default_factory=dict)
    pushes: int = 0
    superseded_by: Epoch | None = None
    errors: list[RunError] = field(default_factory=list)
    degraded_reasons: list[str] = field(default_factory=list)

    def outcome_of(self, node_id: NodeId) -> NodeOutcome | None:
        report = self.reports.get(node_id)
        return report.outcome if report else None

    def nodes_with(self, outcome: NodeOutcome) -> list[NodeId]:
        return sorted(
            node_id for node_id, report in self.reports.items() if report.outcome is outcome
        )


@dataclass(slots=True)
class RunResult:
    """Everything an operator needs to judge a run without re-running it."""

    run_id: RunId
    state: RunState
    epoch: Epoch | None = None
    topology: Topology | None = None
    node_reports: dict[NodeId, NodeReport] = field(
        default_factory=dict, metadata={PAYLOAD_KEEP_EMPTY: True}
    )
    errors: list[RunError] = field(
        default_factory=list, metadata={PAYLOAD_LIST: True, PAYLOAD_KEEP_EMPTY: True}
    )
    pushes: int = 0
    moved_slots: SlotCount = 0
    unassigned_replicas: tuple[NodeId, ...] = field(
        default_factory=tuple, metadata={PAYLOAD_LIST: True}
    )
    degraded_reasons: list[str] = field(default_factory=list, metadata={PAYLOAD_LIST: True})
    history: list[RunState] = field(default_factory=list, metadata={PAYLOAD_LIST: True})
    started_at: Timestamp = 0.0
    finished_at: Timestamp = 0.0

    @property
    def succeeded(self) -> bool:
        """Full success only; degraded success is reported separately."""
        return self.state is RunState.SUCCEEDED

    @property
    def usable(self) -> bool:
        """Data path fully functional (possibly with missing replicas)."""
        return self.state in (RunState.SUCCEEDED, RunState.DEGRADED_SUCCEEDED)

    @property
    def node_outcomes(self) -> dict[NodeId, NodeOutcome]:
        return {node_id: report.outcome for node_id, report in self.node_reports.items()}

    @property
    def duration_seconds(self) -> float:
        return max(0.0, self.finished_at - self.started_at)

    def to_dict(self) -> Payload:
        return payload_from_dataclass(self)
