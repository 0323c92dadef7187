from .controller import OrchestratorController, run_orchestration
from .convergence import ConvergenceDriver
from .prober import NodeProber, ProbeReport
from .results import (
    ConvergenceResult,
    ConvergenceStatus,
    NodeOutcome,
    NodeReport,
    RunError,
    RunResult,
    RunState,
)

__all__ = [
    "ConvergenceDriver",
    "ConvergenceResult",
    "ConvergenceStatus",
    "NodeOutcome",
    "NodeProber",
    "NodeReport",
    "OrchestratorController",
    "ProbeReport",
    "RunError",
    "RunResult",
    "RunState",
    "run_orchestration",
]
