"""
Orchestrator controller.

One ``run()`` walks the state machine::

    idle -> discovering -> probing -> planning -> converging
         -> succeeded | degraded_succeeded | failed | aborted

The controller keeps no topology of its own between runs. Everything it
plans from is read back from the nodes, so any instance can run at any time
and an unchanged cluster re-plans to the same topology and pushes nothing.

Structural failures (registry down, too few masters, planning errors, a
malformed push) end the run as ``failed``. Per-node failures are collected
and never abort. Being overtaken by a newer epoch ends the run as
``aborted``: expected under concurrent triggers, nothing to remediate.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable

import ulid
from loguru import logger

from clusterform.control.plane import NodeControlPlane
from clusterform.core.config import OrchestratorSettings
from clusterform.core.errors import (
    ClusterformError,
    DiscoveryUnavailableError,
    InsufficientSlotGranularityError,
    MalformedTopologyError,
    NoMastersAvailableError,
    StaleEpochError,
)
from clusterform.datastructures.type_aliases import Timestamp
from clusterform.discovery.client import DiscoveryClient
from clusterform.discovery.registry import Registry
from clusterform.topology.builder import TopologyBuilder, TopologyPlan
from clusterform.topology.roles import master_capable
from clusterform.topology.types import Node

from .convergence import ConvergenceDriver
from .prober import NodeProber, ProbeReport
from .results import (
    ConvergenceStatus,
    NodeOutcome,
    NodeReport,
    RunError,
    RunResult,
    RunState,
)

_FINAL_STATES = {
    ConvergenceStatus.CONVERGED: RunState.SUCCEEDED,
    ConvergenceStatus.DEGRADED: RunState.DEGRADED_SUCCEEDED,
    ConvergenceStatus.FAILED: RunState.FAILED,
    ConvergenceStatus.SUPERSEDED: RunState.ABORTED,
}


class _RunAborted(Exception):
    """Internal: unwinds a run that reached a terminal state early."""

    def __init__(self, state: RunState) -> None:
        super().__init__(state.value)
        self.state = state


class OrchestratorController:
    def __init__(
        self,
        settings: OrchestratorSettings,
        registry: Registry,
        control_plane: NodeControlPlane,
        *,
        clock: Callable[[], Timestamp] = time.time,
    ) -> None:
        self.settings = settings
        self.control_plane = control_plane
        self.clock = clock
        self.discovery = DiscoveryClient(registry, settings.discovery_retry_policy())
        self.prober = NodeProber(
            control_plane,
            probe_timeout=settings.probe_timeout,
            max_concurrency=settings.max_concurrency,
            clock=clock,
        )
        self.builder = TopologyBuilder(
            total_slots=settings.total_slots,
            min_masters=settings.min_masters,
            desired_masters=settings.desired_masters,
            replicas_per_master=settings.replicas_per_master_target,
            excess_replica_policy=settings.excess_replica_policy,
        )
        self.driver = ConvergenceDriver(
            control_plane,
            retry_policy=settings.retry_policy(),
            max_concurrency=settings.max_concurrency,
            poll_interval=settings.poll_interval,
            request_timeout=settings.probe_timeout,
        )
        self.state = RunState.IDLE
        self._result: RunResult | None = None

    def _transition(self, state: RunState) -> None:
        assert self._result is not None
        logger.info("Run state {} -> {}", self.state.value, state.value)
        self.state = state
        self._result.state = state
        self._result.history.append(state)

    def _fail(self, error: ClusterformError, *, state: RunState = RunState.FAILED) -> _RunAborted:
        assert self._result is not None
        run_error = RunError.from_exception(self.state, error)
        self._result.errors.append(run_error)
        if state is RunState.ABORTED:
            logger.warning("Run aborted: {}", run_error)
        else:
            logger.error("Run failed: {}", run_error)
        return _RunAborted(state)

    async def run(self) -> RunResult:
        """Execute one orchestration run and report its terminal state."""
        run_id = str(ulid.new())
        self.state = RunState.IDLE
        self._result = RunResult(
            run_id=run_id,
            state=RunState.IDLE,
            history=[RunState.IDLE],
            started_at=self.clock(),
        )
        with logger.contextualize(run_id=run_id):
            loop = asyncio.get_running_loop()
            deadline = loop.time() + self.settings.run_timeout
            try:
                candidates = await self._discover(deadline)
                report = await self._probe(candidates, deadline)
                plan = self._plan(report)
                await self._converge(plan, report, deadline)
            except _RunAborted as e:
                self._transition(e.state)
            result = self._result
            result.finished_at = self.clock()
            logger.info(
                "Run finished: {} (epoch {}, {} push attempt(s), {:.3f}s)",
                result.state.value,
                result.epoch,
                result.pushes,
                result.duration_seconds,
            )
            return result

    async def _discover(self, deadline: float) -> list[Node]:
        self._transition(RunState.DISCOVERING)
        remaining = deadline - asyncio.get_running_loop().time()
        try:
            candidates = await asyncio.wait_for(
                self.discovery.list_candidates(), max(0.0, remaining)
            )
        except DiscoveryUnavailableError as e:
            raise self._fail(e) from e
        except TimeoutError as e:
            raise self._fail(
                DiscoveryUnavailableError("registry listing exceeded the run deadline")
            ) from e
        if not candidates:
            raise self._fail(NoMastersAvailableError("registry returned no candidates"))
        return candidates

    async def _probe(self, candidates: list[Node], deadline: float) -> ProbeReport:
        assert self._result is not None
        self._transition(RunState.PROBING)
        report = await self.prober.probe_all(candidates, deadline)

        for node in report.unreachable:
            self._result.node_reports[node.node_id] = NodeReport(
                node_id=node.node_id,
                outcome=NodeOutcome.UNREACHABLE,
                role=node.declared_role,
                detail=report.failures.get(node.node_id, ""),
            )
            self._result.errors.append(
                RunError(
                    phase=RunState.PROBING,
                    code="NodeUnreachable",
                    reason=report.failures.get(node.node_id, "unreachable"),
                    node_id=node.node_id,
                )
            )

        expected = self.settings.expected_epoch
        if expected is not None and report.highest_epoch > expected:
            newest = max(report.states.values(), key=lambda state: state.epoch)
            raise self._fail(
                StaleEpochError(
                    f"node reports epoch {newest.epoch}, newer than expected {expected}",
                    observed_epoch=newest.epoch,
                    node_id=newest.node_id,
                ),
                state=RunState.ABORTED,
            )

        capable = master_capable(report.reachable, report.states, report.latest_topology)
        if capable < self.settings.min_masters:
            raise self._fail(
                NoMastersAvailableError(
                    f"{capable} reachable master candidate(s), "
                    f"{self.settings.min_masters} required"
                )
            )
        return report

    def _plan(self, report: ProbeReport) -> TopologyPlan:
        assert self._result is not None
        self._transition(RunState.PLANNING)
        try:
            plan = self.builder.build(report.reachable, report.states)
        except (
            NoMastersAvailableError,
            InsufficientSlotGranularityError,
            MalformedTopologyError,
        ) as e:
            if isinstance(e, MalformedTopologyError):
                logger.critical("Planner produced a malformed topology: {}", e.message)
            raise self._fail(e) from e
        self._result.topology = plan.topology
        self._result.epoch = plan.topology.epoch
        self._result.moved_slots = plan.moved_slots
        self._result.unassigned_replicas = plan.unassigned_replicas
        return plan

    async def _converge(self, plan: TopologyPlan, report: ProbeReport, deadline: float) -> None:
        assert self._result is not None
        self._transition(RunState.CONVERGING)
        remaining = deadline - asyncio.get_running_loop().time()
        timeout = max(0.0, min(self.settings.converge_timeout, remaining))
        convergence = await self.driver.converge(
            plan.topology,
            report.reachable,
            timeout,
            observed=report.states,
            replica_target=self.settings.replicas_per_master_target,
        )
        self._result.node_reports.update(convergence.reports)
        self._result.errors.extend(convergence.errors)
        self._result.pushes = convergence.pushes
        self._result.degraded_reasons.extend(convergence.degraded_reasons)
        if convergence.status is ConvergenceStatus.DEGRADED:
            logger.warning(
                "Run degraded: {}", "; ".join(convergence.degraded_reasons)
            )
        self._transition(_FINAL_STATES[convergence.status])


async def run_orchestration(
    settings: OrchestratorSettings,
    registry: Registry,
    control_plane: NodeControlPlane,
) -> RunResult:
    """Single entry point: discover, probe, plan and converge once."""
    controller = OrchestratorController(settings, registry, control_plane)
    return await controller.run()
