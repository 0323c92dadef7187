"""
Convergence driver.

Pushes a topology to every node that does not already hold it, then polls
until every pushed node reports the topology's epoch. Transient failures are
retried under a ``RetryPolicy``; rejections never are. A ``StaleEpoch``
rejection or a node reporting a higher epoch means a newer run owns the
cluster, and this run stops pushing and polling at once.

Judgement:

* every master converged → ``converged``;
* ...but a replica (or unplaced member) lagging, or a master short of its
  replica target → ``degraded``, since the data path works without replicas;
* any master not converged, or a ``MalformedTopology`` rejection → ``failed``;
* superseded by a newer epoch → ``superseded``.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import Mapping, Sequence

from loguru import logger

from clusterform.control.plane import ApplyAck, NodeControlPlane
from clusterform.core.errors import (
    ClusterformError,
    NodeUnreachableError,
    TopologyRejectedError,
)
from clusterform.core.retry import RetryPolicy
from clusterform.core.task_manager import TaskManager
from clusterform.datastructures.type_aliases import DurationSeconds, Epoch, NodeId
from clusterform.topology.types import Node, NodeState, Topology

from .results import (
    ConvergenceResult,
    ConvergenceStatus,
    NodeOutcome,
    NodeReport,
    RunError,
    RunState,
)


class ConvergenceDriver:
    def __init__(
        self,
        control_plane: NodeControlPlane,
        *,
        retry_policy: RetryPolicy | None = None,
        max_concurrency: int = 16,
        poll_interval: DurationSeconds = 0.25,
        request_timeout: DurationSeconds = 2.0,
    ) -> None:
        self.control_plane = control_plane
        self.retry_policy = retry_policy or RetryPolicy()
        self.max_concurrency = max_concurrency
        self.poll_interval = poll_interval
        self.request_timeout = request_timeout

    async def _push(
        self, node: Node, topology: Topology, attempts: dict[NodeId, int]
    ) -> ApplyAck:
        async def attempt() -> ApplyAck:
            attempts[node.node_id] += 1
            try:
                return await asyncio.wait_for(
                    self.control_plane.apply_topology(node, topology),
                    self.request_timeout,
                )
            except TimeoutError as e:
                raise NodeUnreachableError(
                    f"push timed out after {self.request_timeout:.2f}s",
                    node_id=node.node_id,
                ) from e

        return await self.retry_policy.run(
            attempt,
            retry_on=(NodeUnreachableError,),
            description=f"push epoch {topology.epoch} to {node.node_id}",
        )

    async def _poll_once(
        self, nodes: Sequence[Node], remaining: DurationSeconds
    ) -> tuple[dict[NodeId, NodeState], dict[NodeId, str]]:
        timeout = max(0.0, min(self.request_timeout, remaining))
        async with TaskManager("poll", self.max_concurrency) as tasks:
            for node in nodes:
                tasks.create_task(
                    node.node_id,
                    asyncio.wait_for(self.control_plane.get_state(node), timeout),
                )
            timed_out = await tasks.join(remaining)
            states = tasks.results()
            errors = {
                node_id: str(error) or type(error).__name__
                for node_id, error in tasks.exceptions().items()
            }
        for node_id in timed_out:
            errors[node_id] = "poll deadline reached"
        return states, errors

    async def converge(
        self,
        topology: Topology,
        nodes: Sequence[Node],
        timeout: DurationSeconds,
        *,
        observed: Mapping[NodeId, NodeState] | None = None,
        replica_target: int = 0,
    ) -> ConvergenceResult:
        """Drive ``nodes`` to ``topology`` within ``timeout`` seconds.

        ``observed`` are states gathered while probing; nodes already holding
        this topology at this epoch are not pushed again.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        observed = observed or {}
        reports: dict[NodeId, NodeReport] = {}
        errors: list[RunError] = []
        attempts: dict[NodeId, int] = defaultdict(int)
        superseded_by: Epoch | None = None
        malformed = False

        to_push: list[Node] = []
        for node in nodes:
            state = observed.get(node.node_id)
            if state is not None and state.has_applied(topology):
                reports[node.node_id] = self._report(
                    topology, node.node_id, NodeOutcome.CONVERGED, topology.epoch
                )
            else:
                to_push.append(node)

        if not to_push:
            logger.info(
                "All {} node(s) already at epoch {}; nothing to push",
                len(nodes),
                topology.epoch,
            )

        acked: list[Node] = []
        async with TaskManager("push", self.max_concurrency) as tasks:
            for node in to_push:
                tasks.create_task(node.node_id, self._push(node, topology, attempts))
            timed_out = await tasks.join(deadline - loop.time())
            results = tasks.results()
            failures = tasks.exceptions()

        for node in to_push:
            node_id = node.node_id
            if node_id in results:
                acked.append(node)
                continue
            if node_id in timed_out:
                reports[node_id] = self._report(
                    topology, node_id, NodeOutcome.PENDING, detail="push still in flight at deadline"
                )
                continue
            error = failures.get(node_id)
            if isinstance(error, TopologyRejectedError):
                reports[node_id] = self._report(
                    topology,
                    node_id,
                    NodeOutcome.REJECTED,
                    error.current_epoch or 0,
                    detail=error.reason.value,
                )
                errors.append(
                    RunError(
                        phase=RunState.CONVERGING,
                        code=error.reason.value,
                        reason=error.message,
                        node_id=node_id,
                    )
                )
                if error.is_stale:
                    current = error.current_epoch or topology.epoch
                    superseded_by = max(superseded_by or 0, current)
                    logger.warning(
                        "Node {} rejected epoch {} as stale (node at {}); run superseded",
                        node_id,
                        topology.epoch,
                        current,
                    )
                else:
                    malformed = True
                    logger.critical(
                        "Node {} rejected epoch {} as malformed: {}",
                        node_id,
                        topology.epoch,
                        error.message,
                    )
            elif isinstance(error, ClusterformError):
                reports[node_id] = self._report(
                    topology, node_id, NodeOutcome.UNREACHABLE, detail=error.message
                )
                errors.append(
                    RunError.from_exception(RunState.CONVERGING, error, node_id)
                )
            else:
                detail = f"{type(error).__name__}: {error}" if error else "push cancelled"
                logger.error("Unexpected push failure for {}: {}", node_id, detail)
                reports[node_id] = self._report(
                    topology, node_id, NodeOutcome.UNREACHABLE, detail=detail
                )
                errors.append(
                    RunError(
                        phase=RunState.CONVERGING,
                        code="PushFailed",
                        reason=detail,
                        node_id=node_id,
                    )
                )

        awaiting = {node.node_id: node for node in acked}
        last_poll_error: dict[NodeId, str] = {}
        while awaiting and superseded_by is None and not malformed:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            states, poll_errors = await self._poll_once(list(awaiting.values()), remaining)
            last_poll_error.update(poll_errors)
            for node_id, state in states.items():
                if state.epoch == topology.epoch and (
                    state.topology is None or state.topology.same_assignment(topology)
                ):
                    reports[node_id] = self._report(
                        topology, node_id, NodeOutcome.CONVERGED, state.epoch
                    )
                    awaiting.pop(node_id)
                    last_poll_error.pop(node_id, None)
                elif state.epoch >= topology.epoch:
                    # newer epoch, or our epoch holding another run's assignment
                    reports[node_id] = self._report(
                        topology,
                        node_id,
                        NodeOutcome.REJECTED,
                        state.epoch,
                        detail=f"node moved on to epoch {state.epoch}",
                    )
                    awaiting.pop(node_id)
                    superseded_by = max(superseded_by or 0, state.epoch)
                    errors.append(
                        RunError(
                            phase=RunState.CONVERGING,
                            code="StaleEpoch",
                            reason=f"node holds epoch {state.epoch} from another run",
                            node_id=node_id,
                        )
                    )
            if awaiting and superseded_by is None:
                await asyncio.sleep(max(0.0, min(self.poll_interval, deadline - loop.time())))

        for node_id in awaiting:
            detail = last_poll_error.get(node_id, "epoch not confirmed before deadline")
            reports[node_id] = self._report(
                topology, node_id, NodeOutcome.PENDING, detail=detail
            )

        result = ConvergenceResult(
            topology=topology,
            status=ConvergenceStatus.CONVERGED,
            reports=reports,
            pushes=sum(attempts.values()),
            superseded_by=superseded_by,
            errors=errors,
        )
        self._judge(result, malformed=malformed, replica_target=replica_target)
        logger.info(
            "Convergence of epoch {}: {} ({} push attempt(s), {} converged, {} pending)",
            topology.epoch,
            result.status.value,
            result.pushes,
            len(result.nodes_with(NodeOutcome.CONVERGED)),
            len(result.nodes_with(NodeOutcome.PENDING)),
        )
        return result

    @staticmethod
    def _report(
        topology: Topology,
        node_id: NodeId,
        outcome: NodeOutcome,
        epoch: Epoch = 0,
        *,
        detail: str = "",
    ) -> NodeReport:
        return NodeReport(
            node_id=node_id,
            outcome=outcome,
            role=topology.role_of(node_id),
            epoch=epoch,
            detail=detail,
        )

    @staticmethod
    def _judge(result: ConvergenceResult, *, malformed: bool, replica_target: int) -> None:
        topology = result.topology
        if result.superseded_by is not None:
            result.status = ConvergenceStatus.SUPERSEDED
            return
        if malformed:
            result.status = ConvergenceStatus.FAILED
            return

        lagging_masters = [
            master_id
            for master_id in topology.masters
            if result.outcome_of(master_id) is not NodeOutcome.CONVERGED
        ]
        if lagging_masters:
            result.status = ConvergenceStatus.FAILED
            result.degraded_reasons.append(
                f"master(s) not converged: {', '.join(lagging_masters)}"
            )
            return

        reasons: list[str] = []
        lagging_members = [
            node_id
            for node_id, report in sorted(result.reports.items())
            if report.outcome is not NodeOutcome.CONVERGED
        ]
        if lagging_members:
            reasons.append(f"non-master node(s) not converged: {', '.join(lagging_members)}")
        if replica_target > 0:
            for master_id in topology.masters:
                live = [
                    replica_id
                    for replica_id in topology.replicas_of(master_id)
                    if result.outcome_of(replica_id) is NodeOutcome.CONVERGED
                ]
                if len(live) < replica_target:
                    reasons.append(
                        f"master {master_id} has {len(live)}/{replica_target} replica(s)"
                    )
        if reasons:
            result.status = ConvergenceStatus.DEGRADED
            result.degraded_reasons.extend(reasons)
