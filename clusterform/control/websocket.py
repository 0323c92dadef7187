"""
WebSocket control plane.

Wire protocol: one JSON document per WebSocket message, encoded with orjson.
The orchestrator sends a ``ControlRequest`` and the node answers with a
``ControlResponse`` carrying the same ``u``. Each call opens its own short
connection; runs are short-lived and per-node calls are few, so there is no
pool to leak.

Example exchange::

    -> {"role": "control", "op": "get_state", "u": "01J..."}
    <- {"u": "01J...", "state": {"node_id": "node-a", "epoch": 3, ...}}
"""

from __future__ import annotations

from typing import Any

import ulid
from loguru import logger
from pydantic import ValidationError
from websockets.asyncio.client import connect
from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed, WebSocketException

from clusterform.core.errors import (
    NodeUnreachableError,
    RejectReason,
    TopologyRejectedError,
)
from clusterform.core.serialization import JsonSerializer
from clusterform.datastructures.type_aliases import DurationSeconds, RequestId
from clusterform.topology.types import Node, NodeState, Topology

from .agent import NodeAgent
from .model import ControlError, ControlRequest, ControlResponse
from .plane import ApplyAck, NodeControlPlane


def new_request_id() -> RequestId:
    """A ULID, so request ids sort by creation time in logs."""
    return str(ulid.new())


class WebSocketControlPlane(NodeControlPlane):
    """Talks to node control endpoints at ``ws://`` / ``wss://`` addresses."""

    def __init__(self, *, open_timeout: DurationSeconds = 5.0) -> None:
        self.open_timeout = open_timeout
        self.serializer = JsonSerializer()

    async def _call(self, node: Node, request: ControlRequest) -> ControlResponse:
        try:
            async with connect(
                node.address, open_timeout=self.open_timeout, user_agent_header=None
            ) as websocket:
                await websocket.send(self.serializer.serialize(request.model_dump()))
                raw = await websocket.recv()
        except (OSError, TimeoutError, WebSocketException) as e:
            raise NodeUnreachableError(
                f"{node.node_id} at {node.address}: {e}", node_id=node.node_id
            ) from e

        try:
            response = ControlResponse.model_validate(
                self.serializer.deserialize(
                    raw.encode("utf-8") if isinstance(raw, str) else raw
                )
            )
        except (ValueError, ValidationError) as e:
            raise NodeUnreachableError(
                f"{node.node_id} sent an unreadable response: {e}", node_id=node.node_id
            ) from e
        if response.u != request.u:
            raise NodeUnreachableError(
                f"{node.node_id} answered request {response.u}, expected {request.u}",
                node_id=node.node_id,
            )
        return response

    async def get_state(self, node: Node) -> NodeState:
        request = ControlRequest(op="get_state", u=new_request_id())
        response = await self._call(node, request)
        if response.error is not None or response.state is None:
            message = response.error.message if response.error else "empty state"
            raise NodeUnreachableError(
                f"{node.node_id} failed get_state: {message}", node_id=node.node_id
            )
        return NodeState.from_dict(response.state)

    async def apply_topology(self, node: Node, topology: Topology) -> ApplyAck:
        request = ControlRequest(
            op="apply_topology", u=new_request_id(), topology=topology.to_dict()
        )
        response = await self._call(node, request)
        if response.error is not None:
            try:
                reason = RejectReason(response.error.code)
            except ValueError as e:
                raise NodeUnreachableError(
                    f"{node.node_id} failed apply_topology: {response.error.message}",
                    node_id=node.node_id,
                ) from e
            raise TopologyRejectedError(
                reason,
                response.error.message,
                node_id=node.node_id,
                current_epoch=response.error.current_epoch,
            )
        return ApplyAck(
            node_id=node.node_id,
            epoch=response.ack_epoch if response.ack_epoch is not None else topology.epoch,
        )


class NodeAgentServer:
    """Serves a ``NodeAgent`` over WebSocket."""

    def __init__(self, agent: NodeAgent, host: str = "127.0.0.1", port: int = 0) -> None:
        self.agent = agent
        self.host = host
        self.port = port
        self.serializer = JsonSerializer()
        self._server: Server | None = None

    @property
    def address(self) -> str:
        return f"ws://{self.host}:{self.port}"

    async def start(self) -> None:
        self._server = await serve(self._handle, self.host, self.port)
        if self.port == 0:
            self.port = self._server.sockets[0].getsockname()[1]
        logger.info("[{}] Control endpoint listening on {}", self.agent.node_id, self.address)

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None

    async def serve_forever(self) -> None:
        await self.start()
        assert self._server is not None
        try:
            await self._server.serve_forever()
        finally:
            await self.stop()

    async def __aenter__(self) -> NodeAgentServer:
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.stop()

    async def _handle(self, connection: ServerConnection) -> None:
        try:
            async for raw in connection:
                response = await self._dispatch(raw)
                await connection.send(self.serializer.serialize(response.model_dump()))
        except ConnectionClosed:
            pass

    async def _dispatch(self, raw: str | bytes) -> ControlResponse:
        try:
            request = ControlRequest.model_validate(
                self.serializer.deserialize(
                    raw.encode("utf-8") if isinstance(raw, str) else raw
                )
            )
        except (ValueError, ValidationError) as e:
            logger.warning("[{}] Bad control request: {}", self.agent.node_id, e)
            return ControlResponse(
                u="", error=ControlError(code="BadRequest", message=str(e))
            )

        if request.op == "get_state":
            return ControlResponse(u=request.u, state=self.agent.state().to_dict())

        if request.topology is None:
            return ControlResponse(
                u=request.u,
                error=ControlError(code="BadRequest", message="missing topology"),
            )
        try:
            topology = Topology.from_dict(request.topology)
            ack = await self.agent.apply(topology)
        except (KeyError, TypeError, ValueError) as e:
            return ControlResponse(
                u=request.u,
                error=ControlError(
                    code=RejectReason.MALFORMED_TOPOLOGY.value,
                    message=f"cannot decode topology: {e}",
                    current_epoch=self.agent.epoch,
                ),
            )
        except TopologyRejectedError as e:
            return ControlResponse(
                u=request.u,
                error=ControlError(
                    code=e.reason.value,
                    message=e.message,
                    current_epoch=e.current_epoch,
                ),
            )
        return ControlResponse(u=request.u, ack_epoch=ack.epoch)

