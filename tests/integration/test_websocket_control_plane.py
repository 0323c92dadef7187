"""
Integration tests for the WebSocket control plane.

Real ``NodeAgentServer`` endpoints on ephemeral ports, driven through
``WebSocketControlPlane`` and a full orchestration run.
"""

import asyncio
from contextlib import AsyncExitStack

import pytest
from websockets.asyncio.client import connect

from clusterform.control.agent import NodeAgent
from clusterform.control.websocket import (
    NodeAgentServer,
    WebSocketControlPlane,
    new_request_id,
)
from clusterform.core.errors import NodeUnreachableError, TopologyRejectedError
from clusterform.core.serialization import JsonSerializer
from clusterform.discovery.registry import CandidateRecord, InMemoryRegistry
from clusterform.orchestrator.controller import run_orchestration
from clusterform.orchestrator.results import RunState
from clusterform.topology.partitioner import fresh_partition
from clusterform.topology.types import Node, Topology
from tests.conftest import fast_settings

pytestmark = pytest.mark.integration


def topology(epoch: int) -> Topology:
    return Topology.create(
        epoch=epoch, total_slots=64, slot_map=fresh_partition(["a", "b"], 64)
    )


class TestWebSocketControlPlane:
    def test_request_ids_are_unique_ulids(self):
        ids = [new_request_id() for _ in range(50)]

        assert len(set(ids)) == 50
        assert all(len(request_id) == 26 for request_id in ids)

    @pytest.mark.asyncio
    async def test_get_state_and_apply(self):
        async with NodeAgentServer(NodeAgent(node_id="a")) as server:
            node = Node(node_id="a", address=server.address)
            plane = WebSocketControlPlane(open_timeout=2.0)

            state = await plane.get_state(node)
            assert state.node_id == "a"
            assert state.is_empty

            ack = await plane.apply_topology(node, topology(3))
            assert ack.epoch == 3
            assert server.agent.epoch == 3

            state = await plane.get_state(node)
            assert state.epoch == 3
            assert state.topology == topology(3)

    @pytest.mark.asyncio
    async def test_stale_push_rejected_over_the_wire(self):
        agent = NodeAgent(node_id="a")
        await agent.apply(topology(5))
        async with NodeAgentServer(agent) as server:
            plane = WebSocketControlPlane()

            with pytest.raises(TopologyRejectedError) as excinfo:
                await plane.apply_topology(
                    Node(node_id="a", address=server.address), topology(4)
                )

        assert excinfo.value.is_stale
        assert excinfo.value.current_epoch == 5
        assert excinfo.value.node_id == "a"

    @pytest.mark.asyncio
    async def test_closed_endpoint_is_unreachable(self):
        server = NodeAgentServer(NodeAgent(node_id="a"))
        await server.start()
        address = server.address
        await server.stop()

        with pytest.raises(NodeUnreachableError):
            await WebSocketControlPlane(open_timeout=1.0).get_state(
                Node(node_id="a", address=address)
            )

    @pytest.mark.asyncio
    async def test_bad_request_answered_with_error(self):
        serializer = JsonSerializer()
        async with NodeAgentServer(NodeAgent(node_id="a")) as server:
            async with connect(server.address) as websocket:
                await websocket.send(serializer.serialize({"op": "reboot", "u": "x"}))
                response = serializer.deserialize(await websocket.recv())

        assert response["error"]["code"] == "BadRequest"


class TestOrchestrationOverWebSocket:
    @pytest.mark.asyncio
    async def test_bootstrap_and_idempotent_rerun(self):
        async with AsyncExitStack() as stack:
            servers = [
                await stack.enter_async_context(NodeAgentServer(NodeAgent(node_id=n)))
                for n in ("a", "b", "c")
            ]
            registry = InMemoryRegistry(
                CandidateRecord(node_id=server.agent.node_id, address=server.address)
                for server in servers
            )
            plane = WebSocketControlPlane(open_timeout=2.0)
            settings = fast_settings(min_masters=3, converge_timeout=5.0, run_timeout=10.0)

            first = await run_orchestration(settings, registry, plane)
            second = await run_orchestration(settings, registry, plane)

            assert first.state is RunState.SUCCEEDED
            assert first.epoch == 1
            assert [server.agent.epoch for server in servers] == [1, 1, 1]
            assert second.state is RunState.SUCCEEDED
            assert second.epoch == 1
            assert second.pushes == 0
            assert all(server.agent.applied_count == 1 for server in servers)

    @pytest.mark.asyncio
    async def test_dead_node_left_out(self):
        async with AsyncExitStack() as stack:
            servers = [
                await stack.enter_async_context(NodeAgentServer(NodeAgent(node_id=n)))
                for n in ("a", "b")
            ]
            registry = InMemoryRegistry(
                [CandidateRecord(node_id=s.agent.node_id, address=s.address) for s in servers]
                + [CandidateRecord(node_id="ghost", address="ws://127.0.0.1:9")]
            )

            result = await asyncio.wait_for(
                run_orchestration(
                    fast_settings(min_masters=2, probe_timeout=1.0),
                    registry,
                    WebSocketControlPlane(open_timeout=1.0),
                ),
                10.0,
            )

        assert result.state is RunState.SUCCEEDED
        assert result.topology.masters == ("a", "b")
        assert result.errors[0].node_id == "ghost"
