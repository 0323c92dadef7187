from .agent import NodeAgent
from .memory import InMemoryControlPlane
from .plane import ApplyAck, NodeControlPlane
from .websocket import NodeAgentServer, WebSocketControlPlane

__all__ = [
    "ApplyAck",
    "InMemoryControlPlane",
    "NodeAgent",
    "NodeAgentServer",
    "NodeControlPlane",
    "WebSocketControlPlane",
]
