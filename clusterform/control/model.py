from typing import Any, Literal

from pydantic import BaseModel, Field


class ControlRequest(BaseModel):
    """
    A request sent from the orchestrator to a node's control endpoint.
    """

    role: Literal["control"] = "control"
    op: Literal["get_state", "apply_topology"] = Field(
        description="Control operation to perform."
    )
    u: str = Field(description="A unique identifier for this request.")
    topology: dict[str, Any] | None = Field(
        default=None, description="Topology payload for apply_topology."
    )


class ControlError(BaseModel):
    """Structured rejection or failure reported by a node."""

    code: str = Field(
        description="StaleEpoch, MalformedTopology or BadRequest."
    )
    message: str = Field(description="A human-readable error message.")
    current_epoch: int | None = Field(
        default=None, description="Epoch the node had applied when it answered."
    )


class ControlResponse(BaseModel):
    """
    A node's answer to a ControlRequest.
    """

    u: str = Field(
        description="The unique identifier of the request this is responding to."
    )
    state: dict[str, Any] | None = Field(
        default=None, description="NodeState payload for get_state."
    )
    ack_epoch: int | None = Field(
        default=None, description="Epoch acknowledged by apply_topology."
    )
    error: ControlError | None = Field(
        default=None, description="Set when the request was not honoured."
    )
