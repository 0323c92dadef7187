"""
Semantic type aliases for clusterform.

Raw ints and strings travel through every layer of the orchestrator (slot
numbers, epochs, node ids); naming them keeps signatures readable.
"""

from collections.abc import Mapping
from typing import Any, TypeAlias

# Time and timestamp types
Timestamp: TypeAlias = float
DurationSeconds: TypeAlias = float

# Identity types
NodeId: TypeAlias = str
RunId: TypeAlias = str
RequestId: TypeAlias = str
NodeAddress: TypeAlias = str  # host:port or ws:// URL of a node's control endpoint
FailureDomain: TypeAlias = str  # rack, zone, host...

# Topology types
SlotNumber: TypeAlias = int
SlotCount: TypeAlias = int
Epoch: TypeAlias = int

# Status and error types
ErrorCode: TypeAlias = str
ErrorMessage: TypeAlias = str

# Serialization types
JsonDict: TypeAlias = dict[str, Any]
JsonValue: TypeAlias = Any
JsonMapping: TypeAlias = Mapping[str, Any]
