"""orjson encoding for control-plane frames and topology digests."""

from __future__ import annotations

from enum import Enum
from typing import Any

import orjson

WIRE_OPTIONS = orjson.OPT_NON_STR_KEYS
CANONICAL_OPTIONS = orjson.OPT_NON_STR_KEYS | orjson.OPT_SORT_KEYS


def _encode_extra(obj: Any) -> Any:
    # sets come from membership views; sort them so frames are reproducible
    if isinstance(obj, set | frozenset):
        return sorted(obj)
    if isinstance(obj, Enum):
        return obj.value
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    raise TypeError(f"cannot encode {type(obj).__name__}")


class JsonSerializer:
    """Encodes frames sent between the orchestrator and node agents."""

    def serialize(self, data: Any) -> bytes:
        return orjson.dumps(data, default=_encode_extra, option=WIRE_OPTIONS)

    def serialize_canonical(self, data: Any) -> bytes:
        """Key-sorted encoding, identical across processes for equal input."""
        return orjson.dumps(data, default=_encode_extra, option=CANONICAL_OPTIONS)

    def deserialize(self, data: bytes | str) -> Any:
        return orjson.loads(data)
