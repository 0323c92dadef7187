"""
Conversion between domain dataclasses and JSON-ready payloads.

Writing goes through ``payload_from_dataclass``, driven by field metadata.
Reading goes through the ``read_*`` helpers, which raise ``ValueError`` with
the offending field name so that a bad frame from a node agent or registry
is reported precisely.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import fields, is_dataclass
from enum import Enum
from typing import TypeAlias, TypeVar

from clusterform.datastructures.type_aliases import JsonDict, JsonValue

# encode None as [] instead of dropping the field
PAYLOAD_LIST = "payload_list"
# keep the field even when it is empty
PAYLOAD_KEEP_EMPTY = "payload_keep_empty"

Payload: TypeAlias = JsonDict
PayloadMapping: TypeAlias = Mapping[str, JsonValue]


def payload_to_dict(value: object) -> JsonValue:
    match value:
        case None | bool() | int() | float() | str():
            return value
        case Enum():
            return payload_to_dict(value.value)
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    if is_dataclass(value):
        return payload_from_dataclass(value)
    if isinstance(value, Mapping):
        return {str(key): payload_to_dict(item) for key, item in value.items()}
    if isinstance(value, set | frozenset):
        return [payload_to_dict(item) for item in sorted(value)]
    if isinstance(value, list | tuple):
        return [payload_to_dict(item) for item in value]
    raise TypeError(f"Unsupported payload value: {type(value).__name__}")


def payload_from_dataclass(instance: object) -> Payload:
    """Convert a dataclass to a JSON-ready dict, dropping empty fields."""
    if not is_dataclass(instance):
        raise TypeError(f"Expected dataclass instance, got {type(instance).__name__}")
    payload: Payload = {}
    for field in fields(instance):
        value = getattr(instance, field.name)
        keep_empty = field.metadata.get(PAYLOAD_KEEP_EMPTY, False)
        if value is None:
            if keep_empty:
                payload[field.name] = [] if field.metadata.get(PAYLOAD_LIST) else None
            continue
        empty = value == "" or (
            isinstance(value, Sequence | Mapping | set | frozenset) and not value
        )
        if empty and not keep_empty:
            continue
        payload[field.name] = payload_to_dict(value)
    return payload


def read_str(payload: PayloadMapping, key: str, default: str | None = None) -> str:
    value = payload.get(key, default)
    if not isinstance(value, str) or not value:
        raise ValueError(f"field {key!r} must be a non-empty string, got {value!r}")
    return value


def read_int(payload: PayloadMapping, key: str, default: int | None = None) -> int:
    value = payload.get(key)
    if value is None:
        if default is None:
            raise ValueError(f"field {key!r} is required")
        return default
    # bool is an int subclass; a stray true/false is never a valid count
    if isinstance(value, bool) or not isinstance(value, int | float) or value != int(value):
        raise ValueError(f"field {key!r} must be an integer, got {value!r}")
    return int(value)


T = TypeVar("T")


def read_list(
    payload: PayloadMapping, key: str, convert: Callable[[JsonValue], T]
) -> tuple[T, ...]:
    value = payload.get(key)
    if value is None:
        return ()
    if not isinstance(value, list | tuple):
        raise ValueError(f"field {key!r} must be a list, got {type(value).__name__}")
    return tuple(convert(item) for item in value)


def read_mapping(payload: PayloadMapping, key: str) -> PayloadMapping:
    value = payload.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValueError(f"field {key!r} must be an object, got {type(value).__name__}")
    return value
