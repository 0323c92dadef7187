"""
Registry backends for candidate discovery.

A registry is any source of the current membership view: which nodes exist,
where their control endpoint lives and which role they declare. The
orchestrator only reads from it; nodes register themselves through whatever
mechanism the registry provides.

All backends accept the same document shape::

    {"nodes": [{"id": "node-a", "address": "ws://10.0.0.1:7000",
                "role": "unassigned", "failure_domain": "rack-1"}]}
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

import aiofiles
import aiohttp
from loguru import logger

from clusterform.core.errors import RegistryError
from clusterform.datastructures.type_aliases import (
    FailureDomain,
    JsonMapping,
    NodeAddress,
    NodeId,
)
from clusterform.topology.types import Node, NodeRole


@dataclass(frozen=True, slots=True)
class CandidateRecord:
    """One registry entry."""

    node_id: NodeId
    address: NodeAddress
    declared_role: NodeRole = NodeRole.UNASSIGNED
    failure_domain: FailureDomain | None = None

    def to_node(self) -> Node:
        return Node(
            node_id=self.node_id,
            address=self.address,
            declared_role=self.declared_role,
            failure_domain=self.failure_domain,
        )

    @classmethod
    def from_dict(cls, payload: JsonMapping) -> CandidateRecord:
        try:
            node_id = str(payload["id"])
            address = str(payload["address"])
        except KeyError as e:
            raise RegistryError(f"registry entry missing field {e}") from e
        role_value = payload.get("role") or NodeRole.UNASSIGNED.value
        try:
            role = NodeRole(role_value)
        except ValueError as e:
            raise RegistryError(
                f"registry entry {node_id} has unknown role {role_value!r}",
                node_id=node_id,
            ) from e
        failure_domain = payload.get("failure_domain")
        return cls(
            node_id=node_id,
            address=address,
            declared_role=role,
            failure_domain=str(failure_domain) if failure_domain else None,
        )


def parse_registry_document(document: object) -> list[CandidateRecord]:
    if not isinstance(document, dict) or not isinstance(document.get("nodes"), list):
        raise RegistryError("registry document must be an object with a 'nodes' list")
    return [CandidateRecord.from_dict(entry) for entry in document["nodes"]]


class Registry(ABC):
    """Abstract base class for registry backends."""

    name: str = "registry"

    @abstractmethod
    async def list_candidates(self) -> list[CandidateRecord]:
        """Return the full membership view.

        Raises:
            RegistryError: when the registry cannot be read.
        """
        pass


class InMemoryRegistry(Registry):
    """Process-local registry, mutated directly by tests and demos."""

    name = "memory"

    def __init__(self, records: Iterable[CandidateRecord] = ()) -> None:
        self._records: dict[NodeId, CandidateRecord] = {}
        for record in records:
            self.register(record)
        self.available = True

    def register(self, record: CandidateRecord) -> None:
        self._records[record.node_id] = record

    def deregister(self, node_id: NodeId) -> bool:
        return self._records.pop(node_id, None) is not None

    async def list_candidates(self) -> list[CandidateRecord]:
        if not self.available:
            raise RegistryError("in-memory registry marked unavailable")
        return list(self._records.values())


class StaticFileRegistry(Registry):
    """JSON file on disk, re-read on every listing."""

    name = "static_file"

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    async def list_candidates(self) -> list[CandidateRecord]:
        if not self.path.is_file():
            raise RegistryError(f"registry file not found: {self.path}")
        try:
            async with aiofiles.open(self.path) as f:
                content = await f.read()
        except OSError as e:
            raise RegistryError(f"cannot read registry file {self.path}: {e}") from e
        try:
            document = json.loads(content)
        except json.JSONDecodeError as e:
            raise RegistryError(f"registry file {self.path} is not JSON: {e}") from e
        return parse_registry_document(document)


class HttpRegistry(Registry):
    """Registry served over HTTP; ``GET url`` returns the registry document."""

    name = "http"

    def __init__(self, url: str, *, timeout_seconds: float = 5.0) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds

    async def list_candidates(self) -> list[CandidateRecord]:
        try:
            async with (
                aiohttp.ClientSession() as session,
                session.get(
                    self.url,
                    timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
                ) as response,
            ):
                if response.status != 200:
                    raise RegistryError(
                        f"registry {self.url} answered HTTP {response.status}"
                    )
                document = await response.json(content_type=None)
        except (aiohttp.ClientError, TimeoutError) as e:
            logger.warning("HTTP registry {} unreachable: {}", self.url, e)
            raise RegistryError(f"registry {self.url} unreachable: {e}") from e
        return parse_registry_document(document)
