from __future__ import annotations

from loguru import logger

from clusterform.core.errors import DiscoveryUnavailableError, RegistryError
from clusterform.core.retry import RetryPolicy
from clusterform.topology.types import Node

from .registry import CandidateRecord, Registry


class DiscoveryClient:
    """Reads the candidate set from a registry.

    A listing either succeeds completely or the whole run is abandoned; a
    partial membership view could form an incomplete cluster.
    """

    def __init__(self, registry: Registry, retry_policy: RetryPolicy | None = None) -> None:
        self.registry = registry
        self.retry_policy = retry_policy or RetryPolicy()

    async def list_candidates(self) -> list[Node]:
        """All registered nodes, sorted by id, not filtered by health.

        Raises:
            DiscoveryUnavailableError: when the registry stays unreadable
                after the retry policy is exhausted.
        """
        try:
            records = await self.retry_policy.run(
                self.registry.list_candidates,
                retry_on=(RegistryError,),
                description=f"registry listing ({self.registry.name})",
            )
        except RegistryError as e:
            raise DiscoveryUnavailableError(
                f"registry {self.registry.name} unavailable: {e.message}"
            ) from e

        by_id: dict[str, CandidateRecord] = {}
        for record in records:
            if record.node_id in by_id and by_id[record.node_id] != record:
                logger.warning(
                    "Registry lists {} twice ({} and {}); using the latter",
                    record.node_id,
                    by_id[record.node_id].address,
                    record.address,
                )
            by_id[record.node_id] = record

        nodes = [by_id[node_id].to_node() for node_id in sorted(by_id)]
        logger.info("Discovered {} candidate node(s)", len(nodes))
        return nodes
