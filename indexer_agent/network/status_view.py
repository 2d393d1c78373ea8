"""
Network Status View — read-only access to the indexer's on-chain state.

The view is never cached authoritatively: every decision and executor cycle
fetches a fresh snapshot. Any failure to reach the network is reported as a
TransientNetworkError so callers can defer instead of crashing.
"""

import asyncio
import logging
from abc import ABC, abstractmethod

import httpx

from indexer_agent.errors import TransientNetworkError
from indexer_agent.network.allocation_status import (
    AllocationSnapshot,
    DeploymentSnapshot,
    IndexerStake,
    NetworkSnapshot,
)

logger = logging.getLogger(__name__)


class NetworkStatusView(ABC):
    """Abstract collaborator exposing allocations, epoch and network parameters."""

    @abstractmethod
    async def get_allocations(self) -> list[AllocationSnapshot]:
        """All allocations opened by this indexer, in any state."""

    @abstractmethod
    async def get_epoch(self) -> int:
        """Current network epoch."""

    @abstractmethod
    async def get_deployments(self) -> list[DeploymentSnapshot]:
        """Candidate deployments with their signal, stake and fees."""

    @abstractmethod
    async def get_indexer_stake(self) -> IndexerStake:
        """Total and allocated stake of this indexer."""

    async def snapshot(self) -> NetworkSnapshot:
        epoch, allocations, deployments, stake = await asyncio.gather(
            self.get_epoch(),
            self.get_allocations(),
            self.get_deployments(),
            self.get_indexer_stake(),
        )
        return NetworkSnapshot(
            epoch=epoch, allocations=allocations, deployments=deployments, stake=stake,
        )


_ALLOCATIONS_QUERY = """
query allocations($indexer: String!) {
  allocations(where: { indexer: $indexer }, first: 1000, orderBy: createdAtBlockNumber) {
    id
    indexer { id }
    allocatedTokens
    createdAtEpoch
    closedAtEpoch
    indexingRewards
    queryFeesCollected
    subgraphDeployment { ipfsHash signalledTokens stakedTokens }
  }
}
"""

_EPOCH_QUERY = """
query epoch {
  graphNetwork(id: "1") { currentEpoch }
}
"""

_DEPLOYMENTS_QUERY = """
query deployments {
  subgraphDeployments(first: 1000, where: { deniedAt: 0 }) {
    ipfsHash
    signalledTokens
    stakedTokens
    queryFeesAmount
    versions { subgraph { id } }
  }
}
"""

_INDEXER_QUERY = """
query indexer($indexer: String!) {
  indexer(id: $indexer) { stakedTokens allocatedTokens }
}
"""


class HttpNetworkStatusView(NetworkStatusView):
    """
    Queries a network subgraph over GraphQL. Uncollected query-fee receipts
    live with the indexer service, not on chain; when `receipts_url` is set
    their value per allocation is fetched from there.
    """

    def __init__(
        self,
        url: str,
        indexer_address: str,
        timeout: float = 30.0,
        receipts_url: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url
        self.indexer_address = indexer_address.lower()
        self.timeout = timeout
        self.receipts_url = receipts_url
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    async def _query(self, query: str, variables: dict | None = None) -> dict:
        try:
            async with self._client() as client:
                resp = await client.post(self.url, json={"query": query, "variables": variables or {}})
                resp.raise_for_status()
                body = resp.json()
        except httpx.TimeoutException as exc:
            raise TransientNetworkError(f"Network subgraph timed out: {exc}") from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise TransientNetworkError(f"Network subgraph unreachable: {exc}") from exc

        if body.get("errors"):
            raise TransientNetworkError(f"Network subgraph returned errors: {body['errors']}")
        return body.get("data") or {}

    async def get_allocations(self) -> list[AllocationSnapshot]:
        data, pending_fees = await asyncio.gather(
            self._query(_ALLOCATIONS_QUERY, {"indexer": self.indexer_address}),
            self.get_pending_query_fees(),
        )
        allocations = []
        for row in data.get("allocations", []):
            deployment = row.get("subgraphDeployment") or {}
            allocations.append(AllocationSnapshot(
                id=row["id"],
                indexer=(row.get("indexer") or {}).get("id", ""),
                deployment_id=deployment.get("ipfsHash", ""),
                allocated_tokens=int(row.get("allocatedTokens") or 0),
                created_at_epoch=int(row.get("createdAtEpoch") or 0),
                closed_at_epoch=int(row.get("closedAtEpoch") or 0),
                indexing_rewards=int(row.get("indexingRewards") or 0),
                query_fees_collected=int(row.get("queryFeesCollected") or 0),
                pending_query_fees=pending_fees.get(row["id"].lower(), 0),
                signalled_tokens=int(deployment.get("signalledTokens") or 0),
                staked_tokens=int(deployment.get("stakedTokens") or 0),
            ))
        return allocations

    async def get_pending_query_fees(self) -> dict[str, int]:
        """Uncollected receipt value per allocation id. Informational, so an outage reads as zero."""
        if not self.receipts_url:
            return {}
        try:
            async with self._client() as client:
                resp = await client.get(self.receipts_url, params={"indexer": self.indexer_address})
                resp.raise_for_status()
                body = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Uncollected receipts unavailable, reading them as zero: %s", exc)
            return {}
        return {
            row["allocation"].lower(): int(row.get("fees") or 0)
            for row in body.get("allocations", [])
        }

    async def get_epoch(self) -> int:
        data = await self._query(_EPOCH_QUERY)
        network = data.get("graphNetwork")
        if not network:
            raise TransientNetworkError("Network subgraph returned no epoch")
        return int(network["currentEpoch"])

    async def get_deployments(self) -> list[DeploymentSnapshot]:
        data = await self._query(_DEPLOYMENTS_QUERY)
        deployments = []
        for row in data.get("subgraphDeployments", []):
            subgraphs = []
            for version in row.get("versions") or []:
                subgraph_id = (version.get("subgraph") or {}).get("id")
                if subgraph_id and subgraph_id not in subgraphs:
                    subgraphs.append(subgraph_id)
            deployments.append(DeploymentSnapshot(
                id=row["ipfsHash"],
                signalled_tokens=int(row.get("signalledTokens") or 0),
                staked_tokens=int(row.get("stakedTokens") or 0),
                average_query_fees=int(row.get("queryFeesAmount") or 0),
                groups=tuple(subgraphs),
            ))
        return deployments

    async def get_indexer_stake(self) -> IndexerStake:
        data = await self._query(_INDEXER_QUERY, {"indexer": self.indexer_address})
        indexer = data.get("indexer") or {}
        return IndexerStake(
            total=int(indexer.get("stakedTokens") or 0),
            allocated=int(indexer.get("allocatedTokens") or 0),
        )

    async def ping(self) -> bool:
        try:
            await self.get_epoch()
        except TransientNetworkError as exc:
            logger.debug("Network subgraph ping failed: %s", exc)
            return False
        return True
