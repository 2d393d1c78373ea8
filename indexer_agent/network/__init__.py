from indexer_agent.network.allocation_status import (
    AllocationSnapshot, AllocationStatus, DeploymentSnapshot, IndexerStake, NetworkSnapshot,
    derive_allocation_status,
)
from indexer_agent.network.status_view import NetworkStatusView, HttpNetworkStatusView

__all__ = [
    "AllocationSnapshot", "AllocationStatus", "DeploymentSnapshot", "IndexerStake",
    "NetworkSnapshot", "derive_allocation_status",
    "NetworkStatusView", "HttpNetworkStatusView",
]
