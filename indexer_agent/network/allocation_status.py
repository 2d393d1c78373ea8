"""
Read-only views of on-chain state.

The network does not transmit an allocation's lifecycle status; it is derived
here from the indexer address, the allocated tokens, the closing epoch and the
dispute window.
"""

from dataclasses import dataclass, field
from enum import Enum

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class AllocationStatus(str, Enum):
    NULL = "Null"
    ACTIVE = "Active"
    CLOSED = "Closed"
    FINALIZED = "Finalized"
    CLAIMED = "Claimed"


def derive_allocation_status(
    indexer: str,
    allocated_tokens: int,
    closed_at_epoch: int,
    current_epoch: int,
    dispute_epochs: int,
) -> AllocationStatus:
    """
    Null      indexer is the zero address
    Claimed   tokens fully withdrawn
    Active    tokens > 0 and not closed
    Closed    closed, dispute window still open
    Finalized closed and the dispute window has elapsed
    """
    if indexer.lower() == ZERO_ADDRESS:
        return AllocationStatus.NULL
    if allocated_tokens == 0:
        return AllocationStatus.CLAIMED
    if not closed_at_epoch:
        return AllocationStatus.ACTIVE
    if current_epoch < closed_at_epoch + dispute_epochs:
        return AllocationStatus.CLOSED
    return AllocationStatus.FINALIZED


@dataclass(frozen=True)
class AllocationSnapshot:
    id: str
    indexer: str
    deployment_id: str
    allocated_tokens: int
    created_at_epoch: int
    closed_at_epoch: int = 0
    indexing_rewards: int = 0
    query_fees_collected: int = 0
    pending_query_fees: int = 0
    signalled_tokens: int = 0
    staked_tokens: int = 0

    def status(self, current_epoch: int, dispute_epochs: int) -> AllocationStatus:
        return derive_allocation_status(
            self.indexer, self.allocated_tokens, self.closed_at_epoch, current_epoch, dispute_epochs,
        )

    def age_in_epochs(self, current_epoch: int) -> int:
        return max(current_epoch - self.created_at_epoch, 0)

    def to_dict(self, current_epoch: int, dispute_epochs: int) -> dict:
        return {
            "id": self.id,
            "indexer": self.indexer,
            "deployment_id": self.deployment_id,
            "allocated_tokens": str(self.allocated_tokens),
            "created_at_epoch": self.created_at_epoch,
            "closed_at_epoch": self.closed_at_epoch or None,
            "age_in_epochs": self.age_in_epochs(current_epoch),
            "indexing_rewards": str(self.indexing_rewards),
            "query_fees_collected": str(self.query_fees_collected),
            "signalled_tokens": str(self.signalled_tokens),
            "staked_tokens": str(self.staked_tokens),
            "status": self.status(current_epoch, dispute_epochs).value,
        }


@dataclass(frozen=True)
class DeploymentSnapshot:
    id: str
    signalled_tokens: int = 0
    staked_tokens: int = 0
    average_query_fees: int = 0
    # Subgraph ids and group names, in declared order
    groups: tuple[str, ...] = field(default_factory=tuple)
    supported: bool = True


@dataclass(frozen=True)
class IndexerStake:
    total: int
    allocated: int

    @property
    def available(self) -> int:
        return max(self.total - self.allocated, 0)


@dataclass
class NetworkSnapshot:
    """Everything one decision or executor cycle reads from the network."""

    epoch: int
    allocations: list[AllocationSnapshot]
    deployments: list[DeploymentSnapshot] = field(default_factory=list)
    stake: IndexerStake | None = None

    def active_allocations(self, dispute_epochs: int) -> list[AllocationSnapshot]:
        return [
            a for a in self.allocations
            if a.status(self.epoch, dispute_epochs) == AllocationStatus.ACTIVE
        ]
