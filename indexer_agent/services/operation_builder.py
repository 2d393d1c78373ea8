"""
Allocation Operation Builder

Translates one queued action into one operation request for the transaction
collaborator. Pure apart from validation: nothing here touches the database
or the network. Validation failures raise OperationBuildError, which the
executor records as the action's failure reason.

Soft checks (zero signal, already allocated, missing proof) are skipped when
the action is forced; hard checks (unknown deployment, inactive allocation,
malformed proof, amount below the network minimum) are not.
"""

from dataclasses import dataclass, field

from indexer_agent.config import Settings
from indexer_agent.errors import OperationBuildError
from indexer_agent.models import Action, ActionType
from indexer_agent.network.allocation_status import (
    AllocationSnapshot,
    AllocationStatus,
    DeploymentSnapshot,
    NetworkSnapshot,
)
from indexer_agent.network.identifiers import ZERO_PROOF, derive_allocation_id, is_proof


@dataclass(frozen=True)
class CreateAllocation:
    action_id: int
    deployment_id: str
    amount: int
    allocation_id: str

    def to_payload(self) -> dict:
        return {
            "kind": "create",
            "action_id": self.action_id,
            "deployment_id": self.deployment_id,
            "amount": str(self.amount),
            "allocation_id": self.allocation_id,
        }


@dataclass(frozen=True)
class CloseAllocation:
    action_id: int
    allocation_id: str
    deployment_id: str
    proof: str
    force: bool = False
    receipts_worth_collecting: bool = False

    def to_payload(self) -> dict:
        return {
            "kind": "close",
            "action_id": self.action_id,
            "allocation_id": self.allocation_id,
            "deployment_id": self.deployment_id,
            "proof": self.proof,
            "force": self.force,
        }


@dataclass(frozen=True)
class ReplaceAllocation:
    """Close-then-open on the same deployment, submitted as one unit."""

    action_id: int
    close: CloseAllocation
    create: CreateAllocation

    def to_payload(self) -> dict:
        return {
            "kind": "replace",
            "action_id": self.action_id,
            "close": self.close.to_payload(),
            "create": self.create.to_payload(),
        }


AllocationOperation = CreateAllocation | CloseAllocation | ReplaceAllocation


@dataclass
class BuildContext:
    epoch: int
    indexer_address: str
    dispute_epochs: int
    allocations: dict[str, AllocationSnapshot] = field(default_factory=dict)
    deployments: dict[str, DeploymentSnapshot] = field(default_factory=dict)
    minimum_allocation_amount: int = 0
    receipt_collection_threshold: int = 0

    @classmethod
    def from_snapshot(cls, snapshot: NetworkSnapshot, settings: Settings) -> "BuildContext":
        return cls(
            epoch=snapshot.epoch,
            indexer_address=settings.indexer_address,
            dispute_epochs=settings.dispute_epochs,
            allocations={a.id: a for a in snapshot.allocations},
            deployments={d.id: d for d in snapshot.deployments},
            minimum_allocation_amount=settings.minimum_allocation_amount,
            receipt_collection_threshold=settings.receipt_collection_threshold,
        )

    def is_active(self, allocation: AllocationSnapshot) -> bool:
        return allocation.status(self.epoch, self.dispute_epochs) == AllocationStatus.ACTIVE


def _parse_amount(action: Action, ctx: BuildContext) -> int:
    try:
        amount = int(action.amount or "")
    except ValueError:
        raise OperationBuildError(f"Invalid allocation amount {action.amount!r}")
    if amount <= 0:
        raise OperationBuildError("Allocation amount must be positive")
    if amount < ctx.minimum_allocation_amount:
        raise OperationBuildError(
            f"Allocation amount {amount} is below the network minimum {ctx.minimum_allocation_amount}"
        )
    return amount


def _create_operation(action: Action, deployment_id: str, ctx: BuildContext, replacing: str | None = None) -> CreateAllocation:
    deployment = ctx.deployments.get(deployment_id)
    if deployment is None:
        raise OperationBuildError(f"Unknown deployment {deployment_id}")

    amount = _parse_amount(action, ctx)

    if not action.force:
        if deployment.signalled_tokens <= 0:
            raise OperationBuildError(
                f"Deployment {deployment_id} has no signal; use force to allocate anyway"
            )
        existing = [
            a.id for a in ctx.allocations.values()
            if a.deployment_id == deployment_id and a.id != replacing and ctx.is_active(a)
        ]
        if existing:
            raise OperationBuildError(
                f"Deployment {deployment_id} already has an active allocation ({existing[0]}); "
                "use force to allocate in parallel"
            )

    return CreateAllocation(
        action_id=action.id,
        deployment_id=deployment_id,
        amount=amount,
        allocation_id=derive_allocation_id(ctx.indexer_address, deployment_id, ctx.epoch, action.id),
    )


def _close_operation(action: Action, ctx: BuildContext) -> CloseAllocation:
    allocation = ctx.allocations.get(action.allocation_id or "")
    if allocation is None:
        raise OperationBuildError(f"Unknown allocation {action.allocation_id}")
    status = allocation.status(ctx.epoch, ctx.dispute_epochs)
    if status != AllocationStatus.ACTIVE:
        raise OperationBuildError(
            f"Allocation {allocation.id} is not active (status: {status.value})"
        )

    if action.proof:
        if not is_proof(action.proof):
            raise OperationBuildError(f"Malformed proof {action.proof!r}: expected 32 bytes of hex")
        proof = action.proof
    elif action.force:
        proof = ZERO_PROOF
    else:
        raise OperationBuildError(
            f"A proof is required to close allocation {allocation.id}; use force to close with a zero proof"
        )

    # Surfaced on the result, not a gate
    worth_collecting = (
        allocation.pending_query_fees > 0
        and allocation.pending_query_fees >= ctx.receipt_collection_threshold
    )

    return CloseAllocation(
        action_id=action.id,
        allocation_id=allocation.id,
        deployment_id=allocation.deployment_id,
        proof=proof,
        force=action.force,
        receipts_worth_collecting=worth_collecting,
    )


def _build_allocate(action: Action, ctx: BuildContext) -> AllocationOperation:
    if not action.deployment_id:
        raise OperationBuildError("Allocate action has no deployment")
    return _create_operation(action, action.deployment_id, ctx)


def _build_unallocate(action: Action, ctx: BuildContext) -> AllocationOperation:
    return _close_operation(action, ctx)


def _build_reallocate(action: Action, ctx: BuildContext) -> AllocationOperation:
    close = _close_operation(action, ctx)
    create = _create_operation(action, close.deployment_id, ctx, replacing=close.allocation_id)
    return ReplaceAllocation(action_id=action.id, close=close, create=create)


_BUILDERS = {
    ActionType.ALLOCATE: _build_allocate,
    ActionType.UNALLOCATE: _build_unallocate,
    ActionType.REALLOCATE: _build_reallocate,
}

_unhandled = set(ActionType) - set(_BUILDERS)
if _unhandled:
    raise RuntimeError(f"No operation builder for action types: {sorted(t.value for t in _unhandled)}")


def build_operation(action: Action, ctx: BuildContext) -> AllocationOperation:
    """Build the operation for a single action. Raises OperationBuildError."""
    try:
        action_type = ActionType(action.type)
    except ValueError:
        raise OperationBuildError(f"Unsupported action type {action.type!r}")
    return _BUILDERS[action_type](action, ctx)
