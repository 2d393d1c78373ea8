"""
Allocations API

Read-only view of the indexer's allocations with their derived status.
"""

from fastapi import APIRouter, Depends

from indexer_agent.api.deps import get_status_view, require
from indexer_agent.auth.context import RequestContext
from indexer_agent.auth.permissions import Permission
from indexer_agent.config import settings
from indexer_agent.errors import ValidationError
from indexer_agent.network.allocation_status import AllocationStatus
from indexer_agent.network.status_view import NetworkStatusView
from indexer_agent.schemas.schemas import AllocationOut

router = APIRouter(prefix="/api/allocations", tags=["allocations"])


def _parse_status(value: str) -> AllocationStatus:
    for status in AllocationStatus:
        if status.value.lower() == value.lower():
            return status
    allowed = ", ".join(s.value for s in AllocationStatus)
    raise ValidationError(f"Unknown allocation status {value!r}; expected one of {allowed}")


@router.get("", response_model=list[AllocationOut])
async def list_allocations(
    status: str | None = None,
    allocation: str | None = None,
    deployment: str | None = None,
    ctx: RequestContext = Depends(require(Permission.ALLOCATIONS_READ)),
    status_view: NetworkStatusView = Depends(get_status_view),
):
    """Filter by derived status, allocation id and/or deployment id."""
    wanted = _parse_status(status) if status else None
    epoch = await status_view.get_epoch()
    allocations = await status_view.get_allocations()

    items = []
    for a in allocations:
        if allocation and a.id.lower() != allocation.lower():
            continue
        if deployment and a.deployment_id != deployment:
            continue
        if wanted and a.status(epoch, settings.dispute_epochs) != wanted:
            continue
        items.append(AllocationOut(**a.to_dict(epoch, settings.dispute_epochs)))
    return items
