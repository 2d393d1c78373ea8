"""
Actions API

Queue, inspect, edit, approve, cancel, delete and execute actions. Status
transitions other than approve/cancel belong to the executor.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from indexer_agent.api.deps import get_db, get_executor, require
from indexer_agent.auth.context import RequestContext
from indexer_agent.auth.permissions import Permission
from indexer_agent.models import ActionStatus
from indexer_agent.schemas.schemas import (
    ActionIdsRequest,
    ActionOut,
    ActionUpdate,
    DeleteResponse,
    ExecutionResponse,
    QueueActionsRequest,
    SkippedAction,
    TransitionResponse,
)
from indexer_agent.services.action_executor import ActionExecutor
from indexer_agent.services.action_queue import ActionFilter, ActionQueue, TransitionReport
from indexer_agent.services.audit_service import AuditService

router = APIRouter(prefix="/api/actions", tags=["actions"])


def _transition_response(report: TransitionReport) -> TransitionResponse:
    return TransitionResponse(
        transitioned=[ActionOut(**a.to_dict()) for a in report.transitioned],
        skipped=[SkippedAction(**s) for s in report.skipped],
    )


# ── GET /api/actions ─────────────────────────────────────────────────────────

@router.get("", response_model=list[ActionOut])
async def list_actions(
    type: str | None = None,
    status: str | None = None,
    source: str | None = None,
    reason: str | None = None,
    order_by: str = "id",
    order_direction: str = "desc",
    ctx: RequestContext = Depends(require(Permission.ACTIONS_READ)),
    db: AsyncSession = Depends(get_db),
):
    """Filter on type/status/source/reason; newest first unless ordered otherwise."""
    actions = await ActionQueue(db).list_actions(
        ActionFilter(type=type, status=status, source=source, reason=reason),
        order_by=order_by,
        order_direction=order_direction,
    )
    return [ActionOut(**a.to_dict()) for a in actions]


# ── GET /api/actions/{action_id} ─────────────────────────────────────────────

@router.get("/{action_id}", response_model=ActionOut)
async def get_action(
    action_id: int,
    ctx: RequestContext = Depends(require(Permission.ACTIONS_READ)),
    db: AsyncSession = Depends(get_db),
):
    action = await ActionQueue(db).get(action_id)
    return ActionOut(**action.to_dict())


# ── POST /api/actions ────────────────────────────────────────────────

@router.post("", response_model=list[ActionOut], status_code=201)
async def queue_actions(
    body: QueueActionsRequest,
    ctx: RequestContext = Depends(require(Permission.ACTIONS_QUEUE)),
    db: AsyncSession = Depends(get_db),
):
    """
    Queue one or more actions, all or nothing. Queuing with
    status=approved requires the approve permission as well.
    """
    if any(a.status == ActionStatus.APPROVED for a in body.actions):
        ctx.require_permission(Permission.ACTIONS_APPROVE)

    inputs = [a if a.source else a.model_copy(update={"source": ctx.actor}) for a in body.actions]
    actions = await ActionQueue(db).enqueue_many(inputs, approve=ctx.has_permission(Permission.ACTIONS_APPROVE))
    await AuditService(db).log_actions_changed("actions_queued", [a.id for a in actions], ctx.actor)
    return [ActionOut(**a.to_dict()) for a in actions]


# ── PATCH /api/actions/{action_id} ───────────────────────────────────────────

@router.patch("/{action_id}", response_model=ActionOut)
async def update_action(
    action_id: int,
    body: ActionUpdate,
    ctx: RequestContext = Depends(require(Permission.ACTIONS_QUEUE)),
    db: AsyncSession = Depends(get_db),
):
    """Edit a queued or approved action. Only provided fields change."""
    action = await ActionQueue(db).update(action_id, body)
    await AuditService(db).log_actions_changed("actions_updated", [action.id], ctx.actor)
    return ActionOut(**action.to_dict())


# ── POST /api/actions/approve ────────────────────────────────────────────────

@router.post("/approve", response_model=TransitionResponse)
async def approve_actions(
    body: ActionIdsRequest,
    ctx: RequestContext = Depends(require(Permission.ACTIONS_APPROVE)),
    db: AsyncSession = Depends(get_db),
):
    report = await ActionQueue(db).approve(body.ids)
    if report.transitioned:
        await AuditService(db).log_actions_changed(
            "actions_approved", [a.id for a in report.transitioned], ctx.actor,
        )
    return _transition_response(report)


# ── POST /api/actions/cancel ─────────────────────────────────────────────────

@router.post("/cancel", response_model=TransitionResponse)
async def cancel_actions(
    body: ActionIdsRequest,
    ctx: RequestContext = Depends(require(Permission.ACTIONS_QUEUE)),
    db: AsyncSession = Depends(get_db),
):
    report = await ActionQueue(db).cancel(body.ids)
    if report.transitioned:
        await AuditService(db).log_actions_changed(
            "actions_canceled", [a.id for a in report.transitioned], ctx.actor,
        )
    return _transition_response(report)


# ── POST /api/actions/delete ─────────────────────────────────────────────────

@router.post("/delete", response_model=DeleteResponse)
async def delete_actions(
    body: ActionIdsRequest,
    ctx: RequestContext = Depends(require(Permission.ACTIONS_DELETE)),
    db: AsyncSession = Depends(get_db),
):
    """Permanently remove actions; rejected outright if any of them is pending."""
    deleted = await ActionQueue(db).delete(body.ids)
    await AuditService(db).log_actions_changed("actions_deleted", body.ids, ctx.actor)
    return DeleteResponse(deleted=deleted)


# ── POST /api/actions/execute ────────────────────────────────────────────────

@router.post("/execute", response_model=ExecutionResponse)
async def execute_approved_actions(
    ctx: RequestContext = Depends(require(Permission.ACTIONS_EXECUTE)),
    db: AsyncSession = Depends(get_db),
    executor: ActionExecutor = Depends(get_executor),
):
    """
    Run an executor cycle now, regardless of the minimum batch size, and
    return each executed action with its outcome.
    """
    results = await executor.execute_approved()
    if results:
        await AuditService(db).log_actions_changed("actions_executed", [a.id for a in results], ctx.actor)
    return ExecutionResponse(results=[ActionOut(**a.to_dict()) for a in results])
