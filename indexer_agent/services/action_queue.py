"""
Action Queue

Durable state machine for queued operations:

    queued → approved → pending → success | failed
    queued | approved → canceled

At most one action per target may be in flight (queued, approved or
pending). A target is the action's allocation id when it has one, otherwise
its deployment id; an in-flight action sharing either identifier conflicts.
The unique `in_flight_target` column backs the same rule across processes.

`claim` and the `record_*` methods belong to the executor; every other
mutation only touches queued, approved and terminal transitions.
"""

import logging
from dataclasses import dataclass, field

from sqlalchemy import asc, desc, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from indexer_agent.database import utcnow
from indexer_agent.errors import ConflictError, NotFoundError, ValidationError
from indexer_agent.models import Action, ActionStatus, ActionType
from indexer_agent.models.action import IN_FLIGHT_STATUSES
from indexer_agent.network.identifiers import is_allocation_id, is_deployment_id, is_proof
from indexer_agent.schemas.schemas import ActionInput, ActionUpdate

logger = logging.getLogger(__name__)

_IN_FLIGHT = [s.value for s in IN_FLIGHT_STATUSES]

# Valid status transitions
VALID_TRANSITIONS: dict[str, set[str]] = {
    ActionStatus.QUEUED.value: {ActionStatus.APPROVED.value, ActionStatus.CANCELED.value},
    ActionStatus.APPROVED.value: {ActionStatus.PENDING.value, ActionStatus.CANCELED.value},
    ActionStatus.PENDING.value: {ActionStatus.SUCCESS.value, ActionStatus.FAILED.value},
    ActionStatus.SUCCESS.value: set(),   # terminal
    ActionStatus.FAILED.value: set(),    # terminal
    ActionStatus.CANCELED.value: set(),  # terminal
}

ORDERABLE_FIELDS = {
    "id", "status", "type", "deployment_id", "allocation_id", "transaction_ref",
    "amount", "proof", "force", "source", "reason", "priority", "created_at", "updated_at",
}

POLICY_ENGINE_SOURCE = "policy-engine"

# Columns an update may change but never clear
NON_NULLABLE_UPDATES = ("type", "force", "priority", "reason")


@dataclass
class ActionFilter:
    type: str | None = None
    status: str | None = None
    source: str | None = None
    reason: str | None = None


@dataclass
class TransitionReport:
    """Which ids moved, and why the others did not."""
    transitioned: list[Action] = field(default_factory=list)
    skipped: list[dict] = field(default_factory=list)

    def skip(self, action_id: int, status: str | None, reason: str) -> None:
        self.skipped.append({"id": action_id, "status": status, "reason": reason})


def _normalize_amount(value) -> str | None:
    if value is None or value == "":
        return None
    try:
        amount = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"amount must be an integer token amount, got {value!r}")
    if amount <= 0:
        raise ValidationError("amount must be positive")
    return str(amount)


def validate_action_fields(
    action_type: ActionType,
    deployment_id: str | None,
    allocation_id: str | None,
    amount: str | None,
    proof: str | None,
) -> None:
    """Required fields per type, plus identifier formats."""
    if action_type == ActionType.ALLOCATE:
        if not deployment_id:
            raise ValidationError("allocate actions require deployment_id")
        if amount is None:
            raise ValidationError("allocate actions require amount")
    elif action_type == ActionType.UNALLOCATE:
        if not allocation_id:
            raise ValidationError("unallocate actions require allocation_id")
    elif action_type == ActionType.REALLOCATE:
        if not allocation_id:
            raise ValidationError("reallocate actions require allocation_id")
        if amount is None:
            raise ValidationError("reallocate actions require amount")

    if deployment_id and not is_deployment_id(deployment_id):
        raise ValidationError(f"Invalid deployment_id {deployment_id!r}")
    if allocation_id and not is_allocation_id(allocation_id):
        raise ValidationError(f"Invalid allocation_id {allocation_id!r}")
    if proof and not is_proof(proof):
        raise ValidationError(f"Invalid proof {proof!r}: expected 32 bytes of hex")


class ActionQueue:
    """Durable queue of actions and their lifecycle transitions."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # ── Invariant ────────────────────────────────────────────────────────

    async def find_in_flight(
        self,
        deployment_id: str | None,
        allocation_id: str | None,
        exclude_id: int | None = None,
    ) -> Action | None:
        """The in-flight action sharing either identifier, if any."""
        matches = []
        if deployment_id:
            matches.append(Action.deployment_id == deployment_id)
        if allocation_id:
            matches.append(Action.allocation_id == allocation_id)
        if not matches:
            return None
        query = select(Action).where(Action.status.in_(_IN_FLIGHT), or_(*matches))
        if exclude_id is not None:
            query = query.where(Action.id != exclude_id)
        result = await self.session.execute(query.order_by(Action.id).limit(1))
        return result.scalar_one_or_none()

    async def _ensure_no_conflict(self, deployment_id, allocation_id, exclude_id=None) -> None:
        existing = await self.find_in_flight(deployment_id, allocation_id, exclude_id)
        if existing is not None:
            raise ConflictError(
                f"Action {existing.id} ({existing.type}, {existing.status}) is already in flight "
                f"for this target",
                action_id=existing.id,
            )

    async def _flush_guarded(self) -> None:
        try:
            await self.session.flush()
        except IntegrityError as exc:
            if "in_flight_target" not in str(exc.orig):
                raise
            raise ConflictError(f"Another action is already in flight for this target: {exc.orig}") from exc

    # ── Enqueue / update ─────────────────────────────────────────────────

    def _build(self, action_input: ActionInput, approve: bool) -> Action:
        action_type = ActionType(action_input.type)
        amount = _normalize_amount(action_input.amount)
        deployment_id = action_input.deployment_id or None
        allocation_id = (action_input.allocation_id or "").lower() or None
        validate_action_fields(action_type, deployment_id, allocation_id, amount, action_input.proof)

        requested = ActionStatus(action_input.status)
        if requested not in (ActionStatus.QUEUED, ActionStatus.APPROVED):
            raise ValidationError(f"Actions cannot be queued with status '{requested.value}'")
        if requested == ActionStatus.APPROVED and not approve:
            raise ValidationError("Only privileged callers may queue pre-approved actions")

        now = utcnow()
        action = Action(
            status=requested.value,
            type=action_type.value,
            deployment_id=deployment_id,
            allocation_id=allocation_id,
            amount=amount,
            proof=action_input.proof,
            force=action_input.force,
            priority=action_input.priority,
            source=action_input.source or "unknown",
            reason=action_input.reason or "",
            result={},
            pending_cycles=0,
            created_at=now,
            updated_at=now,
        )
        action.in_flight_target = action.target
        return action

    async def enqueue(self, action_input: ActionInput, approve: bool = False) -> Action:
        """
        Validate, check the in-flight invariant and store a new action.

        Raises ValidationError for malformed input and ConflictError when
        another action for the same target is in flight.
        """
        action = self._build(action_input, approve)
        await self._ensure_no_conflict(action.deployment_id, action.allocation_id)
        self.session.add(action)
        await self._flush_guarded()
        logger.info(
            "Queued action %d: %s %s (status=%s, source=%s)",
            action.id, action.type, action.allocation_id or action.deployment_id,
            action.status, action.source,
        )
        return action

    async def enqueue_many(self, inputs: list[ActionInput], approve: bool = False) -> list[Action]:
        """All-or-nothing: every input is validated and conflict-checked before any is stored."""
        actions = [self._build(i, approve) for i in inputs]

        seen_deployments: set[str] = set()
        seen_allocations: set[str] = set()
        for action in actions:
            if (action.deployment_id and action.deployment_id in seen_deployments) or (
                action.allocation_id and action.allocation_id in seen_allocations
            ):
                raise ConflictError(
                    f"Duplicate target in request: {action.allocation_id or action.deployment_id}"
                )
            if action.deployment_id:
                seen_deployments.add(action.deployment_id)
            if action.allocation_id:
                seen_allocations.add(action.allocation_id)
            await self._ensure_no_conflict(action.deployment_id, action.allocation_id)

        self.session.add_all(actions)
        await self._flush_guarded()
        logger.info("Queued %d actions", len(actions))
        return actions

    async def update(self, action_id: int, changes: ActionUpdate) -> Action:
        """Edit a queued or approved action. Status changes go through approve/cancel."""
        action = await self.get(action_id)
        if action.status not in (ActionStatus.QUEUED.value, ActionStatus.APPROVED.value):
            raise ConflictError(
                f"Action {action_id} is {action.status}; only queued or approved actions can be updated",
                action_id=action_id,
            )

        data = changes.model_dump(exclude_unset=True)
        cleared = sorted(name for name in NON_NULLABLE_UPDATES if name in data and data[name] is None)
        if cleared:
            raise ValidationError(f"{', '.join(cleared)} cannot be null", fields=cleared)
        if "amount" in data:
            data["amount"] = _normalize_amount(data["amount"])
        if data.get("allocation_id"):
            data["allocation_id"] = data["allocation_id"].lower()
        if "type" in data:
            data["type"] = ActionType(data["type"]).value

        merged = {
            "type": action.type,
            "deployment_id": action.deployment_id,
            "allocation_id": action.allocation_id,
            "amount": action.amount,
            "proof": action.proof,
        }
        merged.update({k: v for k, v in data.items() if k in merged})
        validate_action_fields(
            ActionType(merged["type"]), merged["deployment_id"], merged["allocation_id"],
            merged["amount"], merged["proof"],
        )
        await self._ensure_no_conflict(merged["deployment_id"], merged["allocation_id"], exclude_id=action.id)

        for name, value in data.items():
            setattr(action, name, value)
        action.in_flight_target = action.target
        action.updated_at = utcnow()
        await self._flush_guarded()
        logger.info("Updated action %d: %s", action.id, sorted(data))
        return action

    # ── Operator transitions ─────────────────────────────────────────────

    async def _load_many(self, ids: list[int]) -> dict[int, Action]:
        result = await self.session.execute(
            select(Action).where(Action.id.in_(ids)).execution_options(populate_existing=True)
        )
        return {a.id: a for a in result.scalars()}

    async def _transition(self, ids: list[int], target: ActionStatus) -> TransitionReport:
        allowed_from = {s for s, targets in VALID_TRANSITIONS.items() if target.value in targets}
        report = TransitionReport()
        actions = await self._load_many(ids)
        now = utcnow()
        for action_id in dict.fromkeys(ids):
            action = actions.get(action_id)
            if action is None:
                report.skip(action_id, None, "not found")
                continue
            if action.status not in allowed_from:
                report.skip(action_id, action.status, f"cannot move from {action.status} to {target.value}")
                continue
            action.status = target.value
            action.updated_at = now
            if action.is_terminal:
                action.in_flight_target = None
            report.transitioned.append(action)
        await self.session.flush()
        logger.info(
            "%s %d action(s), skipped %d",
            target.value.capitalize(), len(report.transitioned), len(report.skipped),
        )
        return report

    async def approve(self, ids: list[int]) -> TransitionReport:
        """queued → approved. Other ids are skipped and reported."""
        return await self._transition(ids, ActionStatus.APPROVED)

    async def cancel(self, ids: list[int]) -> TransitionReport:
        """queued|approved → canceled. Pending and terminal ids are skipped and reported."""
        return await self._transition(ids, ActionStatus.CANCELED)

    async def delete(self, ids: list[int]) -> int:
        """Permanently remove actions. Rejects the whole call if any id is pending."""
        actions = await self._load_many(ids)
        pending = sorted(a.id for a in actions.values() if a.status == ActionStatus.PENDING.value)
        if pending:
            raise ConflictError(
                f"Cannot delete pending actions {pending}: they are being executed",
                action_ids=pending,
            )
        for action in actions.values():
            await self.session.delete(action)
        await self.session.flush()
        logger.info("Deleted %d action(s)", len(actions))
        return len(actions)

    # ── Queries ──────────────────────────────────────────────────────────

    async def get(self, action_id: int) -> Action:
        action = await self.session.get(Action, action_id, populate_existing=True)
        if action is None:
            raise NotFoundError(f"Action {action_id} not found", action_id=action_id)
        return action

    async def load(self, ids: list[int]) -> list[Action]:
        """Fresh copies of the given actions, in the order given; unknown ids are left out."""
        actions = await self._load_many(ids)
        return [actions[i] for i in ids if i in actions]

    async def list_actions(
        self,
        filters: ActionFilter | None = None,
        order_by: str = "id",
        order_direction: str = "desc",
    ) -> list[Action]:
        if order_by not in ORDERABLE_FIELDS:
            raise ValidationError(f"Cannot order actions by {order_by!r}")
        if order_direction not in ("asc", "desc"):
            raise ValidationError("order_direction must be 'asc' or 'desc'")

        query = select(Action)
        filters = filters or ActionFilter()
        if filters.type:
            query = query.where(Action.type == filters.type)
        if filters.status:
            query = query.where(Action.status == filters.status)
        if filters.source:
            query = query.where(Action.source == filters.source)
        if filters.reason:
            query = query.where(Action.reason == filters.reason)

        direction = asc if order_direction == "asc" else desc
        column = getattr(Action, order_by)
        query = query.order_by(direction(column), direction(Action.id))
        result = await self.session.execute(query.execution_options(populate_existing=True))
        return list(result.scalars())

    async def approved_for_execution(self) -> list[Action]:
        """Approved actions in execution order: priority, then age."""
        result = await self.session.execute(
            select(Action)
            .where(Action.status == ActionStatus.APPROVED.value)
            .order_by(Action.priority.asc(), Action.created_at.asc(), Action.id.asc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars())

    async def pending(self) -> list[Action]:
        result = await self.session.execute(
            select(Action)
            .where(Action.status == ActionStatus.PENDING.value)
            .order_by(Action.id.asc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars())

    # ── Executor transitions ─────────────────────────────────────────────

    async def claim(self, ids: list[int]) -> list[int]:
        """
        Atomically move approved actions to pending. Each id is claimed with
        a conditional update, so concurrent claimers get exactly one winner.
        """
        won = []
        for action_id in ids:
            result = await self.session.execute(
                update(Action)
                .where(Action.id == action_id, Action.status == ActionStatus.APPROVED.value)
                .values(status=ActionStatus.PENDING.value, pending_cycles=0, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                won.append(action_id)
        return won

    async def _finish(self, action_id: int, values: dict) -> bool:
        result = await self.session.execute(
            update(Action)
            .where(Action.id == action_id, Action.status == ActionStatus.PENDING.value)
            .values(in_flight_target=None, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def record_success(
        self,
        action_id: int,
        transaction_ref: str | None,
        result: dict | None = None,
        allocation_id: str | None = None,
    ) -> bool:
        values = {
            "status": ActionStatus.SUCCESS.value,
            "transaction_ref": transaction_ref,
            "failure_reason": None,
            "result": result or {},
        }
        if allocation_id:
            values["allocation_id"] = allocation_id
        return await self._finish(action_id, values)

    async def record_failure(self, action_id: int, failure_reason: str, transaction_ref: str | None = None) -> bool:
        values = {
            "status": ActionStatus.FAILED.value,
            "failure_reason": failure_reason[:1000] or "Unknown failure",
        }
        if transaction_ref:
            values["transaction_ref"] = transaction_ref
        return await self._finish(action_id, values)

    async def record_result(self, action_id: int, result: dict) -> None:
        """Replace the computed result of a pending action."""
        await self.session.execute(
            update(Action)
            .where(Action.id == action_id, Action.status == ActionStatus.PENDING.value)
            .values(result=result, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

    async def record_submission(self, action_id: int, transaction_ref: str | None, note: str | None) -> None:
        """Keep the action pending, remembering what was submitted for reconciliation."""
        values = {"updated_at": utcnow()}
        if transaction_ref:
            values["transaction_ref"] = transaction_ref
        if note:
            values["failure_reason"] = note[:1000]
        await self.session.execute(
            update(Action)
            .where(Action.id == action_id, Action.status == ActionStatus.PENDING.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    async def mark_pending_cycle(self, action_id: int) -> int:
        """Count one more unresolved cycle; returns the new count."""
        await self.session.execute(
            update(Action)
            .where(Action.id == action_id, Action.status == ActionStatus.PENDING.value)
            .values(pending_cycles=Action.pending_cycles + 1)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(select(Action.pending_cycles).where(Action.id == action_id))
        return result.scalar() or 0
