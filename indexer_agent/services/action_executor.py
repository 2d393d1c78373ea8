"""
Action Executor

Runs the recurring execution cycle:

  1. reconcile actions left pending by earlier cycles against network truth
  2. read approved actions (priority, then age)
  3. defer small batches unless forced or an action is marked force
  4. claim the batch (approved → pending, exclusive per action)
  5. build one operation per action from the rows as claimed, recording
     the allocation id each create is expected to open
  6. submit the batch through the transaction collaborator
  7. record an independent outcome per action

No database transaction is held while the batch is being submitted, so
operators can keep queuing, approving and canceling during a submission.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager

from redis.exceptions import LockError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from indexer_agent.config import Settings, settings as default_settings
from indexer_agent.errors import ExternalOperationError, OperationBuildError, TransientNetworkError
from indexer_agent.middleware.metrics import (
    actions_executed_total,
    executor_batch_size,
    executor_cycle_duration_seconds,
    executor_cycles_total,
    pending_actions,
)
from indexer_agent.models import Action, ActionType
from indexer_agent.network.allocation_status import AllocationStatus, NetworkSnapshot
from indexer_agent.network.status_view import NetworkStatusView
from indexer_agent.network.transactions import OperationOutcome, TransactionSubmitter
from indexer_agent.services.action_queue import ActionQueue
from indexer_agent.services.operation_builder import (
    AllocationOperation,
    BuildContext,
    CloseAllocation,
    CreateAllocation,
    ReplaceAllocation,
    build_operation,
)

logger = logging.getLogger(__name__)


class ExecutorLock:
    """
    Guarantees a single running executor cycle. The in-process lock covers
    concurrent callers in one process; the optional Redis lock covers the
    API and the worker running side by side.
    """

    def __init__(self, redis=None, name: str = "indexer-agent:executor-cycle", timeout: int = 600):
        self._local = asyncio.Lock()
        self.redis = redis
        self.name = name
        self.timeout = timeout

    @asynccontextmanager
    async def hold(self, wait: bool):
        """Yields True while the lock is held, False if it could not be taken."""
        if not wait and self._local.locked():
            yield False
            return

        async with self._local:
            if self.redis is None:
                yield True
                return

            lock = self.redis.lock(
                self.name,
                timeout=self.timeout,
                blocking=wait,
                blocking_timeout=self.timeout if wait else None,
            )
            if not await lock.acquire():
                yield False
                return
            try:
                yield True
            finally:
                try:
                    await lock.release()
                except LockError as exc:
                    logger.warning("Executor lock expired before release: %s", exc)


class ActionExecutor:
    """Claims, builds, submits and records approved actions."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        status_view: NetworkStatusView,
        submitter: TransactionSubmitter,
        settings: Settings = default_settings,
        lock: ExecutorLock | None = None,
    ):
        self.session_factory = session_factory
        self.status_view = status_view
        self.submitter = submitter
        self.settings = settings
        self.lock = lock or ExecutorLock()

    async def execute_approved(self) -> list[Action]:
        """Manual trigger: run a cycle now, bypassing the batch-size deferral."""
        return await self.run_cycle(force=True)

    async def run_cycle(self, force: bool = False) -> list[Action]:
        """
        Run one cycle and return the actions executed in it, with their
        outcomes. A scheduled cycle is skipped if another one is running; a
        forced one waits for it.
        """
        async with self.lock.hold(wait=force) as acquired:
            if not acquired:
                logger.info("Executor cycle already running, skipping")
                executor_cycles_total.labels(outcome="skipped").inc()
                return []

            start = time.time()
            try:
                return await self._cycle(force)
            finally:
                executor_cycle_duration_seconds.observe(time.time() - start)

    async def _cycle(self, force: bool) -> list[Action]:
        async with self.session_factory() as db:
            queue = ActionQueue(db)
            pending = await queue.pending()
            approved = await queue.approved_for_execution()
        pending_actions.set(len(pending))

        if not pending and not approved:
            executor_cycles_total.labels(outcome="idle").inc()
            return []

        deferred = (
            not force
            and len(approved) < self.settings.auto_allocation_min_batch_size
            and not any(a.force for a in approved)
        )

        try:
            snapshot = await self.status_view.snapshot()
        except TransientNetworkError as exc:
            logger.warning("Network status unavailable, deferring executor cycle: %s", exc)
            executor_cycles_total.labels(outcome="network_unavailable").inc()
            return []

        if pending:
            await self._reconcile(pending, snapshot)

        if deferred or not approved:
            if approved:
                logger.info(
                    "Deferring %d approved action(s): below minimum batch size %d",
                    len(approved), self.settings.auto_allocation_min_batch_size,
                )
                executor_cycles_total.labels(outcome="deferred").inc()
            return []

        async with self.session_factory() as db:
            queue = ActionQueue(db)
            won = await queue.claim([a.id for a in approved])
            await db.commit()
            # Build from the rows as claimed, not as read before the snapshot
            claimed = await queue.load(won)
        lost = [a.id for a in approved if a.id not in won]
        if lost:
            logger.info("Actions %s were claimed or changed concurrently, skipping them", lost)
        if not claimed:
            return []

        executor_batch_size.observe(len(claimed))
        logger.info("Executing batch of %d action(s): %s", len(claimed), [a.id for a in claimed])

        ctx = BuildContext.from_snapshot(snapshot, self.settings)
        operations: dict[int, AllocationOperation] = {}
        build_failures: dict[int, str] = {}
        for action in claimed:
            try:
                operations[action.id] = build_operation(action, ctx)
            except OperationBuildError as exc:
                build_failures[action.id] = exc.message

        await self._record_expected_allocations(claimed, operations)
        outcomes = await self._submit(list(operations.values()))

        async with self.session_factory() as db:
            queue = ActionQueue(db)
            for action in claimed:
                if action.id in build_failures:
                    await queue.record_failure(action.id, build_failures[action.id])
                    actions_executed_total.labels(type=action.type, status="failed").inc()
                    logger.warning(
                        "Action %d failed pre-flight: %s", action.id, build_failures[action.id],
                        extra={"action_id": action.id},
                    )
                    continue
                outcome = outcomes.get(action.id) or OperationOutcome(
                    action_id=action.id,
                    success=False,
                    transient=True,
                    failure_reason="No outcome reported for operation",
                )
                await self._record_outcome(queue, action, operations[action.id], outcome)
            await db.commit()
            results = [await queue.get(a.id) for a in claimed]

        executor_cycles_total.labels(outcome="executed").inc()
        return results

    async def _submit(self, operations: list[AllocationOperation]) -> dict[int, OperationOutcome]:
        if not operations:
            return {}
        try:
            outcomes = await self.submitter.submit(operations)
        except TransientNetworkError as exc:
            logger.warning("Batch submission unconfirmed, will reconcile next cycle: %s", exc)
            return {
                op.action_id: OperationOutcome(op.action_id, success=False, transient=True, failure_reason=exc.message)
                for op in operations
            }
        except ExternalOperationError as exc:
            logger.warning("Batch rejected by the network: %s", exc)
            return {
                op.action_id: OperationOutcome(op.action_id, success=False, failure_reason=exc.message)
                for op in operations
            }
        except Exception as exc:
            # Unknown whether anything was broadcast: reconcile rather than fail
            logger.error("Batch submission raised %s: %s", type(exc).__name__, exc, exc_info=True)
            return {
                op.action_id: OperationOutcome(
                    op.action_id, success=False, transient=True,
                    failure_reason=f"{type(exc).__name__}: {exc}",
                )
                for op in operations
            }
        return {o.action_id: o for o in outcomes}

    async def _record_outcome(
        self,
        queue: ActionQueue,
        action: Action,
        operation: AllocationOperation,
        outcome: OperationOutcome,
    ) -> None:
        if outcome.transient:
            await queue.record_submission(action.id, outcome.transaction_ref, outcome.failure_reason)
            actions_executed_total.labels(type=action.type, status="pending").inc()
            logger.warning("Action %d unconfirmed, left pending: %s", action.id, outcome.failure_reason)
            return

        if not outcome.success:
            await queue.record_failure(
                action.id, outcome.failure_reason or "Operation reverted", outcome.transaction_ref,
            )
            actions_executed_total.labels(type=action.type, status="failed").inc()
            logger.warning("Action %d failed: %s", action.id, outcome.failure_reason, extra={"action_id": action.id})
            return

        result, allocation_id = _result_fields(operation, outcome)
        await queue.record_success(action.id, outcome.transaction_ref, result, allocation_id=allocation_id)
        actions_executed_total.labels(type=action.type, status="success").inc()
        logger.info(
            "Action %d succeeded in transaction %s", action.id, outcome.transaction_ref,
            extra={"action_id": action.id},
        )

    async def _record_expected_allocations(
        self, claimed: list[Action], operations: dict[int, AllocationOperation],
    ) -> None:
        """Store the allocation id each create is expected to open, before anything is submitted."""
        expected = {}
        for action in claimed:
            allocation_id = _expected_allocation(operations.get(action.id))
            if allocation_id is not None:
                expected[action.id] = {**(action.result or {}), "expected_allocation": allocation_id}
        if not expected:
            return
        async with self.session_factory() as db:
            queue = ActionQueue(db)
            for action_id, result in expected.items():
                await queue.record_result(action_id, result)
            await db.commit()

    # ── Reconciliation ───────────────────────────────────────────────────

    async def _reconcile(self, pending: list[Action], snapshot: NetworkSnapshot) -> None:
        """Resolve pending actions from what the network shows; never resubmit."""
        async with self.session_factory() as db:
            queue = ActionQueue(db)
            for action in pending:
                observed, allocation_id = self._observed(action, snapshot)
                if observed:
                    result = {**(action.result or {}), "reconciled": True}
                    if allocation_id:
                        result["created_allocation"] = allocation_id
                    await queue.record_success(
                        action.id, action.transaction_ref, result,
                        allocation_id=allocation_id if action.type == ActionType.ALLOCATE.value else None,
                    )
                    actions_executed_total.labels(type=action.type, status="success").inc()
                    logger.info("Action %d reconciled as successful from network state", action.id)
                    continue

                cycles = await queue.mark_pending_cycle(action.id)
                if cycles >= self.settings.max_pending_cycles:
                    reason = (
                        f"Operation not observed on the network after {cycles} cycles "
                        f"(transaction: {action.transaction_ref or 'unknown'})"
                    )
                    await queue.record_failure(action.id, reason)
                    actions_executed_total.labels(type=action.type, status="failed").inc()
                    logger.warning("Action %d: %s", action.id, reason)
            await db.commit()

    def _observed(self, action: Action, snapshot: NetworkSnapshot) -> tuple[bool, str | None]:
        """
        Whether the network shows the action's effect. Creates only count
        when the exact allocation id recorded before submission is active.
        """
        dispute_epochs = self.settings.dispute_epochs
        active_ids = {a.id.lower() for a in snapshot.active_allocations(dispute_epochs)}
        by_id = {a.id: a for a in snapshot.allocations}
        expected = ((action.result or {}).get("expected_allocation") or "").lower()
        created = expected if expected in active_ids else None

        if action.type == ActionType.ALLOCATE.value:
            return created is not None, created

        old = by_id.get(action.allocation_id or "")
        if old is None or old.status(snapshot.epoch, dispute_epochs) == AllocationStatus.ACTIVE:
            return False, None
        if action.type == ActionType.UNALLOCATE.value:
            return True, None

        return created is not None, created


def _expected_allocation(operation: AllocationOperation | None) -> str | None:
    if isinstance(operation, CreateAllocation):
        return operation.allocation_id
    if isinstance(operation, ReplaceAllocation):
        return operation.create.allocation_id
    return None


def _result_fields(operation: AllocationOperation, outcome: OperationOutcome) -> tuple[dict, str | None]:
    """Computed result fields for a successful operation, and the new allocation id if any."""
    reported = outcome.result or {}
    if isinstance(operation, CreateAllocation):
        created = reported.get("allocation_id") or operation.allocation_id
        return {
            "created_allocation": created,
            "allocated_tokens": str(operation.amount),
        }, created
    if isinstance(operation, CloseAllocation):
        return {
            "closed_allocation": operation.allocation_id,
            "indexing_rewards": str(reported.get("indexing_rewards", "0")),
            "receipts_worth_collecting": operation.receipts_worth_collecting,
        }, None
    if isinstance(operation, ReplaceAllocation):
        created = reported.get("allocation_id") or operation.create.allocation_id
        return {
            "closed_allocation": operation.close.allocation_id,
            "indexing_rewards_collected": str(reported.get("indexing_rewards", "0")),
            "receipts_worth_collecting": operation.close.receipts_worth_collecting,
            "created_allocation": created,
            "created_allocation_stake": str(operation.create.amount),
        }, None
    raise TypeError(f"Unknown operation {type(operation).__name__}")
