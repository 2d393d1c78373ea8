"""
Worker entrypoint — runs the decision engine and the action executor on
their intervals.

Run with: python -m indexer_agent.worker
"""

import asyncio
import logging

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from indexer_agent.config import Settings, settings
from indexer_agent.middleware.logging_config import configure_logging
from indexer_agent.middleware.request_context import bound_request_id
from indexer_agent.network.status_view import HttpNetworkStatusView, NetworkStatusView
from indexer_agent.network.transactions import HttpTransactionSubmitter
from indexer_agent.services.action_executor import ActionExecutor, ExecutorLock
from indexer_agent.services.audit_service import AuditService
from indexer_agent.services.decision_engine import DecisionEngine
from indexer_agent.services.rule_store import RuleStore

logger = logging.getLogger("worker")

WORKER_ACTOR = "system:worker"


async def run_decision_cycle(SessionMaker, status_view: NetworkStatusView, settings: Settings) -> int:
    """One decision cycle in its own transaction. Returns the number of actions queued."""
    async with SessionMaker() as db:
        try:
            queued = await DecisionEngine(db, status_view, settings).run_cycle()
            if queued:
                await AuditService(db).log_actions_changed(
                    "actions_queued", [a.id for a in queued], WORKER_ACTOR,
                )
            await db.commit()
        except Exception:
            await db.rollback()
            raise
    return len(queued)


async def decision_loop(SessionMaker, status_view: NetworkStatusView, settings: Settings):
    logger.info("Decision loop started (every %.0fs)", settings.decision_interval_seconds)
    cycle = 0
    while True:
        cycle += 1
        with bound_request_id(f"decision-{cycle}"):
            try:
                await run_decision_cycle(SessionMaker, status_view, settings)
            except Exception as exc:
                logger.error("Decision cycle failed: %s", exc, exc_info=True, extra={"cycle": cycle})
        await asyncio.sleep(settings.decision_interval_seconds)


async def executor_loop(executor: ActionExecutor, settings: Settings):
    logger.info("Executor loop started (every %.0fs)", settings.executor_interval_seconds)
    cycle = 0
    while True:
        cycle += 1
        with bound_request_id(f"executor-{cycle}"):
            try:
                results = await executor.run_cycle()
                if results:
                    logger.info(
                        "Executor cycle finished %d action(s)", len(results),
                        extra={"cycle": cycle, "action_ids": [a.id for a in results]},
                    )
            except Exception as exc:
                logger.error("Executor cycle failed: %s", exc, exc_info=True, extra={"cycle": cycle})
        await asyncio.sleep(settings.executor_interval_seconds)


async def main():
    configure_logging(settings.log_level, settings.log_format)

    engine = create_async_engine(settings.database_url, echo=False)
    SessionMaker = async_sessionmaker(engine, expire_on_commit=False)

    async with SessionMaker() as db:
        await RuleStore(db, settings).ensure_global_rule()
        await db.commit()

    r = aioredis.from_url(settings.redis_url)
    status_view = HttpNetworkStatusView(
        settings.network_subgraph_url,
        settings.indexer_address,
        timeout=settings.network_request_timeout_seconds,
        receipts_url=settings.receipts_url,
    )
    executor = ActionExecutor(
        SessionMaker,
        status_view,
        HttpTransactionSubmitter(settings.transaction_service_url, timeout=settings.network_request_timeout_seconds),
        settings,
        ExecutorLock(r, settings.executor_lock_name, settings.executor_lock_timeout_seconds),
    )
    logger.info("Worker started in %s mode", settings.allocation_management_mode)

    try:
        await asyncio.gather(
            decision_loop(SessionMaker, status_view, settings),
            executor_loop(executor, settings),
        )
    finally:
        await r.aclose()
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
