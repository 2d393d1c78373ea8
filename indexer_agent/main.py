import logging
import time
import traceback
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text

from indexer_agent.config import settings
from indexer_agent.database import async_session, engine
from indexer_agent.errors import IndexerAgentError
from indexer_agent.middleware.logging_config import configure_logging

configure_logging(settings.log_level, settings.log_format)

from indexer_agent.api.actions import router as actions_router  # noqa: E402
from indexer_agent.api.allocations import router as allocations_router  # noqa: E402
from indexer_agent.api.conversion_rate import router as conversion_rate_router  # noqa: E402
from indexer_agent.api.indexing_rules import router as indexing_rules_router  # noqa: E402
from indexer_agent.network.status_view import HttpNetworkStatusView  # noqa: E402
from indexer_agent.network.transactions import HttpTransactionSubmitter  # noqa: E402
from indexer_agent.services.action_executor import ActionExecutor, ExecutorLock  # noqa: E402
from indexer_agent.services.conversion_rate import SharedValue, publish_rate_metric  # noqa: E402
from indexer_agent.services.rule_store import RuleStore  # noqa: E402

logger = logging.getLogger("indexer_agent")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: verify DB connection and seed the global rule
    async with engine.begin() as conn:
        await conn.execute(text("SELECT 1"))
    async with async_session() as db:
        await RuleStore(db, settings).ensure_global_rule()
        await db.commit()

    redis = aioredis.from_url(settings.redis_url)
    status_view = HttpNetworkStatusView(
        settings.network_subgraph_url,
        settings.indexer_address,
        timeout=settings.network_request_timeout_seconds,
        receipts_url=settings.receipts_url,
    )
    app.state.redis = redis
    app.state.status_view = status_view
    shared_rate = SharedValue()
    shared_rate.subscribe(publish_rate_metric)
    app.state.conversion_rate = shared_rate
    app.state.executor = ActionExecutor(
        async_session,
        status_view,
        HttpTransactionSubmitter(
            settings.transaction_service_url,
            timeout=settings.network_request_timeout_seconds,
        ),
        settings,
        ExecutorLock(redis, settings.executor_lock_name, settings.executor_lock_timeout_seconds),
    )
    yield
    # Shutdown
    await redis.aclose()
    await engine.dispose()


app = FastAPI(
    title="Indexer Agent",
    description="Action queue and allocation lifecycle management for a network indexer",
    version="0.1.0",
    lifespan=lifespan,
)

# ── Request context middleware (request ID + timing) ─────────────────────────
from indexer_agent.middleware.request_context import RequestContextMiddleware  # noqa: E402

app.add_middleware(RequestContextMiddleware)

# ── Prometheus metrics middleware ────────────────────────────────────────────
from indexer_agent.middleware.metrics import PrometheusMiddleware  # noqa: E402

app.add_middleware(PrometheusMiddleware)


@app.exception_handler(IndexerAgentError)
async def domain_exception_handler(request: Request, exc: IndexerAgentError):
    """Validation → 422, conflict → 409, not found → 404."""
    if exc.status_code >= 500:
        logger.warning("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": type(exc).__name__, **exc.details},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Return detailed error info in development mode so 500s are debuggable."""
    tb = traceback.format_exc()
    logger.error(
        "Unhandled %s on %s %s: %s\n%s",
        type(exc).__name__, request.method, request.url.path, exc, tb,
    )
    detail = f"{type(exc).__name__}: {exc}"
    if settings.environment == "development":
        return JSONResponse(
            status_code=500,
            content={"detail": detail, "traceback": tb.splitlines()[-5:]},
        )
    return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})


# Register API routers
app.include_router(indexing_rules_router)
app.include_router(allocations_router)
app.include_router(actions_router)
app.include_router(conversion_rate_router)


@app.get("/metrics", tags=["metrics"])
async def prometheus_metrics():
    """Expose Prometheus metrics in text format."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# ── Health check ─────────────────────────────────────────────────────────────

_health_cache: dict = {}
_health_cache_ts: float = 0.0
HEALTH_CACHE_TTL = 10.0  # seconds


async def _database_ok() -> bool:
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))
    return True


async def _probe(name: str, check) -> dict:
    try:
        ok = await check()
    except Exception as exc:
        logger.warning("Health probe %s failed: %s", name, exc)
        return {"ok": False, "error": str(exc)}
    return {"ok": bool(ok)}


@app.get("/api/health")
async def health_check(request: Request):
    """
    healthy: database, redis and network subgraph all reachable.
    degraded: database up but redis (executor lock) or the network is not.
    unhealthy: no database.
    """
    global _health_cache, _health_cache_ts

    now = time.time()
    if _health_cache and (now - _health_cache_ts) < HEALTH_CACHE_TTL:
        return _health_cache

    state = request.app.state
    components = {
        "database": await _probe("database", _database_ok),
        "redis": await _probe("redis", state.redis.ping),
        "network": await _probe("network", state.status_view.ping),
    }

    if not components["database"]["ok"]:
        overall = "unhealthy"
    elif all(c["ok"] for c in components.values()):
        overall = "healthy"
    else:
        overall = "degraded"

    _health_cache = {
        "status": overall,
        "environment": settings.environment,
        "allocation_management_mode": settings.allocation_management_mode,
        "components": components,
    }
    _health_cache_ts = now
    return _health_cache
