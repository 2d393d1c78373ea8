"""
API dependencies: per-request DB session, caller identity, permission
guards, and the long-lived collaborators the app lifespan builds.

Every route under /api except /api/health needs `Authorization: Bearer
<jwt>`. The token's `role` claim decides what the caller may do.
"""

import logging
from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession

from indexer_agent.auth.context import RequestContext
from indexer_agent.auth.jwt import decode_access_token
from indexer_agent.auth.permissions import Permission
from indexer_agent.database import async_session
from indexer_agent.network.status_view import NetworkStatusView
from indexer_agent.services.action_executor import ActionExecutor
from indexer_agent.services.conversion_rate import SharedValue

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "


# ── Database session ─────────────────────────────────────────────────────────

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """One session per request: committed when the handler returns, rolled back if it raises."""
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# ── Caller identity ──────────────────────────────────────────────────────────

def _bearer_token(request: Request) -> str:
    header = request.headers.get("Authorization", "")
    if not header.startswith(BEARER_PREFIX) or not header[len(BEARER_PREFIX):].strip():
        raise HTTPException(
            status_code=401,
            detail="Bearer token required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return header[len(BEARER_PREFIX):].strip()


async def get_request_context(request: Request) -> RequestContext:
    try:
        claims = decode_access_token(_bearer_token(request))
    except JWTError as exc:
        logger.info("Rejected token on %s %s: %s", request.method, request.url.path, exc)
        raise HTTPException(
            status_code=401,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return RequestContext.from_claims(claims)


def require(*perms: Permission):
    """
    Dependency factory: resolves the caller and checks every listed permission.

        @router.post("/approve")
        async def approve(ctx: RequestContext = Depends(require(Permission.ACTIONS_APPROVE))):
            ...
    """
    async def _guard(ctx: RequestContext = Depends(get_request_context)) -> RequestContext:
        for perm in perms:
            ctx.require_permission(perm)
        return ctx
    return _guard


# ── Collaborators (built in the app lifespan) ────────────────────────────────

def get_status_view(request: Request) -> NetworkStatusView:
    return request.app.state.status_view


def get_executor(request: Request) -> ActionExecutor:
    return request.app.state.executor


def get_conversion_rate(request: Request) -> SharedValue:
    return request.app.state.conversion_rate
