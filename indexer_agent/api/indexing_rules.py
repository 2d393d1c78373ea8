"""
Indexing Rules API

Read, set and delete the per-workload rules the decision engine evaluates.
Mutations are audit-logged.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from indexer_agent.api.deps import get_db, require
from indexer_agent.auth.context import RequestContext
from indexer_agent.auth.permissions import Permission
from indexer_agent.errors import NotFoundError
from indexer_agent.schemas.schemas import (
    DeleteResponse,
    IdentifiersRequest,
    IndexingRuleInput,
    IndexingRuleOut,
)
from indexer_agent.services.audit_service import AuditService
from indexer_agent.services.rule_store import RuleStore

router = APIRouter(prefix="/api/indexing-rules", tags=["indexing-rules"])


# ── GET /api/indexing-rules ──────────────────────────────────────────────────

@router.get("", response_model=list[IndexingRuleOut])
async def list_indexing_rules(
    merged: bool = False,
    ctx: RequestContext = Depends(require(Permission.RULES_READ)),
    db: AsyncSession = Depends(get_db),
):
    """Every stored rule, optionally merged with the global rule."""
    rules = await RuleStore(db).list_rules(merged=merged)
    return [IndexingRuleOut(**r.to_dict()) for r in rules]


# ── GET /api/indexing-rules/{identifier} ─────────────────────────────────────

@router.get("/{identifier}", response_model=IndexingRuleOut)
async def get_indexing_rule(
    identifier: str,
    merged: bool = False,
    ctx: RequestContext = Depends(require(Permission.RULES_READ)),
    db: AsyncSession = Depends(get_db),
):
    rule = await RuleStore(db).get_rule(identifier, merged=merged)
    if rule is None:
        raise NotFoundError(f"No indexing rule found for {identifier}", identifier=identifier)
    return IndexingRuleOut(**rule.to_dict())


# ── PUT /api/indexing-rules ──────────────────────────────────────────────────

@router.put("", response_model=IndexingRuleOut)
async def set_indexing_rule(
    body: IndexingRuleInput,
    ctx: RequestContext = Depends(require(Permission.RULES_CONFIGURE)),
    db: AsyncSession = Depends(get_db),
):
    """
    Create or update the rule for (identifier, identifier_type). Only the
    fields present in the body change.
    """
    rule = await RuleStore(db).upsert_rule(body)
    await AuditService(db).log_rule_changed(
        "rule_set",
        rule.identifier,
        {"identifier_type": rule.identifier_type, "changes": body.model_dump(exclude_unset=True, mode="json")},
        ctx.actor,
    )
    return IndexingRuleOut(**rule.to_dict())


# ── DELETE /api/indexing-rules/{identifier} ──────────────────────────────────

@router.delete("/{identifier}", response_model=DeleteResponse)
async def delete_indexing_rule(
    identifier: str,
    ctx: RequestContext = Depends(require(Permission.RULES_CONFIGURE)),
    db: AsyncSession = Depends(get_db),
):
    """Delete every rule with this identifier. The global rule is reset to defaults."""
    deleted = await RuleStore(db).delete_rule(identifier)
    await AuditService(db).log_rule_changed("rule_deleted", identifier, {"deleted": deleted}, ctx.actor)
    return DeleteResponse(deleted=deleted)


# ── POST /api/indexing-rules/delete ──────────────────────────────────────────

@router.post("/delete", response_model=DeleteResponse)
async def delete_indexing_rules(
    body: IdentifiersRequest,
    ctx: RequestContext = Depends(require(Permission.RULES_CONFIGURE)),
    db: AsyncSession = Depends(get_db),
):
    deleted = await RuleStore(db).delete_rules(body.identifiers)
    await AuditService(db).log_rule_changed(
        "rules_deleted",
        ",".join(body.identifiers)[:100],
        {"identifiers": body.identifiers, "deleted": deleted},
        ctx.actor,
    )
    return DeleteResponse(deleted=deleted)
