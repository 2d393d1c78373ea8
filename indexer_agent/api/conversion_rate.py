"""
Conversion Rate API

PUT /api/conversion-rate pushes a new GRT/DAI rate into every cost model.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from indexer_agent.api.deps import get_conversion_rate, get_db, require
from indexer_agent.auth.context import RequestContext
from indexer_agent.auth.permissions import Permission
from indexer_agent.schemas.schemas import ConversionRateResponse, ConversionRateUpdate
from indexer_agent.services.audit_service import AuditService
from indexer_agent.services.conversion_rate import ConversionRateService, SharedValue

router = APIRouter(prefix="/api/conversion-rate", tags=["conversion-rate"])


@router.put("", response_model=ConversionRateResponse)
async def set_conversion_rate(
    body: ConversionRateUpdate,
    ctx: RequestContext = Depends(require(Permission.NETWORK_CONFIGURE)),
    db: AsyncSession = Depends(get_db),
    shared: SharedValue = Depends(get_conversion_rate),
):
    changed, updated = await ConversionRateService(db, shared).set_rate(body.value)
    if changed or updated:
        await AuditService(db).log_event(
            event_type="conversion_rate_set",
            actor=ctx.actor,
            summary=f"Conversion rate set to {shared.value}",
            subject_type="conversion_rate",
            details={"value": shared.value, "cost_models_updated": updated},
        )
    return ConversionRateResponse(value=shared.value, changed=changed, cost_models_updated=updated)
