"""
Conversion Rate

The GRT/DAI conversion rate is a single shared value. Setting it notifies
subscribers and injects the rate as the `DAI` variable of every cost model
that has a model, so query pricing follows it.
"""

import logging
from typing import Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from indexer_agent.database import utcnow
from indexer_agent.errors import ValidationError
from indexer_agent.middleware.metrics import conversion_rate
from indexer_agent.models import CostModel

logger = logging.getLogger(__name__)

Subscriber = Callable[[str], Awaitable[None]]


class SharedValue:
    """Single-writer value; subscribers are notified only when it changes."""

    def __init__(self, initial: str | None = None):
        self._value = initial
        self._subscribers: list[Subscriber] = []

    @property
    def value(self) -> str | None:
        return self._value

    def subscribe(self, callback: Subscriber) -> None:
        self._subscribers.append(callback)

    async def set(self, value: str) -> bool:
        if value == self._value:
            return False
        self._value = value
        for callback in self._subscribers:
            await callback(value)
        return True


async def publish_rate_metric(value: str) -> None:
    conversion_rate.set(int(value))


def _normalize_rate(value: str) -> str:
    try:
        rate = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Conversion rate must be an integer amount, got {value!r}")
    if rate <= 0:
        raise ValidationError("Conversion rate must be positive")
    return str(rate)


class ConversionRateService:
    def __init__(self, session: AsyncSession, shared: SharedValue):
        self.session = session
        self.shared = shared

    async def set_rate(self, value: str) -> tuple[bool, int]:
        """
        Push a new rate and merge it into cost model variables.

        Returns (changed, cost_models_updated). Reapplying the current value
        changes nothing.
        """
        rate = _normalize_rate(value)
        changed = await self.shared.set(rate)
        updated = await self.apply_to_cost_models(rate)
        if changed or updated:
            logger.info("Conversion rate set to %s, %d cost model(s) updated", rate, updated)
        return changed, updated

    async def apply_to_cost_models(self, rate: str) -> int:
        result = await self.session.execute(
            select(CostModel).where(CostModel.model.is_not(None))
        )
        updated = 0
        for cost_model in result.scalars():
            variables = dict(cost_model.variables or {})
            if variables.get("DAI") == rate:
                continue
            variables["DAI"] = rate
            # Reassign so the JSON column is marked dirty
            cost_model.variables = variables
            cost_model.updated_at = utcnow()
            updated += 1
        await self.session.flush()
        return updated
