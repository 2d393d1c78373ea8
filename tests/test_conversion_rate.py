"""Tests for the shared conversion rate and cost model injection."""

import pytest
from prometheus_client import REGISTRY
from sqlalchemy import select

from indexer_agent.errors import ValidationError
from indexer_agent.models import CostModel
from indexer_agent.services.conversion_rate import ConversionRateService, SharedValue, publish_rate_metric
from tests.conftest import DEP_A, DEP_B, DEP_C


@pytest.mark.asyncio
class TestSharedValue:
    async def test_subscribers_notified_on_change_only(self):
        seen = []

        async def record(value):
            seen.append(value)

        shared = SharedValue()
        shared.subscribe(record)
        assert await shared.set("5") is True
        assert await shared.set("5") is False
        assert await shared.set("6") is True
        assert seen == ["5", "6"]

    async def test_rate_metric_follows_shared_value(self):
        shared = SharedValue()
        shared.subscribe(publish_rate_metric)
        await shared.set("42")
        assert REGISTRY.get_sample_value("conversion_rate") == 42.0


@pytest.mark.asyncio
class TestConversionRateService:
    async def _seed(self, db):
        db.add_all([
            CostModel(deployment=DEP_A, model="default => 0.0001;", variables={"DAI": "1", "other": "x"}),
            CostModel(deployment=DEP_B, model="default => $DAI;", variables=None),
            CostModel(deployment=DEP_C, model=None, variables={}),
        ])
        await db.flush()

    async def _variables(self, db):
        result = await db.execute(select(CostModel).order_by(CostModel.deployment))
        return {c.deployment: c.variables for c in result.scalars()}

    async def test_rate_merged_into_models(self, db_session):
        await self._seed(db_session)
        changed, updated = await ConversionRateService(db_session, SharedValue()).set_rate("25")

        assert changed is True
        assert updated == 2
        variables = await self._variables(db_session)
        assert variables[DEP_A] == {"DAI": "25", "other": "x"}
        assert variables[DEP_B] == {"DAI": "25"}
        assert variables[DEP_C] == {}

    async def test_reapplying_same_rate_is_noop(self, db_session):
        await self._seed(db_session)
        service = ConversionRateService(db_session, SharedValue())
        await service.set_rate("25")

        assert await service.set_rate("25") == (False, 0)

    async def test_invalid_rate(self, db_session):
        with pytest.raises(ValidationError):
            await ConversionRateService(db_session, SharedValue()).set_rate("abc")
        with pytest.raises(ValidationError):
            await ConversionRateService(db_session, SharedValue()).set_rate("0")
