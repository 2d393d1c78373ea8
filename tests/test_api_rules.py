"""Tests for the indexing rules, allocations and conversion rate HTTP APIs."""

import pytest

from indexer_agent.models import CostModel
from tests.conftest import ALLOC_1, DEP_A, DEP_B


def _rule(identifier, identifier_type="deployment", **fields):
    return {"identifier": identifier, "identifier_type": identifier_type, **fields}


@pytest.mark.asyncio
class TestIndexingRulesApi:
    async def test_set_and_get_merged(self, admin_client):
        resp = await admin_client.put("/api/indexing-rules", json=_rule("global", "group", allocation_amount="500", min_signal="10"))
        assert resp.status_code == 200
        resp = await admin_client.put("/api/indexing-rules", json=_rule(DEP_A, allocation_amount=1000))
        assert resp.json()["allocation_amount"] == "1000"

        raw = (await admin_client.get(f"/api/indexing-rules/{DEP_A}")).json()
        merged = (await admin_client.get(f"/api/indexing-rules/{DEP_A}", params={"merged": True})).json()
        assert raw["min_signal"] is None
        assert merged["min_signal"] == "10"
        assert merged["allocation_amount"] == "1000"

    async def test_list_rules(self, viewer_client, admin_client):
        await admin_client.put("/api/indexing-rules", json=_rule(DEP_A, allocation_amount="1"))
        await admin_client.put("/api/indexing-rules", json=_rule("team", "group", min_stake="1"))

        resp = await viewer_client.get("/api/indexing-rules")
        assert sorted(r["identifier"] for r in resp.json()) == sorted([DEP_A, "team"])

    async def test_invalid_deployment_is_422(self, admin_client):
        resp = await admin_client.put("/api/indexing-rules", json=_rule("not-a-deployment", allocation_amount="1"))
        assert resp.status_code == 422

    async def test_unknown_rule_is_404(self, admin_client):
        assert (await admin_client.get(f"/api/indexing-rules/{DEP_B}")).status_code == 404
        assert (await admin_client.delete(f"/api/indexing-rules/{DEP_B}")).status_code == 404

    async def test_bulk_delete(self, admin_client):
        await admin_client.put("/api/indexing-rules", json=_rule(DEP_A, allocation_amount="1"))
        resp = await admin_client.post("/api/indexing-rules/delete", json={"identifiers": [DEP_A, DEP_B]})
        assert resp.json() == {"deleted": 1}


@pytest.mark.asyncio
class TestAllocationsApi:
    async def test_lists_with_derived_status(self, viewer_client):
        resp = await viewer_client.get("/api/allocations")
        [item] = resp.json()
        assert item["id"] == ALLOC_1
        assert item["status"] == "Active"

    async def test_status_filter(self, viewer_client, status_view):
        resp = await viewer_client.get("/api/allocations", params={"status": "closed"})
        assert resp.json() == []
        resp = await viewer_client.get("/api/allocations", params={"status": "active", "deployment": DEP_B})
        assert len(resp.json()) == 1

    async def test_unknown_status_is_422(self, viewer_client):
        resp = await viewer_client.get("/api/allocations", params={"status": "open"})
        assert resp.status_code == 422


@pytest.mark.asyncio
class TestConversionRateApi:
    async def test_set_rate_updates_cost_models(self, admin_client, session_factory):
        async with session_factory() as db:
            db.add(CostModel(deployment=DEP_A, model="default => $DAI;", variables={}))
            await db.commit()

        resp = await admin_client.put("/api/conversion-rate", json={"value": "42"})
        assert resp.json() == {"value": "42", "changed": True, "cost_models_updated": 1}

        resp = await admin_client.put("/api/conversion-rate", json={"value": "42"})
        assert resp.json() == {"value": "42", "changed": False, "cost_models_updated": 0}

    async def test_operator_cannot_set_rate(self, operator_client):
        resp = await operator_client.put("/api/conversion-rate", json={"value": "42"})
        assert resp.status_code == 403
