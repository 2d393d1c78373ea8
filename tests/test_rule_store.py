"""Tests for indexing rule storage and precedence resolution."""

import pytest

from indexer_agent.errors import NotFoundError, ValidationError
from indexer_agent.models.indexing_rule import GLOBAL_IDENTIFIER
from indexer_agent.schemas.schemas import IndexingRuleInput
from indexer_agent.services.rule_store import RuleStore
from tests.conftest import DEP_A, DEP_B


def _rule(identifier, identifier_type="deployment", **fields) -> IndexingRuleInput:
    return IndexingRuleInput(identifier=identifier, identifier_type=identifier_type, **fields)


@pytest.mark.asyncio
class TestEffectiveRule:
    async def test_deployment_overrides_global_field_by_field(self, db_session, settings):
        store = RuleStore(db_session, settings)
        await store.upsert_rule(_rule(GLOBAL_IDENTIFIER, "group", allocation_amount="500", parallel_allocations=2, decision_basis="rules"))
        await store.upsert_rule(_rule(DEP_A, allocation_amount=1000))

        effective = await store.get_effective_rule(DEP_A, [])
        assert effective.allocation_amount == "1000"
        assert effective.parallel_allocations == 2
        assert effective.decision_basis == "rules"

    async def test_falls_back_to_global(self, db_session, settings):
        store = RuleStore(db_session, settings)
        await store.upsert_rule(_rule(GLOBAL_IDENTIFIER, "group", allocation_amount="500"))

        effective = await store.get_effective_rule(DEP_B, [])
        assert effective.allocation_amount == "500"
        assert effective.auto_renewal is True
        assert effective.require_supported is True

    async def test_none_when_no_rule_anywhere(self, db_session, settings):
        assert await RuleStore(db_session, settings).get_effective_rule(DEP_A, []) is None

    async def test_subgraph_then_group_then_global(self, db_session, settings):
        store = RuleStore(db_session, settings)
        await store.upsert_rule(_rule(GLOBAL_IDENTIFIER, "group", allocation_amount="1", min_signal="1", max_signal="1"))
        await store.upsert_rule(_rule("team", "group", min_signal="20", max_signal="20"))
        await store.upsert_rule(_rule("subgraph-x", "subgraph", max_signal="300"))

        effective = await store.get_effective_rule(DEP_A, ["subgraph-x", "team"])
        assert effective.max_signal == "300"
        assert effective.min_signal == "20"
        assert effective.allocation_amount == "1"

    async def test_first_declared_membership_wins(self, db_session, settings):
        store = RuleStore(db_session, settings)
        await store.upsert_rule(_rule("first", "group", allocation_amount="10"))
        await store.upsert_rule(_rule("second", "group", allocation_amount="20"))

        assert (await store.get_effective_rule(DEP_A, ["first", "second"])).allocation_amount == "10"
        assert (await store.get_effective_rule(DEP_A, ["second", "first"])).allocation_amount == "20"

    async def test_resolution_is_idempotent(self, db_session, settings):
        store = RuleStore(db_session, settings)
        await store.upsert_rule(_rule(GLOBAL_IDENTIFIER, "group", allocation_amount="500"))
        await store.upsert_rule(_rule(DEP_A, min_stake="7"))

        first = await store.get_effective_rule(DEP_A, ["g"])
        second = await store.get_effective_rule(DEP_A, ["g"])
        assert first == second


@pytest.mark.asyncio
class TestRuleMutations:
    async def test_upsert_only_changes_sent_fields(self, db_session, settings):
        store = RuleStore(db_session, settings)
        await store.upsert_rule(_rule(DEP_A, allocation_amount="100", min_signal="5"))
        rule = await store.upsert_rule(_rule(DEP_A, min_signal="9"))

        assert rule.allocation_amount == "100"
        assert rule.min_signal == "9"

    async def test_invalid_deployment_identifier(self, db_session, settings):
        with pytest.raises(ValidationError):
            await RuleStore(db_session, settings).upsert_rule(_rule("not-a-hash", allocation_amount="1"))

    async def test_percentage_out_of_range(self, db_session, settings):
        with pytest.raises(ValidationError):
            await RuleStore(db_session, settings).upsert_rule(_rule(DEP_A, max_allocation_percentage=1.5))

    async def test_negative_tokens_rejected(self, db_session, settings):
        with pytest.raises(ValidationError):
            await RuleStore(db_session, settings).upsert_rule(_rule(DEP_A, min_stake="-1"))

    async def test_delete_unknown_rule(self, db_session, settings):
        with pytest.raises(NotFoundError):
            await RuleStore(db_session, settings).delete_rule(DEP_A)

    async def test_delete_rule_removes_all_types(self, db_session, settings):
        store = RuleStore(db_session, settings)
        await store.upsert_rule(_rule("shared", "group", allocation_amount="1"))
        await store.upsert_rule(_rule("shared", "subgraph", allocation_amount="2"))

        assert await store.delete_rule("shared") == 2
        assert await store.get_rule("shared") is None

    async def test_bulk_delete_is_idempotent(self, db_session, settings):
        store = RuleStore(db_session, settings)
        await store.upsert_rule(_rule(DEP_A, allocation_amount="1"))

        assert await store.delete_rules([DEP_A, DEP_B]) == 1
        assert await store.delete_rules([DEP_A, DEP_B]) == 0

    async def test_deleting_global_resets_defaults(self, db_session, settings):
        store = RuleStore(db_session, settings)
        await store.ensure_global_rule()
        await store.upsert_rule(_rule(GLOBAL_IDENTIFIER, "group", allocation_amount="5", min_signal="3"))

        await store.delete_rule(GLOBAL_IDENTIFIER)
        rule = await store.get_rule(GLOBAL_IDENTIFIER)
        assert rule.allocation_amount == str(settings.default_allocation_amount)
        assert rule.min_signal is None

    async def test_get_rule_merged_with_global(self, db_session, settings):
        store = RuleStore(db_session, settings)
        await store.ensure_global_rule()
        await store.upsert_rule(_rule(DEP_A, min_signal="3"))

        raw = await store.get_rule(DEP_A)
        merged = await store.get_rule(DEP_A, merged=True)
        assert raw.allocation_amount is None
        assert merged.allocation_amount == str(settings.default_allocation_amount)
        assert merged.min_signal == "3"
