"""Tests for turning rules and network state into queued actions."""

import pytest

from indexer_agent.models import Action, ActionStatus
from indexer_agent.models.indexing_rule import GLOBAL_IDENTIFIER
from indexer_agent.network.allocation_status import DeploymentSnapshot, IndexerStake, NetworkSnapshot
from indexer_agent.schemas.schemas import IndexingRuleInput
from indexer_agent.services.action_queue import ActionQueue
from indexer_agent.services.decision_engine import DecisionEngine
from indexer_agent.services.rule_store import RuleStore
from tests.conftest import ALLOC_1, DEP_A, DEP_B, DEP_C, FakeStatusView, allocate_input, allocation, make_settings


async def _set_rule(db, identifier, identifier_type="deployment", **fields):
    await RuleStore(db).upsert_rule(
        IndexingRuleInput(identifier=identifier, identifier_type=identifier_type, **fields)
    )


async def _global(db, **fields):
    fields.setdefault("parallel_allocations", 5)
    fields.setdefault("allocation_amount", "1000")
    await _set_rule(db, GLOBAL_IDENTIFIER, "group", **fields)


def _summary(actions):
    return sorted((a.type, a.deployment_id, a.allocation_id, a.status) for a in actions)


@pytest.mark.asyncio
class TestRunCycle:
    async def test_manual_mode_emits_nothing(self, db_session, status_view):
        await _global(db_session, min_signal="100")
        engine = DecisionEngine(db_session, status_view, make_settings(allocation_management_mode="manual"))
        assert await engine.run_cycle() == []
        assert await ActionQueue(db_session).list_actions() == []

    async def test_oversight_queues_for_approval(self, db_session, status_view, settings):
        await _global(db_session, min_signal="100")

        actions = await DecisionEngine(db_session, status_view, settings).run_cycle()
        assert _summary(actions) == [("allocate", DEP_A, None, "queued")]
        assert actions[0].source == "policy-engine"
        assert actions[0].amount == "1000"

    async def test_auto_mode_approves(self, db_session, status_view):
        await _global(db_session, min_signal="100")
        engine = DecisionEngine(db_session, status_view, make_settings(allocation_management_mode="auto"))

        [action] = await engine.run_cycle()
        assert action.status == ActionStatus.APPROVED.value

    async def test_auto_approved_deployment_in_oversight(self, db_session, status_view):
        await _global(db_session, min_signal="100")
        engine = DecisionEngine(db_session, status_view, make_settings(auto_approve_deployments=f" {DEP_A} ,"))

        [action] = await engine.run_cycle()
        assert action.status == ActionStatus.APPROVED.value

    async def test_thresholds_not_met_unallocates(self, db_session, status_view, settings):
        await _global(db_session, min_signal="400")

        actions = await DecisionEngine(db_session, status_view, settings).run_cycle()
        assert _summary(actions) == [
            ("allocate", DEP_A, None, "queued"),
            ("unallocate", DEP_B, ALLOC_1, "queued"),
        ]

    async def test_never_basis_skips_deployment(self, db_session, status_view, settings):
        await _global(db_session, min_signal="100")
        await _set_rule(db_session, DEP_A, decision_basis="never")

        assert await DecisionEngine(db_session, status_view, settings).run_cycle() == []

    async def test_in_flight_target_dropped(self, db_session, status_view, settings):
        await _global(db_session, min_signal="400")
        existing = await ActionQueue(db_session).enqueue(allocate_input(DEP_A, amount="5"))

        actions = await DecisionEngine(db_session, status_view, settings).run_cycle()
        assert _summary(actions) == [("unallocate", DEP_B, ALLOC_1, "queued")]
        assert (await ActionQueue(db_session).get(existing.id)).amount == "5"

    async def test_network_unavailable_defers(self, db_session, status_view, settings):
        await _global(db_session, min_signal="100")
        status_view.available = False
        assert await DecisionEngine(db_session, status_view, settings).run_cycle() == []

    async def test_seeded_global_rule_allocates_alongside_existing(self, db_session, status_view, settings):
        await RuleStore(db_session, settings).ensure_global_rule()
        await _set_rule(db_session, GLOBAL_IDENTIFIER, "group", min_signal="100")

        actions = await DecisionEngine(db_session, status_view, settings).run_cycle()
        assert _summary(actions) == [("allocate", DEP_A, None, "queued")]

    async def test_conflict_at_flush_skips_only_that_candidate(self, db_session, status_view, settings):
        await _global(db_session, min_signal="400")
        # Holds DEP_A's in-flight slot without the identifiers the pre-check looks at
        db_session.add(Action(
            status=ActionStatus.QUEUED.value, type="allocate", source="test", reason="",
            result={}, in_flight_target=f"deployment:{DEP_A}",
        ))
        await db_session.flush()

        actions = await DecisionEngine(db_session, status_view, settings).run_cycle()
        assert _summary(actions) == [("unallocate", DEP_B, ALLOC_1, "queued")]
        await db_session.commit()
        assert len(await ActionQueue(db_session).list_actions()) == 2

    async def test_always_resizes_existing_allocation(self, db_session, status_view, settings):
        await _set_rule(db_session, DEP_B, decision_basis="always", allocation_amount="2000")

        [action] = await DecisionEngine(db_session, status_view, settings).run_cycle()
        assert (action.type, action.allocation_id, action.amount) == ("reallocate", ALLOC_1, "2000")


@pytest.mark.asyncio
class TestLifetime:
    async def test_expired_with_auto_renewal_reallocates(self, db_session, status_view, settings):
        await _global(db_session, min_signal="100")
        await _set_rule(db_session, DEP_B, allocation_lifetime=5, auto_renewal=True)

        actions = await DecisionEngine(db_session, status_view, settings).run_cycle()
        assert ("reallocate", DEP_B, ALLOC_1, "queued") in _summary(actions)

    async def test_expired_without_auto_renewal_unallocates(self, db_session, status_view, settings):
        await _global(db_session, min_signal="100")
        await _set_rule(db_session, DEP_B, allocation_lifetime=5, auto_renewal=False)

        actions = await DecisionEngine(db_session, status_view, settings).run_cycle()
        assert ("unallocate", DEP_B, ALLOC_1, "queued") in _summary(actions)

    async def test_within_lifetime_kept_despite_thresholds(self, db_session, status_view, settings):
        await _global(db_session, min_signal="400")
        await _set_rule(db_session, DEP_B, allocation_lifetime=50, auto_renewal=True)

        actions = await DecisionEngine(db_session, status_view, settings).run_cycle()
        assert all(a.deployment_id != DEP_B for a in actions)


@pytest.mark.asyncio
class TestAllocationCaps:
    async def _decide(self, db, snapshot):
        index = await RuleStore(db).load_index()
        engine = DecisionEngine(db, FakeStatusView(), make_settings())
        return [c.deployment_id for c in engine.decide(index, snapshot)]

    def _snapshot(self, stake=IndexerStake(total=10_000, allocated=0)):
        return NetworkSnapshot(
            epoch=100,
            allocations=[],
            deployments=[
                DeploymentSnapshot(DEP_A, signalled_tokens=500, staked_tokens=1000),
                DeploymentSnapshot(DEP_B, signalled_tokens=300, staked_tokens=1000),
                DeploymentSnapshot(DEP_C, signalled_tokens=900, staked_tokens=1000),
            ],
            stake=stake,
        )

    async def test_ranked_by_signal_to_stake_within_available_stake(self, db_session):
        await _global(db_session, min_signal="1")
        snapshot = self._snapshot(IndexerStake(total=2500, allocated=0))
        assert await self._decide(db_session, snapshot) == [DEP_C, DEP_A]

    async def test_ties_broken_by_identifier(self, db_session):
        await _global(db_session, min_signal="1")
        snapshot = self._snapshot(IndexerStake(total=1000, allocated=0))
        snapshot.deployments = [
            DeploymentSnapshot(DEP_B, signalled_tokens=10, staked_tokens=0),
            DeploymentSnapshot(DEP_A, signalled_tokens=10, staked_tokens=0),
        ]
        assert await self._decide(db_session, snapshot) == [DEP_A]

    async def test_available_stake_limits(self, db_session):
        await _global(db_session, min_signal="1")
        assert await self._decide(db_session, self._snapshot(IndexerStake(total=1500, allocated=0))) == [DEP_C]

    async def test_max_allocation_percentage(self, db_session):
        await _global(db_session, min_signal="1", allocation_amount="3000", max_allocation_percentage=0.5)
        assert await self._decide(db_session, self._snapshot()) == [DEP_C]

    async def test_parallel_limit_is_per_deployment(self, db_session):
        await _global(db_session, min_signal="1", parallel_allocations=1)
        snapshot = self._snapshot()
        snapshot.allocations = [allocation(ALLOC_1, DEP_B)]
        assert await self._decide(db_session, snapshot) == [DEP_C, DEP_A]

    async def test_zero_parallel_allocations_blocks_new(self, db_session):
        await _global(db_session, min_signal="1", parallel_allocations=0)
        assert await self._decide(db_session, self._snapshot()) == []
