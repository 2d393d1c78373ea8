"""
Decision Engine

Turns indexing rules plus a fresh network snapshot into candidate actions:

  never / offchain → nothing
  always           → keep an allocation open, sized per allocation_amount
  rules            → allocate / unallocate / reallocate from signal, stake
                     and query-fee thresholds and the allocation lifetime

New allocations compete for stake: candidates are ranked by signal-to-stake
ratio (descending, ties by identifier ascending) and accepted while the
deployment stays within its parallel allocation limit and the max
allocation percentage and available stake allow.

Candidates whose target already has an in-flight action are dropped.
"""

import logging
from dataclasses import dataclass
from fractions import Fraction

from sqlalchemy.ext.asyncio import AsyncSession

from indexer_agent.config import Settings, settings as default_settings
from indexer_agent.errors import ConflictError, TransientNetworkError
from indexer_agent.middleware.metrics import decision_actions_emitted_total, decision_cycles_total
from indexer_agent.models import Action, ActionStatus, ActionType, DecisionBasis
from indexer_agent.network.allocation_status import (
    AllocationSnapshot,
    DeploymentSnapshot,
    IndexerStake,
    NetworkSnapshot,
)
from indexer_agent.network.status_view import NetworkStatusView
from indexer_agent.schemas.schemas import ActionInput
from indexer_agent.services.action_queue import POLICY_ENGINE_SOURCE, ActionQueue
from indexer_agent.services.rule_store import EffectiveRule, RuleIndex, RuleStore

logger = logging.getLogger(__name__)


@dataclass
class Candidate:
    """A desired action before it is queued."""
    type: ActionType
    deployment_id: str
    rule: EffectiveRule
    reason: str
    allocation_id: str | None = None
    amount: int | None = None
    ratio: Fraction = Fraction(0)


def thresholds_met(rule: EffectiveRule, deployment: DeploymentSnapshot) -> bool:
    """
    Not met when the deployment is unsupported (and support is required) or
    signal exceeds max_signal. Otherwise met when any configured minimum is
    satisfied; a rule with no minimums never matches.
    """
    if rule.require_supported and not deployment.supported:
        return False
    max_signal = rule.tokens("max_signal")
    if max_signal is not None and deployment.signalled_tokens > max_signal:
        return False

    checks = []
    min_stake = rule.tokens("min_stake")
    if min_stake is not None:
        checks.append(deployment.staked_tokens >= min_stake)
    min_signal = rule.tokens("min_signal")
    if min_signal is not None:
        checks.append(deployment.signalled_tokens >= min_signal)
    min_fees = rule.tokens("min_average_query_fees")
    if min_fees is not None:
        checks.append(deployment.average_query_fees >= min_fees)
    return any(checks)


def signal_to_stake(deployment: DeploymentSnapshot) -> Fraction:
    return Fraction(deployment.signalled_tokens, deployment.staked_tokens or 1)


def _expired(rule: EffectiveRule, allocation: AllocationSnapshot, epoch: int) -> bool:
    lifetime = rule.allocation_lifetime
    return lifetime is not None and allocation.age_in_epochs(epoch) >= lifetime


def evaluate_deployment(
    deployment: DeploymentSnapshot,
    rule: EffectiveRule | None,
    active: list[AllocationSnapshot],
    epoch: int,
) -> list[Candidate]:
    """Desired actions for a single deployment, before stake limits."""
    if rule is None:
        return []
    basis = DecisionBasis(rule.decision_basis)
    if basis in (DecisionBasis.NEVER, DecisionBasis.OFFCHAIN):
        return []

    amount = rule.tokens("allocation_amount")
    ratio = signal_to_stake(deployment)

    if basis == DecisionBasis.ALWAYS:
        if not active:
            if amount is None:
                return []
            return [Candidate(ActionType.ALLOCATE, deployment.id, rule, "always", amount=amount, ratio=ratio)]
        candidates = []
        for allocation in active:
            resize = amount is not None and allocation.allocated_tokens != amount
            renew = rule.auto_renewal and _expired(rule, allocation, epoch)
            if resize or renew:
                candidates.append(Candidate(
                    ActionType.REALLOCATE, deployment.id, rule,
                    "always:resize" if resize else "always:renew",
                    allocation_id=allocation.id,
                    amount=amount if amount is not None else allocation.allocated_tokens,
                    ratio=ratio,
                ))
        return candidates

    met = thresholds_met(rule, deployment)
    if not active:
        if met and amount is not None:
            return [Candidate(ActionType.ALLOCATE, deployment.id, rule, "rules:thresholds-met", amount=amount, ratio=ratio)]
        return []

    candidates = []
    for allocation in active:
        expired = _expired(rule, allocation, epoch)
        if not met:
            if rule.auto_renewal and rule.allocation_lifetime is not None and not expired:
                continue
            candidates.append(Candidate(
                ActionType.UNALLOCATE, deployment.id, rule, "rules:thresholds-not-met",
                allocation_id=allocation.id, ratio=ratio,
            ))
        elif expired and rule.auto_renewal:
            candidates.append(Candidate(
                ActionType.REALLOCATE, deployment.id, rule, "rules:lifetime-expired",
                allocation_id=allocation.id,
                amount=amount if amount is not None else allocation.allocated_tokens,
                ratio=ratio,
            ))
        elif expired:
            candidates.append(Candidate(
                ActionType.UNALLOCATE, deployment.id, rule, "rules:lifetime-expired",
                allocation_id=allocation.id, ratio=ratio,
            ))
    return candidates


def select_allocations(
    candidates: list[Candidate],
    active_counts: dict[str, int],
    stake: IndexerStake | None,
) -> list[Candidate]:
    """
    Rank allocate candidates by signal-to-stake ratio (desc), identifier
    (asc), and accept while the max allocation percentage and available
    stake allow. `parallel_allocations` caps the active allocations of each
    deployment, counted from `active_counts` plus those accepted here.
    """
    ranked = sorted(candidates, key=lambda c: (-c.ratio, c.deployment_id))
    accepted = []
    counts = dict(active_counts)
    committed = stake.allocated if stake else 0
    available = stake.available if stake else None

    for candidate in ranked:
        amount = candidate.amount or 0
        limit = candidate.rule.parallel_allocations
        if limit is not None and counts.get(candidate.deployment_id, 0) + 1 > limit:
            logger.debug("Skipping %s: parallel allocation limit %d reached", candidate.deployment_id, limit)
            continue
        pct = candidate.rule.max_allocation_percentage
        if pct is not None and stake is not None and committed + amount > Fraction(str(pct)) * stake.total:
            logger.debug("Skipping %s: max allocation percentage %.2f reached", candidate.deployment_id, pct)
            continue
        if available is not None and amount > available:
            logger.debug("Skipping %s: insufficient available stake", candidate.deployment_id)
            continue
        accepted.append(candidate)
        counts[candidate.deployment_id] = counts.get(candidate.deployment_id, 0) + 1
        committed += amount
        if available is not None:
            available -= amount
    return accepted


class DecisionEngine:
    """Evaluates rules against the network and queues the resulting actions."""

    def __init__(
        self,
        session: AsyncSession,
        status_view: NetworkStatusView,
        settings: Settings = default_settings,
    ):
        self.session = session
        self.status_view = status_view
        self.settings = settings

    def decide(self, index: RuleIndex, snapshot: NetworkSnapshot) -> list[Candidate]:
        """Pure decision step: rules + snapshot → ordered candidate list."""
        active = snapshot.active_allocations(self.settings.dispute_epochs)
        active_by_deployment: dict[str, list[AllocationSnapshot]] = {}
        for allocation in active:
            active_by_deployment.setdefault(allocation.deployment_id, []).append(allocation)

        deployments = {d.id: d for d in snapshot.deployments}
        # Explicitly ruled or allocated deployments the snapshot did not list
        for deployment_id in [*index.deployment_identifiers(), *active_by_deployment]:
            deployments.setdefault(deployment_id, DeploymentSnapshot(id=deployment_id))

        allocate, others = [], []
        for deployment_id in sorted(deployments):
            deployment = deployments[deployment_id]
            rule = index.effective(deployment_id, deployment.groups)
            for candidate in evaluate_deployment(
                deployment, rule, active_by_deployment.get(deployment_id, []), snapshot.epoch,
            ):
                (allocate if candidate.type == ActionType.ALLOCATE else others).append(candidate)

        return others + select_allocations(
            allocate, {d: len(a) for d, a in active_by_deployment.items()}, snapshot.stake,
        )

    async def run_cycle(self) -> list[Action]:
        """Fetch a snapshot, decide and queue. Returns the actions queued."""
        if self.settings.allocation_management_mode == "manual":
            decision_cycles_total.labels(outcome="manual_mode").inc()
            logger.debug("Allocation management is manual, decision engine idle")
            return []

        try:
            snapshot = await self.status_view.snapshot()
        except TransientNetworkError as exc:
            logger.warning("Network status unavailable, deferring decision cycle: %s", exc)
            decision_cycles_total.labels(outcome="deferred").inc()
            return []

        store = RuleStore(self.session, self.settings)
        index = await store.load_index()
        candidates = self.decide(index, snapshot)

        queue = ActionQueue(self.session)
        auto_approved = self.settings.auto_approved
        queued = []
        for candidate in candidates:
            approve = (
                self.settings.allocation_management_mode == "auto"
                or candidate.deployment_id in auto_approved
            )
            action_input = ActionInput(
                type=candidate.type,
                deployment_id=candidate.deployment_id,
                allocation_id=candidate.allocation_id,
                amount=str(candidate.amount) if candidate.amount is not None else None,
                source=POLICY_ENGINE_SOURCE,
                reason=candidate.reason,
                status=ActionStatus.APPROVED if approve else ActionStatus.QUEUED,
            )
            try:
                # A savepoint per candidate: a conflict raised by the flush
                # rolls back only this insert
                async with self.session.begin_nested():
                    action = await queue.enqueue(action_input, approve=approve)
            except ConflictError:
                logger.debug(
                    "Dropping %s for %s: an action is already in flight",
                    candidate.type.value, candidate.allocation_id or candidate.deployment_id,
                )
                continue
            queued.append(action)
            decision_actions_emitted_total.labels(type=candidate.type.value).inc()

        decision_cycles_total.labels(outcome="completed").inc()
        logger.info("Decision cycle at epoch %d queued %d action(s)", snapshot.epoch, len(queued))
        return queued
