"""
Rule Store

Holds per-workload indexing rules and resolves which rule applies to a
deployment. Precedence is deployment > subgraph > group > global, merged
field by field: a field left unset on a more specific rule falls through to
the next rule in the candidate list.

Within one level, the first membership (in the order the deployment declares
its subgraphs/groups) that has a rule wins.
"""

import logging
from dataclasses import dataclass, fields

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from indexer_agent.config import Settings, settings as default_settings
from indexer_agent.errors import NotFoundError, ValidationError
from indexer_agent.models import IndexingRule, IdentifierType, DecisionBasis
from indexer_agent.models.indexing_rule import GLOBAL_IDENTIFIER, POLICY_FIELDS, TOKEN_FIELDS
from indexer_agent.network.identifiers import is_deployment_id
from indexer_agent.schemas.schemas import IndexingRuleInput

logger = logging.getLogger(__name__)

# Applied after the merge when no level sets them
_MERGE_DEFAULTS = {
    "auto_renewal": True,
    "require_supported": True,
    "decision_basis": DecisionBasis.RULES.value,
}

# Most specific first
_TYPE_PRECEDENCE = (IdentifierType.DEPLOYMENT, IdentifierType.SUBGRAPH, IdentifierType.GROUP)


@dataclass
class EffectiveRule:
    """The merged rule for one workload."""
    identifier: str
    identifier_type: str
    allocation_amount: str | None = None
    allocation_lifetime: int | None = None
    auto_renewal: bool | None = None
    parallel_allocations: int | None = None
    max_allocation_percentage: float | None = None
    min_signal: str | None = None
    max_signal: str | None = None
    min_stake: str | None = None
    min_average_query_fees: str | None = None
    custom: str | None = None
    decision_basis: str | None = None
    require_supported: bool | None = None

    def tokens(self, name: str) -> int | None:
        value = getattr(self, name)
        return int(value) if value is not None else None

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def merge_rules(candidates: list[IndexingRule]) -> EffectiveRule | None:
    """Merge an ordered (most specific first) list of rules field by field."""
    if not candidates:
        return None
    head = candidates[0]
    merged = EffectiveRule(identifier=head.identifier, identifier_type=head.identifier_type)
    for name in POLICY_FIELDS:
        for rule in candidates:
            value = getattr(rule, name)
            if value is not None:
                setattr(merged, name, value)
                break
    for name, default in _MERGE_DEFAULTS.items():
        if getattr(merged, name) is None:
            setattr(merged, name, default)
    return merged


class RuleIndex:
    """In-memory lookup over a loaded set of rules."""

    def __init__(self, rules: list[IndexingRule]):
        self._rules = {(r.identifier, r.identifier_type): r for r in rules}

    def get(self, identifier: str, identifier_type: IdentifierType) -> IndexingRule | None:
        return self._rules.get((identifier, identifier_type.value))

    @property
    def global_rule(self) -> IndexingRule | None:
        return self.get(GLOBAL_IDENTIFIER, IdentifierType.GROUP)

    def deployment_identifiers(self) -> list[str]:
        return sorted(
            identifier for identifier, kind in self._rules
            if kind == IdentifierType.DEPLOYMENT.value
        )

    def candidates(self, workload_id: str, group_memberships: list[str] | tuple[str, ...]) -> list[IndexingRule]:
        chain: list[IndexingRule] = []
        deployment_rule = self.get(workload_id, IdentifierType.DEPLOYMENT)
        if deployment_rule is not None:
            chain.append(deployment_rule)
        for level in (IdentifierType.SUBGRAPH, IdentifierType.GROUP):
            for membership in group_memberships:
                if membership == GLOBAL_IDENTIFIER:
                    continue
                rule = self.get(membership, level)
                if rule is not None:
                    chain.append(rule)
                    break
        if self.global_rule is not None:
            chain.append(self.global_rule)
        return chain

    def effective(self, workload_id: str, group_memberships: list[str] | tuple[str, ...] = ()) -> EffectiveRule | None:
        return merge_rules(self.candidates(workload_id, group_memberships))


def _normalize_tokens(name: str, value) -> str | None:
    if value is None:
        return None
    try:
        amount = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer token amount, got {value!r}")
    if amount < 0:
        raise ValidationError(f"{name} must not be negative")
    return str(amount)


def _validate_changes(rule_input: IndexingRuleInput) -> dict:
    identifier = rule_input.identifier.strip()
    if rule_input.identifier_type == IdentifierType.DEPLOYMENT and not is_deployment_id(identifier):
        raise ValidationError(f"Invalid deployment identifier {identifier!r}")
    if identifier == GLOBAL_IDENTIFIER and rule_input.identifier_type != IdentifierType.GROUP:
        raise ValidationError("The global rule must have identifier_type 'group'")

    changes = rule_input.model_dump(exclude_unset=True, exclude={"identifier", "identifier_type"})
    for name in TOKEN_FIELDS:
        if name in changes:
            changes[name] = _normalize_tokens(name, changes[name])
    for name in ("allocation_lifetime", "parallel_allocations"):
        if changes.get(name) is not None and changes[name] < 0:
            raise ValidationError(f"{name} must not be negative")
    pct = changes.get("max_allocation_percentage")
    if pct is not None and not 0.0 <= pct <= 1.0:
        raise ValidationError("max_allocation_percentage must be between 0 and 1")
    if changes.get("decision_basis") is not None:
        changes["decision_basis"] = DecisionBasis(changes["decision_basis"]).value
    return changes


class RuleStore:
    """CRUD and precedence resolution for indexing rules."""

    def __init__(self, session: AsyncSession, settings: Settings = default_settings):
        self.session = session
        self.settings = settings

    def _global_defaults(self) -> dict:
        return {
            "allocation_amount": str(self.settings.default_allocation_amount),
            "allocation_lifetime": None,
            "auto_renewal": True,
            "parallel_allocations": self.settings.default_parallel_allocations,
            "max_allocation_percentage": None,
            "min_signal": None,
            "max_signal": None,
            "min_stake": None,
            "min_average_query_fees": None,
            "custom": None,
            "decision_basis": DecisionBasis(self.settings.default_decision_basis).value,
            "require_supported": True,
        }

    async def ensure_global_rule(self) -> IndexingRule:
        """Create the global rule from configured defaults if it is missing."""
        rule = await self._get_exact(GLOBAL_IDENTIFIER, IdentifierType.GROUP)
        if rule is None:
            rule = IndexingRule(
                identifier=GLOBAL_IDENTIFIER,
                identifier_type=IdentifierType.GROUP.value,
                **self._global_defaults(),
            )
            self.session.add(rule)
            await self.session.flush()
            logger.info("Created global indexing rule from defaults")
        return rule

    async def _get_exact(self, identifier: str, identifier_type: IdentifierType) -> IndexingRule | None:
        result = await self.session.execute(
            select(IndexingRule).where(
                IndexingRule.identifier == identifier,
                IndexingRule.identifier_type == identifier_type.value,
            )
        )
        return result.scalar_one_or_none()

    async def load_index(self) -> RuleIndex:
        result = await self.session.execute(select(IndexingRule))
        return RuleIndex(list(result.scalars()))

    # ── Mutations ────────────────────────────────────────────────────────

    async def upsert_rule(self, rule_input: IndexingRuleInput) -> IndexingRule:
        """Create or update a rule. Only fields present in the input change."""
        changes = _validate_changes(rule_input)
        identifier = rule_input.identifier.strip()

        rule = await self._get_exact(identifier, rule_input.identifier_type)
        if rule is None:
            rule = IndexingRule(identifier=identifier, identifier_type=rule_input.identifier_type.value)
            self.session.add(rule)
        for name, value in changes.items():
            setattr(rule, name, value)

        await self.session.flush()
        logger.info("Indexing rule %s (%s) set: %s", identifier, rule.identifier_type, sorted(changes))
        return rule

    async def _reset_global(self) -> None:
        rule = await self.ensure_global_rule()
        for name, value in self._global_defaults().items():
            setattr(rule, name, value)
        await self.session.flush()
        logger.info("Global indexing rule reset to defaults")

    async def delete_rule(self, identifier: str) -> int:
        """Delete every rule with this identifier. The global rule is reset instead."""
        if identifier == GLOBAL_IDENTIFIER:
            await self._reset_global()
            return 0

        result = await self.session.execute(
            delete(IndexingRule).where(IndexingRule.identifier == identifier)
        )
        if not result.rowcount:
            raise NotFoundError(f"No indexing rule found for {identifier}", identifier=identifier)
        return result.rowcount

    async def delete_rules(self, identifiers: list[str]) -> int:
        """Idempotent bulk delete; returns the number of rows removed."""
        if GLOBAL_IDENTIFIER in identifiers:
            await self._reset_global()
        others = [i for i in identifiers if i != GLOBAL_IDENTIFIER]
        if not others:
            return 0
        result = await self.session.execute(
            delete(IndexingRule).where(IndexingRule.identifier.in_(others))
        )
        return result.rowcount or 0

    # ── Queries ──────────────────────────────────────────────────────────

    async def get_rule(self, identifier: str, merged: bool = False) -> IndexingRule | EffectiveRule | None:
        """
        Return the stored rule for an identifier, or the rule merged with
        the global rule. When the identifier exists under several types the
        most specific one is returned.
        """
        result = await self.session.execute(
            select(IndexingRule).where(IndexingRule.identifier == identifier)
        )
        by_type = {r.identifier_type: r for r in result.scalars()}
        rule = next((by_type[t.value] for t in _TYPE_PRECEDENCE if t.value in by_type), None)
        if rule is None or not merged:
            return rule
        return await self._merge_with_global(rule)

    async def list_rules(self, merged: bool = False) -> list[IndexingRule] | list[EffectiveRule]:
        result = await self.session.execute(
            select(IndexingRule).order_by(IndexingRule.identifier_type, IndexingRule.identifier)
        )
        rules = list(result.scalars())
        if not merged:
            return rules
        index = RuleIndex(rules)
        global_rule = index.global_rule
        return [
            merge_rules([r] if r is global_rule or global_rule is None else [r, global_rule])
            for r in rules
        ]

    async def _merge_with_global(self, rule: IndexingRule) -> EffectiveRule:
        global_rule = await self._get_exact(GLOBAL_IDENTIFIER, IdentifierType.GROUP)
        chain = [rule]
        if global_rule is not None and global_rule is not rule:
            chain.append(global_rule)
        return merge_rules(chain)

    async def get_effective_rule(
        self, workload_id: str, group_memberships: list[str] | tuple[str, ...] = (),
    ) -> EffectiveRule | None:
        """Resolve the merged rule for a workload; None if no rule applies at any level."""
        identifiers = {workload_id, GLOBAL_IDENTIFIER, *group_memberships}
        result = await self.session.execute(
            select(IndexingRule).where(IndexingRule.identifier.in_(identifiers))
        )
        return RuleIndex(list(result.scalars())).effective(workload_id, group_memberships)
