"""
Audit Service

Append-only, hash-chained record of every mutation an operator or the
worker makes to indexing rules, actions and the conversion rate. Each entry
hashes its own fields together with the previous entry's hash, so editing or
removing a row breaks the chain from that point on.
"""

import hashlib
import json
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from indexer_agent.models import AuditLog

logger = logging.getLogger(__name__)


def chain_hash(fields: dict, previous_hash: str | None) -> str:
    raw = json.dumps({"fields": fields, "previous": previous_hash or ""}, sort_keys=True, default=str)
    return hashlib.sha256(raw.encode()).hexdigest()


class AuditService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def _head(self) -> str | None:
        result = await self.session.execute(
            select(AuditLog.entry_hash).order_by(AuditLog.id.desc()).limit(1)
        )
        return result.scalar()

    async def log_event(
        self,
        event_type: str,
        actor: str,
        summary: str,
        subject_type: str,
        subject_id: str | None = None,
        details: dict | None = None,
    ) -> AuditLog:
        """
        Append an entry to the chain.

        Args:
            event_type: e.g. "actions_queued", "rule_set", "conversion_rate_set"
            actor: "<role>:<user>" for API callers, "system:worker" for the worker
            summary: Human-readable one-liner
            subject_type: "action", "rule" or "conversion_rate"
            subject_id: Affected id(s), truncated to fit the column
            details: Structured payload
        """
        entry = AuditLog(
            event_type=event_type,
            actor=actor,
            summary=summary,
            subject_type=subject_type,
            subject_id=subject_id[:100] if subject_id else None,
            details=details or {},
        )
        entry.previous_hash = await self._head()
        entry.entry_hash = chain_hash(entry.hashed_fields(), entry.previous_hash)
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def log_actions_changed(self, event_type: str, ids: list[int], actor: str) -> AuditLog:
        verb = event_type.removeprefix("actions_")
        return await self.log_event(
            event_type=event_type,
            actor=actor,
            summary=f"{len(ids)} action(s) {verb}",
            subject_type="action",
            subject_id=",".join(str(i) for i in ids),
            details={"action_ids": ids},
        )

    async def log_rule_changed(self, event_type: str, identifier: str, details: dict, actor: str) -> AuditLog:
        return await self.log_event(
            event_type=event_type,
            actor=actor,
            summary=f"Indexing rule {identifier}: {event_type.replace('_', ' ')}",
            subject_type="rule",
            subject_id=identifier,
            details=details,
        )

    async def verify_chain(self) -> tuple[bool, int | None]:
        """
        Recompute every hash in insertion order.

        Returns (valid, id of the first broken entry or None).
        """
        result = await self.session.execute(select(AuditLog).order_by(AuditLog.id))
        previous = None
        for entry in result.scalars():
            if entry.previous_hash != previous or entry.entry_hash != chain_hash(entry.hashed_fields(), previous):
                logger.error("Audit chain broken at entry %d", entry.id)
                return False, entry.id
            previous = entry.entry_hash
        return True, None
