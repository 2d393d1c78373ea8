"""
Transaction collaborator — submits a batch of allocation operations.

Signing, broadcasting and confirmation live behind this interface. The
submitter reports one outcome per operation so that a partially reverted
batch resolves each action independently.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import httpx

from indexer_agent.errors import ExternalOperationError, TransientNetworkError
from indexer_agent.services.operation_builder import AllocationOperation

logger = logging.getLogger(__name__)


@dataclass
class OperationOutcome:
    """Result of one operation within a submitted batch."""
    action_id: int
    success: bool
    transaction_ref: str | None = None
    failure_reason: str | None = None
    # Submitted but not confirmed either way; reconciled on a later cycle
    transient: bool = False
    result: dict = field(default_factory=dict)


class TransactionSubmitter(ABC):
    @abstractmethod
    async def submit(self, operations: list[AllocationOperation]) -> list[OperationOutcome]:
        """
        Submit a batch and return one outcome per operation.

        Raises:
            TransientNetworkError: no definitive result for the batch
            ExternalOperationError: the whole batch was rejected
        """


class HttpTransactionSubmitter(TransactionSubmitter):
    """Talks to a signing/broadcasting service over HTTP."""

    def __init__(self, base_url: str, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def submit(self, operations: list[AllocationOperation]) -> list[OperationOutcome]:
        if not operations:
            return []

        payload = {"operations": [op.to_payload() for op in operations]}
        timeout = httpx.Timeout(connect=10.0, read=self.timeout, write=10.0, pool=10.0)
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                resp = await client.post(f"{self.base_url}/batches", json=payload)
        except httpx.TimeoutException as exc:
            raise TransientNetworkError(f"Transaction submission timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise TransientNetworkError(f"Transaction service unreachable: {exc}") from exc

        if resp.status_code >= 500:
            raise TransientNetworkError(
                f"Transaction service error {resp.status_code}: {resp.text[:200]}"
            )
        if resp.status_code >= 400:
            raise ExternalOperationError(
                f"Batch rejected ({resp.status_code}): {resp.text[:500]}"
            )

        try:
            body = resp.json()
        except ValueError as exc:
            raise TransientNetworkError(f"Unreadable transaction service response: {exc}") from exc

        by_action = {int(o["action_id"]): o for o in body.get("outcomes", []) if "action_id" in o}
        outcomes = []
        for op in operations:
            raw = by_action.get(op.action_id)
            if raw is None:
                outcomes.append(OperationOutcome(
                    action_id=op.action_id,
                    success=False,
                    transient=True,
                    failure_reason="No outcome reported for operation",
                ))
                continue

            status = raw.get("status")
            tx = raw.get("transaction") or body.get("transaction")
            if status == "confirmed":
                outcomes.append(OperationOutcome(
                    action_id=op.action_id,
                    success=True,
                    transaction_ref=tx,
                    result=raw.get("result") or {},
                ))
            elif status == "reverted":
                outcomes.append(OperationOutcome(
                    action_id=op.action_id,
                    success=False,
                    transaction_ref=tx,
                    failure_reason=raw.get("reason") or "Transaction reverted",
                ))
            else:
                outcomes.append(OperationOutcome(
                    action_id=op.action_id,
                    success=False,
                    transaction_ref=tx,
                    transient=True,
                    failure_reason=raw.get("reason") or f"Unconfirmed ({status})",
                ))
        return outcomes
