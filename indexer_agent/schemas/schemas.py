"""
Pydantic schemas for API request/response models.
"""

from datetime import datetime

from pydantic import BaseModel, Field

from indexer_agent.models.action import ActionStatus, ActionType
from indexer_agent.models.indexing_rule import DecisionBasis, IdentifierType


# ── Indexing rules ──

class IndexingRuleInput(BaseModel):
    """Only the fields that are sent are changed on upsert."""
    identifier: str = Field(..., min_length=1, max_length=100)
    identifier_type: IdentifierType
    allocation_amount: str | int | None = None
    allocation_lifetime: int | None = None
    auto_renewal: bool | None = None
    parallel_allocations: int | None = None
    max_allocation_percentage: float | None = None
    min_signal: str | int | None = None
    max_signal: str | int | None = None
    min_stake: str | int | None = None
    min_average_query_fees: str | int | None = None
    custom: str | None = None
    decision_basis: DecisionBasis | None = None
    require_supported: bool | None = None


class IndexingRuleOut(BaseModel):
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


class IdentifiersRequest(BaseModel):
    identifiers: list[str] = Field(..., min_length=1)


class DeleteResponse(BaseModel):
    deleted: int


# ── Actions ──

class ActionInput(BaseModel):
    type: ActionType
    deployment_id: str | None = None
    allocation_id: str | None = None
    amount: str | int | None = None
    proof: str | None = None
    force: bool = False
    priority: int = 0
    source: str | None = Field(None, max_length=100)
    reason: str = Field("", max_length=500)
    status: ActionStatus = ActionStatus.QUEUED


class ActionUpdate(BaseModel):
    model_config = {"extra": "forbid"}

    type: ActionType | None = None
    deployment_id: str | None = None
    allocation_id: str | None = None
    amount: str | int | None = None
    proof: str | None = None
    force: bool | None = None
    priority: int | None = None
    reason: str | None = Field(None, max_length=500)


class ActionOut(BaseModel):
    id: int
    status: str
    type: str
    deployment_id: str | None = None
    allocation_id: str | None = None
    amount: str | None = None
    proof: str | None = None
    force: bool = False
    priority: int = 0
    source: str
    reason: str = ""
    transaction_ref: str | None = None
    failure_reason: str | None = None
    result: dict = {}
    created_at: datetime | None = None
    updated_at: datetime | None = None


class QueueActionsRequest(BaseModel):
    actions: list[ActionInput] = Field(..., min_length=1)


class ActionIdsRequest(BaseModel):
    ids: list[int] = Field(..., min_length=1)


class SkippedAction(BaseModel):
    id: int
    status: str | None = None
    reason: str


class TransitionResponse(BaseModel):
    transitioned: list[ActionOut]
    skipped: list[SkippedAction]


class ExecutionResponse(BaseModel):
    results: list[ActionOut]


# ── Allocations ──

class AllocationOut(BaseModel):
    id: str
    indexer: str
    deployment_id: str
    allocated_tokens: str
    created_at_epoch: int
    closed_at_epoch: int | None = None
    age_in_epochs: int
    indexing_rewards: str
    query_fees_collected: str
    signalled_tokens: str
    staked_tokens: str
    status: str


# ── Conversion rate ──

class ConversionRateUpdate(BaseModel):
    value: str = Field(..., min_length=1, max_length=78)


class ConversionRateResponse(BaseModel):
    value: str | None
    changed: bool
    cost_models_updated: int
