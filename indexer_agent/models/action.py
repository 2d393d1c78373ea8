from datetime import datetime
from enum import Enum

from sqlalchemy import String, Boolean, DateTime, Integer
from sqlalchemy.orm import Mapped, mapped_column

from indexer_agent.database import Base, JSONType, utcnow


class ActionStatus(str, Enum):
    QUEUED = "queued"
    APPROVED = "approved"
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELED = "canceled"


class ActionType(str, Enum):
    ALLOCATE = "allocate"
    UNALLOCATE = "unallocate"
    REALLOCATE = "reallocate"


IN_FLIGHT_STATUSES = {ActionStatus.QUEUED, ActionStatus.APPROVED, ActionStatus.PENDING}
TERMINAL_STATUSES = {ActionStatus.SUCCESS, ActionStatus.FAILED, ActionStatus.CANCELED}


class Action(Base):
    __tablename__ = "actions"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    status: Mapped[str] = mapped_column(String(20), index=True)
    type: Mapped[str] = mapped_column(String(20), index=True)
    deployment_id: Mapped[str | None] = mapped_column(String(66), nullable=True, index=True)
    allocation_id: Mapped[str | None] = mapped_column(String(42), nullable=True, index=True)
    amount: Mapped[str | None] = mapped_column(String(78), nullable=True)  # base units
    proof: Mapped[str | None] = mapped_column(String(66), nullable=True)
    force: Mapped[bool] = mapped_column(Boolean, default=False)
    priority: Mapped[int] = mapped_column(Integer, default=0)  # lower runs first
    source: Mapped[str] = mapped_column(String(100), index=True)
    reason: Mapped[str] = mapped_column(String(500), default="")
    transaction_ref: Mapped[str | None] = mapped_column(String(100), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    result: Mapped[dict] = mapped_column(JSONType, default=dict)
    pending_cycles: Mapped[int] = mapped_column(Integer, default=0)
    # Holds the target while queued/approved/pending, NULL once terminal
    in_flight_target: Mapped[str | None] = mapped_column(String(100), nullable=True, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def target(self) -> str | None:
        if self.allocation_id:
            return f"allocation:{self.allocation_id}"
        if self.deployment_id:
            return f"deployment:{self.deployment_id}"
        return None

    @property
    def is_terminal(self) -> bool:
        return self.status in {s.value for s in TERMINAL_STATUSES}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "status": self.status,
            "type": self.type,
            "deployment_id": self.deployment_id,
            "allocation_id": self.allocation_id,
            "amount": self.amount,
            "proof": self.proof,
            "force": self.force,
            "priority": self.priority,
            "source": self.source,
            "reason": self.reason,
            "transaction_ref": self.transaction_ref,
            "failure_reason": self.failure_reason,
            "result": self.result or {},
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
