from datetime import datetime
from enum import Enum

from sqlalchemy import String, Boolean, DateTime, Float, Integer, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from indexer_agent.database import Base, utcnow

GLOBAL_IDENTIFIER = "global"


class IdentifierType(str, Enum):
    DEPLOYMENT = "deployment"
    SUBGRAPH = "subgraph"
    GROUP = "group"


class DecisionBasis(str, Enum):
    RULES = "rules"
    NEVER = "never"
    ALWAYS = "always"
    OFFCHAIN = "offchain"


# Policy fields that take part in the field-level merge, in column order
POLICY_FIELDS = (
    "allocation_amount",
    "allocation_lifetime",
    "auto_renewal",
    "parallel_allocations",
    "max_allocation_percentage",
    "min_signal",
    "max_signal",
    "min_stake",
    "min_average_query_fees",
    "custom",
    "decision_basis",
    "require_supported",
)

# Token quantities are stored as base-unit integer strings
TOKEN_FIELDS = ("allocation_amount", "min_signal", "max_signal", "min_stake", "min_average_query_fees")


class IndexingRule(Base):
    __tablename__ = "indexing_rules"
    __table_args__ = (
        UniqueConstraint("identifier", "identifier_type", name="uq_indexing_rules_identifier"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    identifier: Mapped[str] = mapped_column(String(100), index=True)
    identifier_type: Mapped[str] = mapped_column(String(20))

    # NULL means "inherit from the less specific rule"
    allocation_amount: Mapped[str | None] = mapped_column(String(78), nullable=True)
    allocation_lifetime: Mapped[int | None] = mapped_column(Integer, nullable=True)
    auto_renewal: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    parallel_allocations: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_allocation_percentage: Mapped[float | None] = mapped_column(Float, nullable=True)
    min_signal: Mapped[str | None] = mapped_column(String(78), nullable=True)
    max_signal: Mapped[str | None] = mapped_column(String(78), nullable=True)
    min_stake: Mapped[str | None] = mapped_column(String(78), nullable=True)
    min_average_query_fees: Mapped[str | None] = mapped_column(String(78), nullable=True)
    custom: Mapped[str | None] = mapped_column(String(2000), nullable=True)
    decision_basis: Mapped[str | None] = mapped_column(String(20), nullable=True)
    require_supported: Mapped[bool | None] = mapped_column(Boolean, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        data = {"identifier": self.identifier, "identifier_type": self.identifier_type}
        for name in POLICY_FIELDS:
            data[name] = getattr(self, name)
        return data
