from datetime import datetime

from sqlalchemy import String, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from indexer_agent.database import Base, JSONType, utcnow


class AuditLog(Base):
    """One operator or worker mutation. Rows are chained by entry_hash."""

    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(primary_key=True)
    event_type: Mapped[str] = mapped_column(String(30), index=True)
    actor: Mapped[str] = mapped_column(String(100))
    summary: Mapped[str] = mapped_column(String(500))
    subject_type: Mapped[str] = mapped_column(String(30))
    subject_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    details: Mapped[dict] = mapped_column(JSONType, default=dict)
    previous_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    entry_hash: Mapped[str] = mapped_column(String(64), unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)

    def hashed_fields(self) -> dict:
        return {
            "event_type": self.event_type,
            "actor": self.actor,
            "summary": self.summary,
            "subject_type": self.subject_type,
            "subject_id": self.subject_id,
            "details": self.details,
        }
