"""Pending label suggestion — the approval workflow's state machine row."""

from datetime import datetime
from typing import Optional

from sqlalchemy import String, Text, Float, Integer, DateTime, ForeignKey, Index, func, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from label_engine.database import Base
from label_engine.models._time import utcnow

STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"


class PendingLabelSuggestion(Base):
    __tablename__ = "pending_label_suggestions"

    id: Mapped[int] = mapped_column(primary_key=True)
    email_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("emails.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    suggested_label_name: Mapped[str] = mapped_column(String(128), nullable=False)
    suggested_by: Mapped[str] = mapped_column(String(16), default="ai")  # ai, similarity, hybrid, system
    confidence_score: Mapped[Optional[float]] = mapped_column(Float)
    reasoning: Mapped[Optional[str]] = mapped_column(Text)

    # Status
    status: Mapped[str] = mapped_column(String(16), default=STATUS_PENDING, index=True)
    approved_by: Mapped[Optional[int]] = mapped_column(Integer)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    email: Mapped["Email"] = relationship()

    def __repr__(self):
        return f"<Suggestion {self.id}: {self.suggested_label_name} ({self.status})>"


# At most one pending suggestion per (email, label name), names compared case-insensitively
Index(
    "uq_pending_suggestion",
    PendingLabelSuggestion.email_id,
    func.lower(PendingLabelSuggestion.suggested_label_name),
    unique=True,
    postgresql_where=text("status = 'pending'"),
    sqlite_where=text("status = 'pending'"),
)
