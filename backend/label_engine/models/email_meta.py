"""Email metadata — classification, facets and embedding, one row per email."""

from datetime import datetime
from typing import Optional

from pgvector.sqlalchemy import Vector
from sqlalchemy import String, Boolean, Integer, DateTime, JSON, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship

from label_engine.database import Base
from label_engine.models._time import utcnow


class EmailMeta(Base):
    __tablename__ = "email_meta"

    id: Mapped[int] = mapped_column(primary_key=True)
    email_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("emails.id", ondelete="CASCADE"), unique=True, nullable=False
    )

    # Classification
    classification: Mapped[Optional[dict]] = mapped_column(JSON)
    classification_method: Mapped[Optional[str]] = mapped_column(String(32))
    suggested_label: Mapped[Optional[str]] = mapped_column(String(128))
    is_hierarchy: Mapped[bool] = mapped_column(Boolean, default=False)
    is_client: Mapped[bool] = mapped_column(Boolean, default=False)
    is_meeting: Mapped[bool] = mapped_column(Boolean, default=False)
    is_escalation: Mapped[bool] = mapped_column(Boolean, default=False)
    is_urgent: Mapped[bool] = mapped_column(Boolean, default=False)

    # Embedding: vectors from different models are never compared
    embedding = mapped_column(Vector(), nullable=True)
    embedding_model: Mapped[Optional[str]] = mapped_column(String(128), index=True)

    # Reminder flags
    has_mom_received: Mapped[bool] = mapped_column(Boolean, default=False)
    related_meeting_id: Mapped[Optional[int]] = mapped_column(Integer)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    email: Mapped["Email"] = relationship(back_populates="meta")

    def __repr__(self):
        return f"<EmailMeta {self.email_id}: {self.suggested_label} via {self.classification_method}>"
