"""Label taxonomy models — labels, user label sets, assignments and centroids."""

from datetime import datetime
from typing import Optional

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    String, Text, Float, Boolean, Integer, DateTime, ForeignKey, Index, UniqueConstraint, text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from label_engine.database import Base
from label_engine.models._time import utcnow


class Label(Base):
    __tablename__ = "labels"
    __table_args__ = (
        Index(
            "uq_labels_system_name", "name", unique=True,
            postgresql_where=text("is_system"), sqlite_where=text("is_system = 1"),
        ),
        Index(
            "uq_labels_user_name", "created_by_user_id", "name", unique=True,
            postgresql_where=text("created_by_user_id IS NOT NULL"),
            sqlite_where=text("created_by_user_id IS NOT NULL"),
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    color: Mapped[str] = mapped_column(String(16), default="#3B82F6")
    description: Mapped[Optional[str]] = mapped_column(Text)
    is_system: Mapped[bool] = mapped_column(Boolean, default=False)
    created_by_user_id: Mapped[Optional[int]] = mapped_column(Integer, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    def __repr__(self):
        return f"<Label {self.id}: {self.name}{' (system)' if self.is_system else ''}>"


class UserLabel(Base):
    __tablename__ = "user_labels"
    __table_args__ = (UniqueConstraint("user_id", "label_id", name="uq_user_labels"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    label_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("labels.id", ondelete="CASCADE"), nullable=False
    )


class EmailLabel(Base):
    __tablename__ = "email_labels"
    __table_args__ = (UniqueConstraint("email_id", "label_id", name="uq_email_labels"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    email_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("emails.id", ondelete="CASCADE"), nullable=False, index=True
    )
    label_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("labels.id", ondelete="CASCADE"), nullable=False
    )
    assigned_by: Mapped[str] = mapped_column(String(16), default="ai")  # system, ai, user, admin
    confidence_score: Mapped[Optional[float]] = mapped_column(Float)
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    label: Mapped["Label"] = relationship()

    def __repr__(self):
        return f"<EmailLabel email={self.email_id} label={self.label_id} by={self.assigned_by}>"


class LabelEmbedding(Base):
    """Running-mean centroid of the embeddings of a label's emails, per embedding model."""

    __tablename__ = "label_embeddings"
    __table_args__ = (UniqueConstraint("label_id", "embedding_model", name="uq_label_embeddings"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    label_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("labels.id", ondelete="CASCADE"), nullable=False, index=True
    )
    embedding_model: Mapped[str] = mapped_column(String(128), nullable=False)
    embedding = mapped_column(Vector(), nullable=True)
    email_count: Mapped[int] = mapped_column(Integer, default=0)
    last_updated: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    label: Mapped["Label"] = relationship()

    def __repr__(self):
        return f"<LabelEmbedding label={self.label_id} model={self.embedding_model} n={self.email_count}>"
