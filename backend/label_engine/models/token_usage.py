"""Token usage telemetry — which tier classified an email and what it cost."""

from datetime import datetime

from sqlalchemy import String, Integer, DateTime, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column

from label_engine.database import Base
from label_engine.models._time import utcnow


class TokenUsageStat(Base):
    __tablename__ = "token_usage_stats"

    id: Mapped[int] = mapped_column(primary_key=True)
    email_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("emails.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    classification_method: Mapped[str] = mapped_column(String(32), index=True)
    estimated_tokens: Mapped[int] = mapped_column(Integer, default=0)
    tokens_saved: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)

    def __repr__(self):
        return f"<TokenUsage email={self.email_id}: {self.classification_method} ({self.estimated_tokens})>"
