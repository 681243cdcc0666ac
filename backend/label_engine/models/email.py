"""Email model — the parsed message as delivered by the ingestion collaborator."""

from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, String, Text, Integer, DateTime, JSON, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship

from label_engine.database import Base
from label_engine.models._time import utcnow


class Email(Base):
    __tablename__ = "emails"

    id: Mapped[int] = mapped_column(primary_key=True)
    account_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("email_accounts.id", ondelete="CASCADE"), index=True
    )
    message_id: Mapped[Optional[str]] = mapped_column(String(512), index=True)

    # IMAP locator: a UID is only meaningful inside imap_mailbox at this UIDVALIDITY
    imap_uid: Mapped[Optional[int]] = mapped_column(Integer)
    imap_mailbox: Mapped[Optional[str]] = mapped_column(String(256))
    imap_uid_validity: Mapped[Optional[int]] = mapped_column(BigInteger)

    # Addresses
    sender: Mapped[Optional[str]] = mapped_column(String(256), index=True)
    sender_name: Mapped[Optional[str]] = mapped_column(String(256))

    # Content
    subject: Mapped[Optional[str]] = mapped_column(Text, index=True)
    body: Mapped[Optional[str]] = mapped_column(Text)

    # Denormalized label names, kept in step with email_labels
    labels: Mapped[Optional[list]] = mapped_column(JSON, default=list)

    received_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)

    # Relationships
    account: Mapped[Optional["Account"]] = relationship()
    meta: Mapped[Optional["EmailMeta"]] = relationship(
        back_populates="email", cascade="all, delete-orphan", uselist=False
    )

    def __repr__(self):
        return f"<Email {self.id}: {self.subject[:50] if self.subject else '(no subject)'}>"
