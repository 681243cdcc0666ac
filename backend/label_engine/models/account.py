"""Email account model — mailbox credentials owned by a user."""

from datetime import datetime
from typing import Optional

from sqlalchemy import String, Integer, Boolean, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from label_engine.database import Base
from label_engine.models._time import utcnow


class Account(Base):
    __tablename__ = "email_accounts"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[Optional[int]] = mapped_column(Integer, index=True)

    # IMAP connection (password is stored encrypted)
    imap_host: Mapped[str] = mapped_column(String(256), nullable=False)
    imap_port: Mapped[int] = mapped_column(Integer, default=993)
    imap_username: Mapped[str] = mapped_column(String(256), nullable=False)
    imap_password_encrypted: Mapped[Optional[str]] = mapped_column(String(1024))
    provider_type: Mapped[str] = mapped_column(String(16), default="imap")  # gmail | imap

    enable_ai_labeling: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    @property
    def is_gmail(self) -> bool:
        return self.provider_type == "gmail" or "gmail" in (self.imap_host or "").lower()

    def __repr__(self):
        return f"<Account {self.id}: {self.imap_username} ({self.provider_type})>"
