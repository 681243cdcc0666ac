"""
Shared fixtures: an in-memory SQLite database and a seeder for accounts, emails and labels.
"""
from datetime import datetime
from typing import Optional

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from label_engine.database import init_db
from label_engine.models.account import Account
from label_engine.models.email import Email
from label_engine.models.email_meta import EmailMeta
from label_engine.models.label import Label, UserLabel


class Seeder:
    """Inserts committed rows through the test session factory."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    async def _add(self, obj):
        async with self._session_factory() as db:
            db.add(obj)
            await db.commit()
        return obj

    async def account(
        self,
        user_id: Optional[int] = 1,
        provider_type: str = "imap",
        imap_host: str = "imap.example.com",
        enable_ai_labeling: bool = True,
    ) -> Account:
        return await self._add(Account(
            user_id=user_id,
            imap_host=imap_host,
            imap_port=993,
            imap_username="user@example.com",
            imap_password_encrypted=None,
            provider_type=provider_type,
            enable_ai_labeling=enable_ai_labeling,
        ))

    async def email(
        self,
        account: Optional[Account] = None,
        subject: str = "Quarterly planning",
        body: str = "Let's go over the roadmap for next quarter.",
        sender: str = "alice@acme.com",
        message_id: Optional[str] = None,
        imap_uid: Optional[int] = None,
        imap_mailbox: Optional[str] = None,
        imap_uid_validity: Optional[int] = None,
        created_at: Optional[datetime] = None,
    ) -> Email:
        email = Email(
            account_id=account.id if account else None,
            subject=subject,
            body=body,
            sender=sender,
            message_id=message_id,
            imap_uid=imap_uid,
            imap_mailbox=imap_mailbox,
            imap_uid_validity=imap_uid_validity,
            labels=[],
        )
        if created_at is not None:
            email.created_at = created_at
        return await self._add(email)

    async def meta(
        self,
        email: Email,
        label: Optional[str] = None,
        method: str = "llm:gemini",
        embedding: Optional[list[float]] = None,
        model: Optional[str] = "fake:embed",
        reasoning: str = "Seeded classification",
    ) -> EmailMeta:
        classification = None
        if label is not None:
            classification = {
                "is_hierarchy": False,
                "is_client": False,
                "is_meeting": False,
                "is_escalation": False,
                "is_urgent": False,
                "suggested_label": label,
                "reasoning": reasoning,
                "confidence": 0.9,
            }
        return await self._add(EmailMeta(
            email_id=email.id,
            classification=classification,
            classification_method=method,
            suggested_label=label,
            embedding=embedding,
            embedding_model=model if embedding is not None else None,
        ))

    async def label(
        self,
        name: str,
        user_id: Optional[int] = None,
        is_system: bool = False,
        adopt: bool = True,
    ) -> Label:
        async with self._session_factory() as db:
            label = Label(name=name, is_system=is_system, created_by_user_id=user_id)
            db.add(label)
            await db.flush()
            if adopt and user_id is not None:
                db.add(UserLabel(user_id=user_id, label_id=label.id))
            await db.commit()
        return label


@pytest.fixture
async def engine():
    """Fresh in-memory database per test; every session shares the one connection."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await init_db(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def seed(session_factory):
    return Seeder(session_factory)
