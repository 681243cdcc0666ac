"""Label registry — system and per-user taxonomy, user label sets, email assignments.

Methods operate inside the caller's session and never commit.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from label_engine.database import upsert
from label_engine.errors import NotFoundError
from label_engine.models.email import Email
from label_engine.models.label import EmailLabel, Label, UserLabel
from label_engine.services.classification import ClassificationResult
from label_engine.services.heuristics import UNCATEGORIZED

logger = logging.getLogger(__name__)

SYSTEM_LABELS = {
    "Escalation": ("#EF4444", "Issues that need escalation"),
    "Urgent": ("#F59E0B", "Time-critical emails"),
    "MOM": ("#10B981", "Meetings and minutes of meeting"),
}

# Facet that triggers each system label
SYSTEM_LABEL_FACETS = {
    "Escalation": "is_escalation",
    "Urgent": "is_urgent",
    "MOM": "is_meeting",
}

RESERVED_LABELS = {"MOM", "Escalation", "Urgent", UNCATEGORIZED}
_RESERVED_LOWER = {name.lower() for name in RESERVED_LABELS}

ASSIGNERS = ("system", "ai", "user", "admin")
MANUAL_ASSIGNERS = ("user", "admin")


def is_reserved(name: Optional[str]) -> bool:
    return (name or "").strip().lower() in _RESERVED_LOWER


def system_labels_for(result: ClassificationResult) -> list[str]:
    """System label names whose facet is set on the classification."""
    return [name for name, facet in SYSTEM_LABEL_FACETS.items() if getattr(result, facet)]


class LabelRegistry:
    """Owns labels and their assignment to users and emails."""

    async def ensure_system_labels(self, db: AsyncSession) -> dict[str, Label]:
        """Create the system labels on first use; returns them by name."""
        for name, (color, description) in SYSTEM_LABELS.items():
            stmt = upsert(db, Label).values(
                name=name,
                color=color,
                description=description,
                is_system=True,
                created_by_user_id=None,
                created_at=datetime.now(timezone.utc),
            ).on_conflict_do_nothing()
            await db.execute(stmt)

        rows = (await db.execute(
            select(Label).where(Label.is_system.is_(True), Label.name.in_(SYSTEM_LABELS.keys()))
        )).scalars().all()
        return {label.name: label for label in rows}

    async def create(
        self,
        db: AsyncSession,
        name: str,
        user_id: Optional[int] = None,
        color: str = "#3B82F6",
        description: Optional[str] = None,
        is_system: bool = False,
    ) -> Label:
        name = name.strip()
        if not name:
            raise ValueError("Label name must not be empty")
        if not is_system and is_reserved(name):
            raise ValueError(f"'{name}' is a reserved label name")

        label = Label(
            name=name,
            color=color,
            description=description,
            is_system=is_system,
            created_by_user_id=user_id,
        )
        db.add(label)
        await db.flush()
        logger.info(f"Created label '{name}' (id={label.id}, user={user_id})")
        return label

    async def get(self, db: AsyncSession, label_id: int) -> Label:
        label = await db.get(Label, label_id)
        if label is None:
            raise NotFoundError(f"Label {label_id} not found")
        return label

    async def find_by_name(self, db: AsyncSession, name: str, user_id: Optional[int] = None) -> Optional[Label]:
        """Case-insensitive lookup among the user's labels (created or adopted), or all labels."""
        query = select(Label).where(func.lower(Label.name) == name.strip().lower())
        if user_id is not None:
            adopted = select(UserLabel.label_id).where(UserLabel.user_id == user_id)
            query = query.where(or_(Label.created_by_user_id == user_id, Label.id.in_(adopted)))
        return (await db.execute(query.order_by(Label.id).limit(1))).scalar_one_or_none()

    async def assign_to_user(self, db: AsyncSession, user_id: int, label_id: int):
        """Add a label to the user's label set (no-op if already there)."""
        stmt = upsert(db, UserLabel).values(user_id=user_id, label_id=label_id)
        await db.execute(stmt.on_conflict_do_nothing(index_elements=["user_id", "label_id"]))

    async def assign_to_email(
        self,
        db: AsyncSession,
        email_id: int,
        label: Label,
        assigned_by: str,
        confidence: Optional[float] = None,
    ):
        """Assign a label to an email; re-assignment updates provenance instead of duplicating."""
        if assigned_by not in ASSIGNERS:
            raise ValueError(f"Invalid assigner: {assigned_by}")

        email = await db.get(Email, email_id)
        if email is None:
            raise NotFoundError(f"Email {email_id} not found")

        now = datetime.now(timezone.utc)
        stmt = upsert(db, EmailLabel).values(
            email_id=email_id,
            label_id=label.id,
            assigned_by=assigned_by,
            confidence_score=confidence,
            assigned_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["email_id", "label_id"],
            set_={"assigned_by": assigned_by, "confidence_score": confidence, "assigned_at": now},
        )
        await db.execute(stmt)

        # Denormalized name list; reassign so the JSON column is marked dirty
        names = list(email.labels or [])
        if label.name not in names:
            email.labels = names + [label.name]

        logger.info(f"Assigned '{label.name}' to email {email_id} by {assigned_by} (confidence={confidence})")

    async def email_labels(self, db: AsyncSession, email_id: int) -> list[tuple[EmailLabel, Label]]:
        rows = await db.execute(
            select(EmailLabel, Label)
            .join(Label, Label.id == EmailLabel.label_id)
            .where(EmailLabel.email_id == email_id)
            .order_by(EmailLabel.id)
        )
        return list(rows.tuples().all())

    async def has_manual_label(self, db: AsyncSession, email_id: int) -> bool:
        """True when a person already put a non-system label on the email."""
        count = (await db.execute(
            select(func.count(EmailLabel.id))
            .join(Label, Label.id == EmailLabel.label_id)
            .where(
                EmailLabel.email_id == email_id,
                EmailLabel.assigned_by.in_(MANUAL_ASSIGNERS),
                Label.is_system.is_(False),
            )
        )).scalar() or 0
        return count > 0

    async def user_labels(self, db: AsyncSession, user_id: int) -> list[Label]:
        rows = await db.execute(
            select(Label)
            .join(UserLabel, UserLabel.label_id == Label.id)
            .where(UserLabel.user_id == user_id)
            .order_by(Label.name)
        )
        return list(rows.scalars().all())


# Singleton
label_registry = LabelRegistry()
