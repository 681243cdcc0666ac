"""Suggestion approval engine — the pending → approved | rejected state machine."""

import enum
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from label_engine.config import settings
from label_engine.database import async_session, upsert
from label_engine.models.email_meta import EmailMeta
from label_engine.models.label import EmailLabel
from label_engine.models.suggestion import (
    PendingLabelSuggestion,
    STATUS_APPROVED,
    STATUS_PENDING,
    STATUS_REJECTED,
)
from label_engine.services.labels import LabelRegistry, is_reserved, label_registry
from label_engine.services.mailbox_sync import mailbox_sync
from label_engine.services.similarity import SimilarityIndex, similarity_index

logger = logging.getLogger(__name__)

LABEL_PALETTE = [
    "#EF4444",  # Red
    "#F59E0B",  # Orange
    "#10B981",  # Green
    "#3B82F6",  # Blue
    "#8B5CF6",  # Purple
    "#EC4899",  # Pink
    "#14B8A6",  # Teal
    "#F97316",  # Deep orange
]

ACTIONS = ("approve", "reject")
SUGGESTERS = ("ai", "similarity", "hybrid", "system")


class SuggestionOutcome(str, enum.Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    ALREADY_TERMINAL = "already_terminal"
    NOT_FOUND = "not_found"


@dataclass
class SuggestionResult:
    success: bool
    message: str
    outcome: SuggestionOutcome
    label_id: Optional[int] = None
    applied_to_similar: int = 0

    def as_dict(self) -> dict:
        data = {"success": self.success, "message": self.message}
        if self.label_id is not None:
            data["label_id"] = self.label_id
        if self.applied_to_similar:
            data["applied_to_similar"] = self.applied_to_similar
        return data


class SuggestionApprovalEngine:
    """Gates creation of user labels behind explicit approval."""

    def __init__(
        self,
        session_factory=async_session,
        registry: LabelRegistry = label_registry,
        index: SimilarityIndex = similarity_index,
        mailbox_sync=None,
        rng: random.Random = None,
    ):
        self._session_factory = session_factory
        self._registry = registry
        self._index = index
        self._mailbox_sync = mailbox_sync
        self._rng = rng or random.Random()

    def pick_color(self) -> str:
        return self._rng.choice(LABEL_PALETTE)

    async def upsert_pending_suggestion(
        self,
        db: AsyncSession,
        email_id: int,
        user_id: int,
        label_name: str,
        suggested_by: str = "ai",
        confidence: Optional[float] = None,
        reasoning: Optional[str] = None,
    ) -> PendingLabelSuggestion:
        """Create the pending suggestion for (email, label), or refresh the existing one.

        Names match case-insensitively; the first spelling suggested is kept.

        Runs in the caller's session without committing.
        """
        label_name = label_name.strip()
        if is_reserved(label_name):
            raise ValueError(f"'{label_name}' is reserved and cannot be suggested")
        if suggested_by not in SUGGESTERS:
            raise ValueError(f"Invalid suggestion source: {suggested_by}")

        now = datetime.now(timezone.utc)
        stmt = upsert(db, PendingLabelSuggestion).values(
            email_id=email_id,
            user_id=user_id,
            suggested_label_name=label_name,
            suggested_by=suggested_by,
            confidence_score=confidence,
            reasoning=reasoning,
            status=STATUS_PENDING,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[
                PendingLabelSuggestion.email_id,
                func.lower(PendingLabelSuggestion.suggested_label_name),
            ],
            index_where=text("status = 'pending'"),
            set_={
                "suggested_by": suggested_by,
                "confidence_score": confidence,
                "reasoning": reasoning,
                "updated_at": now,
            },
        )
        await db.execute(stmt)

        suggestion = (await db.execute(
            select(PendingLabelSuggestion)
            .where(
                PendingLabelSuggestion.email_id == email_id,
                func.lower(PendingLabelSuggestion.suggested_label_name) == func.lower(label_name),
                PendingLabelSuggestion.status == STATUS_PENDING,
            )
            .execution_options(populate_existing=True)
        )).scalar_one()
        logger.info(f"Pending suggestion {suggestion.id} for email {email_id}: {label_name} ({suggested_by})")
        return suggestion

    async def list_pending_suggestions(self, user_id: Optional[int] = None) -> list[PendingLabelSuggestion]:
        """Pending suggestions for one user, or for everyone when user_id is None."""
        query = (
            select(PendingLabelSuggestion)
            .options(selectinload(PendingLabelSuggestion.email))
            .where(PendingLabelSuggestion.status == STATUS_PENDING)
            .order_by(PendingLabelSuggestion.created_at.desc(), PendingLabelSuggestion.id.desc())
        )
        if user_id is not None:
            query = query.where(PendingLabelSuggestion.user_id == user_id)

        async with self._session_factory() as db:
            return list((await db.execute(query)).scalars().all())

    async def process_suggestion(
        self, suggestion_id: int, action: str, approver_id: int, apply_to_similar: bool = False
    ) -> SuggestionResult:
        """Approve or reject a pending suggestion. Terminal suggestions are never re-applied."""
        if action not in ACTIONS:
            raise ValueError(f"Invalid action: {action}")

        async with self._session_factory() as db:
            suggestion = (await db.execute(
                select(PendingLabelSuggestion)
                .where(PendingLabelSuggestion.id == suggestion_id)
                .with_for_update()
            )).scalar_one_or_none()

            if suggestion is None:
                return SuggestionResult(False, "Suggestion not found", SuggestionOutcome.NOT_FOUND)

            if suggestion.status != STATUS_PENDING:
                return SuggestionResult(
                    False, f"Suggestion already {suggestion.status}", SuggestionOutcome.ALREADY_TERMINAL
                )

            now = datetime.now(timezone.utc)
            suggestion.approved_by = approver_id
            suggestion.approved_at = now

            if action == "reject":
                suggestion.status = STATUS_REJECTED
                await db.commit()
                logger.info(f"Suggestion {suggestion_id} rejected by {approver_id}")
                return SuggestionResult(True, "Suggestion rejected", SuggestionOutcome.REJECTED)

            label = await self._registry.find_by_name(db, suggestion.suggested_label_name, suggestion.user_id)
            created = label is None
            if created:
                label = await self._registry.create(
                    db,
                    suggestion.suggested_label_name,
                    user_id=suggestion.user_id,
                    color=self.pick_color(),
                    description=f"Created from approved suggestion {suggestion_id}",
                )

            await self._registry.assign_to_user(db, suggestion.user_id, label.id)
            confidence = suggestion.confidence_score if suggestion.confidence_score is not None else 1.0
            await self._registry.assign_to_email(db, suggestion.email_id, label, "user", confidence)
            suggestion.status = STATUS_APPROVED

            meta = (await db.execute(
                select(EmailMeta.embedding, EmailMeta.embedding_model)
                .where(EmailMeta.email_id == suggestion.email_id)
            )).first()

            label_id, label_name = label.id, label.name
            email_id, user_id = suggestion.email_id, suggestion.user_id
            await db.commit()

        logger.info(f"Suggestion {suggestion_id} approved by {approver_id}: '{label_name}' (label {label_id})")

        # Learning signal, outside the approval transaction
        if meta is not None and meta.embedding is not None and meta.embedding_model:
            try:
                await self._index.update_centroid(label_id, meta.embedding, meta.embedding_model)
            except Exception as e:
                logger.error(f"Centroid update failed for label {label_id}: {e}")

        await self._sync(email_id, label_name)

        applied = 0
        if apply_to_similar:
            applied = await self.auto_apply_to_similar_emails(label_id, user_id, email_id)

        message = "Label created and applied successfully" if created else "Label applied successfully"
        return SuggestionResult(True, message, SuggestionOutcome.APPROVED, label_id, applied)

    async def auto_apply_to_similar_emails(
        self,
        label_id: int,
        user_id: int,
        email_id: int,
        threshold: Optional[float] = None,
        limit: int = 10,
    ) -> int:
        """Label the user's emails most similar to a just-approved one. Returns how many were labeled."""
        threshold = settings.centroid_vote_threshold if threshold is None else threshold

        async with self._session_factory() as db:
            label = await self._registry.get(db, label_id)
            meta = (await db.execute(
                select(EmailMeta.embedding, EmailMeta.embedding_model).where(EmailMeta.email_id == email_id)
            )).first()
            if meta is None or meta.embedding is None or not meta.embedding_model:
                return 0

            candidates = await self._index.find_similar_emails(
                db, meta.embedding, meta.embedding_model,
                k=limit * 3, min_similarity=threshold,
                exclude_email_id=email_id, user_id=user_id,
            )
            already = set((await db.execute(
                select(EmailLabel.email_id).where(EmailLabel.label_id == label_id)
            )).scalars().all())

            applied = []
            for row in candidates:
                if row["email_id"] in already:
                    continue
                await self._registry.assign_to_email(db, row["email_id"], label, "ai", row["similarity"])
                applied.append(row["email_id"])
                if len(applied) >= limit:
                    break

            label_name = label.name
            await db.commit()

        for similar_id in applied:
            await self._sync(similar_id, label_name)

        if applied:
            logger.info(f"Auto-applied '{label_name}' to {len(applied)} similar emails")
        return len(applied)

    async def _sync(self, email_id: int, label_name: str):
        """Best-effort mailbox mirror; never undoes the database change."""
        if self._mailbox_sync is None:
            return
        try:
            await self._mailbox_sync.sync_email_label(email_id, label_name)
        except Exception as e:
            logger.error(f"Mailbox sync failed for email {email_id}, label '{label_name}': {e}")


# Singleton
suggestion_engine = SuggestionApprovalEngine(mailbox_sync=mailbox_sync)
