"""Email processor — classify, embed, persist, label and sync one email at a time."""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from label_engine.config import settings
from label_engine.database import async_session, upsert
from label_engine.errors import MailboxError, NotFoundError, OwnerResolutionError
from label_engine.models.account import Account
from label_engine.models.email import Email
from label_engine.models.email_meta import EmailMeta
from label_engine.models.suggestion import PendingLabelSuggestion, STATUS_PENDING
from label_engine.services.classifier import ClassificationOrchestrator, TierDecision, classification_orchestrator
from label_engine.services.content_cleaner import clean_email_content, prepare_for_embedding
from label_engine.services.embeddings import EmbeddingResult, EmbeddingService, embedding_service
from label_engine.services.imap_client import ImapMailboxClient
from label_engine.services.label_approval import SuggestionApprovalEngine, suggestion_engine
from label_engine.services.labels import LabelRegistry, is_reserved, label_registry, system_labels_for
from label_engine.services.mailbox_sync import MailboxSyncAdapter, MessageLocator, mailbox_sync
from label_engine.services.similarity import SimilarityIndex, similarity_index

logger = logging.getLogger(__name__)


@dataclass
class LabelVote:
    label: str
    confidence: float
    method: str  # ai | similarity | hybrid


def require_owner(account: Optional[Account]) -> int:
    """The user who owns the account; there is no fallback user."""
    if account is None or account.user_id is None:
        account_ref = account.id if account else None
        raise OwnerResolutionError(f"Account {account_ref} has no owning user")
    return account.user_id


class EmailProcessingOrchestrator:
    """Runs the full labeling pipeline for emails, one account connection at a time."""

    def __init__(
        self,
        session_factory=async_session,
        classifier: ClassificationOrchestrator = classification_orchestrator,
        embeddings: EmbeddingService = embedding_service,
        index: SimilarityIndex = similarity_index,
        registry: LabelRegistry = label_registry,
        suggestions: SuggestionApprovalEngine = suggestion_engine,
        mailbox: MailboxSyncAdapter = mailbox_sync,
    ):
        self._session_factory = session_factory
        self._classifier = classifier
        self._embeddings = embeddings
        self._index = index
        self._registry = registry
        self._suggestions = suggestions
        self._mailbox = mailbox

    async def process_email(
        self, email_id: int, client: Optional[ImapMailboxClient] = None, sync: bool = True
    ) -> dict:
        """Process one email. Safe to re-run: every write is an upsert."""
        async with self._session_factory() as db:
            email_obj = await db.get(Email, email_id)
            if email_obj is None:
                raise NotFoundError(f"Email {email_id} not found")
            account = await db.get(Account, email_obj.account_id) if email_obj.account_id else None

        subject, sender = email_obj.subject or "", email_obj.sender or ""

        # Step 1: Classify
        decision = await self._classifier.decide(
            subject, clean_email_content(email_obj.body), sender, email_id
        )
        classification = decision.result

        # Step 2: Embed (classification tolerates a missing embedding)
        embedding = await self._embeddings.embed(prepare_for_embedding(subject, email_obj.body))

        # Step 3: Persist metadata and system labels
        async with self._session_factory() as db:
            await self._upsert_meta(db, email_id, decision, embedding)
            system = await self._registry.ensure_system_labels(db)
            system_assigned = []
            for name in system_labels_for(classification):
                await self._registry.assign_to_email(db, email_id, system[name], "system", 1.0)
                system_assigned.append(name)
            await db.commit()

        result = {
            "email_id": email_id,
            "method": decision.method,
            "suggested_label": classification.suggested_label,
            "system_labels": system_assigned,
            "embedding_model": embedding.model if embedding else None,
            "hybrid": None,
            "synced": [],
        }

        # Step 4: Hybrid label suggestion
        hybrid = await self._apply_hybrid_label(email_obj, account, decision, embedding)
        result["hybrid"] = hybrid

        # Step 5: Mirror assigned labels into the mailbox
        to_sync = list(system_assigned)
        if hybrid.get("action") == "auto_assigned":
            to_sync.append(hybrid["label"])
        if sync and to_sync and account is not None and account.enable_ai_labeling:
            result["synced"] = await self._sync_labels(account, email_obj, to_sync, client)

        logger.info(
            f"Processed email {email_id}: {classification.suggested_label} via {decision.method}, "
            f"system={system_assigned}, hybrid={hybrid.get('action')}"
        )
        return result

    async def _upsert_meta(
        self,
        db: AsyncSession,
        email_id: int,
        decision: TierDecision,
        embedding: Optional[EmbeddingResult],
    ):
        classification = decision.result
        now = datetime.now(timezone.utc)
        values = {
            "classification": classification.model_dump(),
            "classification_method": decision.method,
            "suggested_label": classification.suggested_label,
            "is_hierarchy": classification.is_hierarchy,
            "is_client": classification.is_client,
            "is_meeting": classification.is_meeting,
            "is_escalation": classification.is_escalation,
            "is_urgent": classification.is_urgent,
            "updated_at": now,
        }
        if embedding is not None:
            values["embedding"] = embedding.vector
            values["embedding_model"] = embedding.model

        stmt = upsert(db, EmailMeta).values(email_id=email_id, created_at=now, **values)
        # A failed embedding on re-run keeps the previous vector
        stmt = stmt.on_conflict_do_update(index_elements=["email_id"], set_=values)
        await db.execute(stmt)

    async def _centroid_vote(
        self, db: AsyncSession, embedding: Optional[EmbeddingResult], user_id: int
    ) -> Optional[dict]:
        if embedding is None:
            return None
        matches = await self._index.find_similar(
            db, embedding.vector, embedding.model,
            k=5, min_similarity=settings.centroid_vote_threshold, user_id=user_id,
        )
        for match in matches:
            if not is_reserved(match["label"]):
                return match
        return None

    async def _apply_hybrid_label(
        self,
        email_obj: Email,
        account: Optional[Account],
        decision: TierDecision,
        embedding: Optional[EmbeddingResult],
    ) -> dict:
        """Combine the LLM label with the nearest label centroid, then assign or suggest."""
        classification = decision.result
        llm_label = None
        if not classification.is_uncategorized and not is_reserved(classification.suggested_label):
            llm_label = classification.suggested_label.strip()

        if llm_label is None and embedding is None:
            return {"action": "skipped", "reason": "no candidate label"}

        owner = require_owner(account)

        async with self._session_factory() as db:
            if await self._registry.has_manual_label(db, email_obj.id):
                return {"action": "skipped", "reason": "manually labeled"}

            vote = LabelVote(llm_label, settings.llm_base_confidence, "ai") if llm_label else None
            centroid = await self._centroid_vote(db, embedding, owner)
            if centroid:
                if vote and centroid["label"].lower() == vote.label.lower():
                    vote = LabelVote(vote.label, settings.hybrid_agree_confidence, "hybrid")
                else:
                    vote = LabelVote(centroid["label"], centroid["similarity"], "similarity")

            if vote is None:
                return {"action": "skipped", "reason": "no candidate label"}

            label = await self._registry.find_by_name(db, vote.label, owner)
            if label is not None:
                assigned = {el.label_id for el, _ in await self._registry.email_labels(db, email_obj.id)}
                if label.id in assigned:
                    return {"action": "already_assigned", "label": label.name, "label_id": label.id}

            outcome = {"label": vote.label, "confidence": vote.confidence, "method": vote.method}
            if label is not None and vote.confidence > settings.auto_assign_threshold:
                await self._registry.assign_to_email(db, email_obj.id, label, "ai", vote.confidence)
                outcome.update(action="auto_assigned", label=label.name, label_id=label.id)
            else:
                suggestion = await self._suggestions.upsert_pending_suggestion(
                    db, email_obj.id, owner, vote.label,
                    suggested_by=vote.method,
                    confidence=vote.confidence,
                    reasoning=classification.reasoning,
                )
                outcome.update(action="suggested", suggestion_id=suggestion.id)

            await db.commit()

        if outcome["action"] == "auto_assigned" and embedding is not None:
            try:
                await self._index.update_centroid(outcome["label_id"], embedding.vector, embedding.model)
            except Exception as e:
                logger.error(f"Centroid update failed for label {outcome['label_id']}: {e}")

        return outcome

    async def _sync_labels(
        self,
        account: Account,
        email_obj: Email,
        labels: list[str],
        client: Optional[ImapMailboxClient],
    ) -> list[dict]:
        """Sync failures are logged and reported, never raised."""
        locator = MessageLocator.from_email(email_obj)

        async def sync_all(c: ImapMailboxClient) -> list[dict]:
            results = []
            for name in labels:
                outcome = await self._mailbox.sync_label(account, locator, name, client=c)
                results.append({"label": name, **outcome.as_dict()})
            return results

        try:
            if client is not None:
                return await sync_all(client)
            async with self._mailbox.connect(account) as own_client:
                return await sync_all(own_client)
        except (MailboxError, ValueError) as e:
            logger.error(f"Mailbox sync unavailable for account {account.id} ({locator}): {e}")
            return [{"label": name, "success": False, "method": None, "error": str(e)} for name in labels]

    async def process_account(self, account_id: int, email_ids: list[int]) -> dict:
        """Process an account's emails in order over a single mailbox connection."""
        result = {"account_id": account_id, "processed": 0, "errors": 0}

        async with self._session_factory() as db:
            account = await db.get(Account, account_id)
        if account is None:
            logger.error(f"Account {account_id} not found, skipping {len(email_ids)} emails")
            result["errors"] = len(email_ids)
            return result

        client = None
        if account.enable_ai_labeling:
            try:
                client = await self._mailbox.open_client(account)
            except (MailboxError, ValueError) as e:
                logger.warning(f"Mailbox unavailable for account {account_id}, labels will not sync: {e}")
                client = None

        try:
            for email_id in email_ids:
                try:
                    await self.process_email(email_id, client=client, sync=client is not None)
                    result["processed"] += 1
                except Exception as e:
                    logger.error(f"Failed to process email {email_id}: {e}")
                    result["errors"] += 1
        finally:
            if client is not None:
                await client.logout()

        return result

    async def process_batch(self, email_ids: list[int]) -> dict:
        """Group emails by account and process accounts concurrently."""
        result = {"processed": 0, "errors": 0, "accounts": 0}
        if not email_ids:
            return result

        async with self._session_factory() as db:
            rows = (await db.execute(
                select(Email.id, Email.account_id).where(Email.id.in_(email_ids))
            )).all()

        order = {email_id: i for i, email_id in enumerate(email_ids)}
        by_account: dict[int, list[int]] = defaultdict(list)
        for email_id, account_id in sorted(rows, key=lambda r: order[r[0]]):
            if account_id is None:
                logger.error(f"Email {email_id} has no account, skipping")
                result["errors"] += 1
                continue
            by_account[account_id].append(email_id)

        missing = len(email_ids) - len(rows)
        if missing:
            logger.warning(f"{missing} requested emails do not exist")
            result["errors"] += missing

        semaphore = asyncio.Semaphore(settings.max_concurrent_accounts)

        async def run(account_id: int, ids: list[int]) -> dict:
            async with semaphore:
                return await self.process_account(account_id, ids)

        outcomes = await asyncio.gather(*(run(a, ids) for a, ids in by_account.items()))
        for outcome in outcomes:
            result["processed"] += outcome["processed"]
            result["errors"] += outcome["errors"]
        result["accounts"] = len(outcomes)
        return result

    async def process_unclassified(self, limit: Optional[int] = None) -> dict:
        """Find and process emails that have no metadata yet."""
        limit = limit or settings.process_batch_size
        async with self._session_factory() as db:
            subquery = select(EmailMeta.email_id)
            email_ids = (await db.execute(
                select(Email.id)
                .where(~Email.id.in_(subquery))
                .order_by(Email.created_at, Email.id)
                .limit(limit)
            )).scalars().all()

        if not email_ids:
            logger.info("No unclassified emails found")
            return {"processed": 0, "errors": 0, "accounts": 0}

        logger.info(f"Processing {len(email_ids)} unclassified emails...")
        return await self.process_batch(list(email_ids))

    async def get_processing_stats(self) -> dict:
        """Current processing statistics."""
        async with self._session_factory() as db:
            total_emails = (await db.execute(select(func.count(Email.id)))).scalar() or 0
            classified = (await db.execute(select(func.count(EmailMeta.id)))).scalar() or 0
            pending = (await db.execute(
                select(func.count(PendingLabelSuggestion.id))
                .where(PendingLabelSuggestion.status == STATUS_PENDING)
            )).scalar() or 0

            method_result = await db.execute(
                select(EmailMeta.classification_method, func.count(EmailMeta.id))
                .group_by(EmailMeta.classification_method)
            )
            by_method = {row[0]: row[1] for row in method_result.all()}

            embeddings = await self._index.model_consistency(db)

        return {
            "total_emails": total_emails,
            "classified": classified,
            "unclassified": total_emails - classified,
            "pending_suggestions": pending,
            "by_method": by_method,
            "embedding_models": embeddings,
        }


# Singleton
email_processor = EmailProcessingOrchestrator()
