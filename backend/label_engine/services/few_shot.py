"""Few-shot example retrieval for the LLM tiers (RAG modes: none, basic, semantic, hybrid)."""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from label_engine.config import settings
from label_engine.database import async_session
from label_engine.models.email import Email
from label_engine.models.email_meta import EmailMeta
from label_engine.services.classification import FewShotExample
from label_engine.services.embeddings import EmbeddingService, embedding_service
from label_engine.services.heuristics import UNCATEGORIZED
from label_engine.services.similarity import SimilarityIndex, similarity_index

logger = logging.getLogger(__name__)

RAG_MODES = ("none", "basic", "semantic", "hybrid")


class FewShotRetriever:
    """Picks previously classified emails to show the LLM."""

    def __init__(
        self,
        embeddings: EmbeddingService = embedding_service,
        index: SimilarityIndex = similarity_index,
        session_factory=async_session,
        mode: Optional[str] = None,
        limit: Optional[int] = None,
        min_similarity: Optional[float] = None,
    ):
        self._embeddings = embeddings
        self._index = index
        self._session_factory = session_factory
        self.mode = mode or settings.rag_mode
        self._limit = limit or settings.few_shot_limit
        self._min_similarity = min_similarity if min_similarity is not None else settings.few_shot_min_similarity
        if self.mode not in RAG_MODES:
            raise ValueError(f"Unknown RAG mode: {self.mode}")

    async def get_examples(
        self, subject: str, body: str, email_id: Optional[int] = None
    ) -> list[FewShotExample]:
        """Examples for the configured mode. Retrieval problems yield an empty list."""
        if self.mode == "none":
            return []

        try:
            if self.mode == "basic":
                return await self._basic(self._limit)

            semantic = await self._semantic(subject, body, email_id)
            if self.mode == "semantic" or len(semantic) >= self._limit:
                return semantic

            # hybrid: top up with diverse examples of labels not already shown
            seen = {ex.suggested_label for ex in semantic}
            diverse = [ex for ex in await self._basic(self._limit * 2) if ex.suggested_label not in seen]
            return semantic + diverse[: self._limit - len(semantic)]

        except SQLAlchemyError as e:
            logger.warning(f"Few-shot retrieval failed: {e}")
            return []

    async def _basic(self, limit: int) -> list[FewShotExample]:
        """One recent example per distinct label."""
        query = (
            select(Email.subject, Email.sender, EmailMeta.suggested_label, EmailMeta.classification)
            .join(EmailMeta, EmailMeta.email_id == Email.id)
            .where(
                EmailMeta.suggested_label.is_not(None),
                EmailMeta.suggested_label != UNCATEGORIZED,
            )
            .order_by(EmailMeta.updated_at.desc())
            .limit(200)
        )
        async with self._session_factory() as db:
            rows = (await db.execute(query)).all()

        examples: dict[str, FewShotExample] = {}
        for subject, sender, label, classification in rows:
            if label in examples:
                continue
            examples[label] = FewShotExample(
                subject=subject or "",
                sender=sender or "",
                suggested_label=label,
                reasoning=(classification or {}).get("reasoning") or "Previous classification",
            )
            if len(examples) >= limit:
                break
        return list(examples.values())

    async def _semantic(self, subject: str, body: str, email_id: Optional[int]) -> list[FewShotExample]:
        """Nearest classified emails, searched with every embedding model concurrently."""
        queries = await self._embeddings.embed_each(f"{subject} {body}")
        if not queries:
            return []

        merged: dict[tuple[str, str], FewShotExample] = {}
        async with self._session_factory() as db:
            for query in queries:
                found = await self._index.find_examples(
                    db, query.vector, query.model,
                    k=self._limit, min_similarity=self._min_similarity,
                    exclude_email_id=email_id,
                )
                for ex in found:
                    key = (ex.subject, ex.suggested_label)
                    if key not in merged or (ex.similarity or 0) > (merged[key].similarity or 0):
                        merged[key] = ex

        examples = sorted(merged.values(), key=lambda ex: ex.similarity or 0, reverse=True)
        if examples:
            logger.info(f"Found {len(examples)} semantically similar examples")
        return examples[: self._limit]
