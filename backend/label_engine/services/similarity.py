"""Similarity index — nearest labels and emails by embedding, plus moving label centroids."""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Optional, Sequence

import numpy as np
from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from label_engine.database import async_session, is_postgres, upsert
from label_engine.models.account import Account
from label_engine.models.email import Email
from label_engine.models.email_meta import EmailMeta
from label_engine.models.label import Label, LabelEmbedding, UserLabel
from label_engine.services.classification import FewShotExample
from label_engine.services.heuristics import UNCATEGORIZED

logger = logging.getLogger(__name__)


def cosine_similarity(a, b) -> Optional[float]:
    """1 - cosine distance, or None when the vectors cannot be compared."""
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    if a.shape != b.shape:
        return None
    denom = np.linalg.norm(a) * np.linalg.norm(b)
    if denom == 0:
        return None
    return float(np.dot(a, b) / denom)


def _rank(rows, query_vector, k: int, min_similarity: float) -> list[tuple]:
    """Score (payload, vector) rows in Python and keep the top k above the threshold."""
    scored = []
    for payload, vector in rows:
        similarity = cosine_similarity(query_vector, vector)
        if similarity is not None and similarity >= min_similarity:
            scored.append((payload, similarity))
    scored.sort(key=lambda item: item[1], reverse=True)
    return scored[:k]


class SimilarityIndex:
    """Vector queries over email_meta and label_embeddings, always restricted to one model."""

    def __init__(self, session_factory=async_session):
        self._session_factory = session_factory
        self._locks: dict[tuple[int, str], asyncio.Lock] = defaultdict(asyncio.Lock)

    async def find_similar(
        self,
        db: AsyncSession,
        embedding: Sequence[float],
        model: str,
        k: int = 5,
        min_similarity: float = 0.0,
        user_id: Optional[int] = None,
    ) -> list[dict]:
        """Labels whose centroid is closest to the embedding: [{label, label_id, similarity}]."""
        postgres = is_postgres(db)
        distance = LabelEmbedding.embedding.cosine_distance(list(embedding)) if postgres else None
        score = (1 - distance).label("similarity") if postgres else LabelEmbedding.embedding

        query = (
            select(Label.id, Label.name, score)
            .join(LabelEmbedding, LabelEmbedding.label_id == Label.id)
            .where(
                LabelEmbedding.embedding_model == model,
                LabelEmbedding.embedding.is_not(None),
            )
        )
        if user_id is not None:
            user_labels = select(UserLabel.label_id).where(UserLabel.user_id == user_id)
            query = query.where(or_(Label.is_system.is_(True), Label.id.in_(user_labels)))

        if postgres:
            query = (
                query.where(distance <= 1 - min_similarity)
                .order_by(distance)
                .limit(k)
            )
            rows = (await db.execute(query)).all()
            ranked = [((label_id, name), float(sim)) for label_id, name, sim in rows]
        else:
            rows = (await db.execute(query)).all()
            ranked = _rank(
                (((label_id, name), vector) for label_id, name, vector in rows),
                embedding, k, min_similarity,
            )

        return [
            {"label": name, "label_id": label_id, "similarity": similarity}
            for (label_id, name), similarity in ranked
        ]

    async def find_similar_emails(
        self,
        db: AsyncSession,
        embedding: Sequence[float],
        model: str,
        k: int = 10,
        min_similarity: float = 0.0,
        exclude_email_id: Optional[int] = None,
        user_id: Optional[int] = None,
    ) -> list[dict]:
        """Emails with same-model embeddings closest to the query: [{email_id, similarity}]."""
        postgres = is_postgres(db)
        distance = EmailMeta.embedding.cosine_distance(list(embedding)) if postgres else None
        score = (1 - distance).label("similarity") if postgres else EmailMeta.embedding

        query = select(EmailMeta.email_id, score).where(
            EmailMeta.embedding_model == model,
            EmailMeta.embedding.is_not(None),
        )
        if exclude_email_id is not None:
            query = query.where(EmailMeta.email_id != exclude_email_id)
        if user_id is not None:
            owned = (
                select(Email.id)
                .join(Account, Account.id == Email.account_id)
                .where(Account.user_id == user_id)
            )
            query = query.where(EmailMeta.email_id.in_(owned))

        if postgres:
            query = (
                query.where(distance <= 1 - min_similarity)
                .order_by(distance)
                .limit(k)
            )
            rows = (await db.execute(query)).all()
            ranked = [(email_id, float(sim)) for email_id, sim in rows]
        else:
            rows = (await db.execute(query)).all()
            ranked = _rank(rows, embedding, k, min_similarity)

        return [{"email_id": email_id, "similarity": similarity} for email_id, similarity in ranked]

    async def find_examples(
        self,
        db: AsyncSession,
        embedding: Sequence[float],
        model: str,
        k: int = 3,
        min_similarity: float = 0.6,
        exclude_email_id: Optional[int] = None,
    ) -> list[FewShotExample]:
        """Previously classified emails nearest to the query, as few-shot examples."""
        similar = await self.find_similar_emails(
            db, embedding, model, k=k * 3, min_similarity=min_similarity,
            exclude_email_id=exclude_email_id,
        )
        if not similar:
            return []

        scores = {row["email_id"]: row["similarity"] for row in similar}
        query = (
            select(Email.id, Email.subject, Email.sender, EmailMeta.suggested_label, EmailMeta.classification)
            .join(EmailMeta, EmailMeta.email_id == Email.id)
            .where(
                Email.id.in_(scores.keys()),
                EmailMeta.suggested_label.is_not(None),
                EmailMeta.suggested_label != UNCATEGORIZED,
            )
        )
        rows = (await db.execute(query)).all()

        examples = [
            FewShotExample(
                subject=subject or "",
                sender=sender or "",
                suggested_label=label,
                reasoning=(classification or {}).get("reasoning") or "Previous classification",
                similarity=scores[email_id],
            )
            for email_id, subject, sender, label, classification in rows
        ]
        examples.sort(key=lambda ex: ex.similarity, reverse=True)
        return examples[:k]

    async def update_centroid(self, label_id: int, vector: Sequence[float], model: str) -> int:
        """Fold one vector into the label's running-mean centroid for this model.

        Serialized per (label, model) in-process and by a row lock in the database.
        Returns the new email count.
        """
        new_vector = np.asarray(vector, dtype=np.float64)

        async with self._locks[(label_id, model)]:
            async with self._session_factory() as db:
                seed = upsert(db, LabelEmbedding).values(
                    label_id=label_id,
                    embedding_model=model,
                    embedding=None,
                    email_count=0,
                ).on_conflict_do_nothing(index_elements=["label_id", "embedding_model"])
                await db.execute(seed)

                row = (await db.execute(
                    select(LabelEmbedding)
                    .where(
                        LabelEmbedding.label_id == label_id,
                        LabelEmbedding.embedding_model == model,
                    )
                    .with_for_update()
                )).scalar_one()

                n = row.email_count or 0
                if row.embedding is None or n == 0:
                    centroid = new_vector
                    n = 0
                else:
                    old = np.asarray(row.embedding, dtype=np.float64)
                    if old.shape != new_vector.shape:
                        await db.rollback()
                        raise ValueError(
                            f"Centroid for label {label_id} ({model}) has dimension {old.shape[0]}, "
                            f"got {new_vector.shape[0]}"
                        )
                    centroid = (old * n + new_vector) / (n + 1)

                row.embedding = centroid.tolist()
                row.email_count = n + 1
                row.last_updated = datetime.now(timezone.utc)
                await db.commit()

        logger.info(f"Updated centroid for label {label_id} ({model}), n={n + 1}")
        return n + 1

    async def model_consistency(self, db: AsyncSession) -> dict:
        """Count stored email embeddings per model; more than one model splits the index."""
        rows = (await db.execute(
            select(EmailMeta.embedding_model, func.count(EmailMeta.id))
            .where(EmailMeta.embedding.is_not(None), EmailMeta.embedding_model.is_not(None))
            .group_by(EmailMeta.embedding_model)
        )).all()
        counts = {model: count for model, count in rows}

        if len(counts) > 1:
            logger.warning(f"Multiple embedding models in use: {counts}. Similarity only compares within a model.")
        return {"consistent": len(counts) <= 1, "models": counts}


# Singleton
similarity_index = SimilarityIndex()
