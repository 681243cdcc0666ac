"""Token usage tracker — per-email telemetry for the classification waterfall."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select, func

from label_engine.database import async_session, upsert
from label_engine.models.token_usage import TokenUsageStat

logger = logging.getLogger(__name__)

# Gemini Flash input pricing, USD per 1M tokens
COST_PER_1M_TOKENS = 0.075


class TokenTracker:
    """Records which tier classified an email and the estimated token spend."""

    def __init__(self, session_factory=async_session):
        self._session_factory = session_factory

    async def track(self, email_id: Optional[int], method: str, tokens_used: int, tokens_saved: int):
        """Upsert the usage row for an email. Never raises."""
        if email_id is None:
            return

        try:
            async with self._session_factory() as db:
                now = datetime.now(timezone.utc)
                stmt = upsert(db, TokenUsageStat).values(
                    email_id=email_id,
                    classification_method=method,
                    estimated_tokens=tokens_used,
                    tokens_saved=tokens_saved,
                    created_at=now,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["email_id"],
                    set_={
                        "classification_method": method,
                        "estimated_tokens": tokens_used,
                        "tokens_saved": tokens_saved,
                        "created_at": now,
                    },
                )
                await db.execute(stmt)
                await db.commit()
        except Exception as e:
            logger.warning(f"Token tracking failed for email {email_id} (non-critical): {e}")

    async def get_stats(self, days: int = 7) -> dict:
        """Aggregate usage by method over the last N days."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        query = (
            select(
                TokenUsageStat.classification_method,
                func.count(TokenUsageStat.id),
                func.sum(TokenUsageStat.estimated_tokens),
                func.sum(TokenUsageStat.tokens_saved),
            )
            .where(TokenUsageStat.created_at > cutoff)
            .group_by(TokenUsageStat.classification_method)
        )

        async with self._session_factory() as db:
            rows = (await db.execute(query)).all()

        summary = {
            "period_days": days,
            "total_classifications": 0,
            "total_tokens_used": 0,
            "total_tokens_saved": 0,
            "by_method": {},
        }
        for method, count, used, saved in rows:
            used, saved = int(used or 0), int(saved or 0)
            summary["total_classifications"] += count
            summary["total_tokens_used"] += used
            summary["total_tokens_saved"] += saved
            summary["by_method"][method] = {
                "count": count,
                "total_tokens": used,
                "total_saved": saved,
                "avg_tokens": round(used / count) if count else 0,
            }

        total = summary["total_tokens_used"] + summary["total_tokens_saved"]
        summary["cost_used_usd"] = round(summary["total_tokens_used"] / 1_000_000 * COST_PER_1M_TOKENS, 4)
        summary["cost_saved_usd"] = round(summary["total_tokens_saved"] / 1_000_000 * COST_PER_1M_TOKENS, 4)
        summary["savings_percentage"] = (
            round(summary["total_tokens_saved"] / total * 100, 1) if total else 0.0
        )
        return summary
