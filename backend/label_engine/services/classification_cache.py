"""Classification cache — reuse a recent classification of the same (subject, sender)."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import ValidationError
from sqlalchemy import select, or_
from sqlalchemy.exc import SQLAlchemyError

from label_engine.config import settings
from label_engine.database import async_session
from label_engine.models.email import Email
from label_engine.models.email_meta import EmailMeta
from label_engine.services.classification import ClassificationResult

logger = logging.getLogger(__name__)

# Results from the regex floor are a guess, not an answer worth repeating
UNCACHEABLE_METHODS = ("regex_fallback",)


class ClassificationCache:
    """Looks up prior classifications within a retention window."""

    def __init__(self, session_factory=async_session, window_days: Optional[int] = None):
        self._session_factory = session_factory
        self._window_days = window_days if window_days is not None else settings.cache_window_days

    async def lookup(self, subject: str, sender: str) -> Optional[ClassificationResult]:
        """Most recent classification for an exact (subject, sender) match, or None."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=self._window_days)
        query = (
            select(EmailMeta.classification)
            .join(Email, Email.id == EmailMeta.email_id)
            .where(
                Email.subject == subject,
                Email.sender == sender,
                EmailMeta.classification.is_not(None),
                Email.created_at > cutoff,
                or_(
                    EmailMeta.classification_method.is_(None),
                    EmailMeta.classification_method.not_in(UNCACHEABLE_METHODS),
                ),
            )
            .order_by(Email.created_at.desc())
            .limit(1)
        )

        try:
            async with self._session_factory() as db:
                row = (await db.execute(query)).scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.warning(f"Cache lookup failed: {e}")
            return None

        if not row:
            return None

        try:
            result = ClassificationResult.model_validate(row)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed cached classification: {e}")
            return None

        logger.info(f"Cache hit for '{subject[:50]}' from {sender}")
        return result
