"""Processing API endpoints — run the pipeline and inspect classifier state."""

from typing import Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel

from label_engine.errors import NotFoundError, OwnerResolutionError
from label_engine.services.classifier import classification_orchestrator
from label_engine.services.processor import email_processor
from label_engine.services.token_tracker import TokenTracker

router = APIRouter(prefix="/api/process", tags=["processing"])

token_tracker = TokenTracker()


class BatchResult(BaseModel):
    processed: int
    errors: int
    accounts: int = 0


@router.post("/", response_model=BatchResult)
async def process_unclassified(limit: Optional[int] = Query(None, ge=1, le=500)):
    """Process emails that have not been classified yet."""
    result = await email_processor.process_unclassified(limit=limit)
    return BatchResult(**result)


@router.get("/llm-status")
async def llm_status():
    """Configuration and rate-limit state of each LLM provider."""
    return classification_orchestrator.llm_status()


@router.get("/token-stats")
async def token_stats(days: int = Query(7, ge=1, le=365)):
    """Token usage by classification method."""
    return await token_tracker.get_stats(days=days)


@router.get("/stats")
async def processing_stats():
    """Email, classification and suggestion counts."""
    return await email_processor.get_processing_stats()


@router.post("/{email_id}")
async def process_email(email_id: int):
    """Process a specific email by ID (safe to repeat)."""
    try:
        return await email_processor.process_email(email_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except OwnerResolutionError as e:
        raise HTTPException(status_code=422, detail=str(e))
