"""Label suggestion API endpoints — list, approve, reject."""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel

from label_engine.services.label_approval import SuggestionOutcome, suggestion_engine

router = APIRouter(prefix="/api/suggestions", tags=["suggestions"])


class SuggestionSummary(BaseModel):
    id: int
    email_id: int
    user_id: int
    suggested_label_name: str
    suggested_by: str
    confidence_score: Optional[float]
    reasoning: Optional[str]
    status: str
    created_at: Optional[datetime]
    email_subject: Optional[str] = None
    email_sender: Optional[str] = None


class ProcessRequest(BaseModel):
    approver_id: int


@router.get("/", response_model=list[SuggestionSummary])
async def list_suggestions(user_id: Optional[int] = Query(None, description="Only this user's suggestions")):
    """List pending label suggestions."""
    suggestions = await suggestion_engine.list_pending_suggestions(user_id)
    return [
        SuggestionSummary(
            id=s.id,
            email_id=s.email_id,
            user_id=s.user_id,
            suggested_label_name=s.suggested_label_name,
            suggested_by=s.suggested_by,
            confidence_score=s.confidence_score,
            reasoning=s.reasoning,
            status=s.status,
            created_at=s.created_at,
            email_subject=s.email.subject if s.email else None,
            email_sender=s.email.sender if s.email else None,
        )
        for s in suggestions
    ]


async def _process(suggestion_id: int, action: str, approver_id: int, apply_to_similar: bool = False) -> dict:
    try:
        result = await suggestion_engine.process_suggestion(suggestion_id, action, approver_id, apply_to_similar)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if result.outcome == SuggestionOutcome.NOT_FOUND:
        raise HTTPException(status_code=404, detail=result.message)
    if result.outcome == SuggestionOutcome.ALREADY_TERMINAL:
        raise HTTPException(status_code=409, detail=result.message)
    return result.as_dict()


@router.post("/{suggestion_id}/approve")
async def approve_suggestion(
    suggestion_id: int,
    request: ProcessRequest,
    apply_to_similar: bool = Query(False, description="Also label the user's most similar emails"),
):
    """Approve a suggestion: create or reuse the label and apply it."""
    return await _process(suggestion_id, "approve", request.approver_id, apply_to_similar)


@router.post("/{suggestion_id}/reject")
async def reject_suggestion(suggestion_id: int, request: ProcessRequest):
    """Reject a suggestion."""
    return await _process(suggestion_id, "reject", request.approver_id)
