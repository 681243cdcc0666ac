"""Account mailbox API endpoints."""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from label_engine.database import get_db
from label_engine.models.account import Account
from label_engine.services.mailbox_sync import mailbox_sync

router = APIRouter(prefix="/api/accounts", tags=["accounts"])


@router.post("/{account_id}/mailbox-labels")
async def initialize_mailbox_labels(account_id: int, db: AsyncSession = Depends(get_db)):
    """Create the system label folders (Escalation, Urgent, MOM) on the account's server."""
    account = await db.get(Account, account_id)
    if not account:
        raise HTTPException(status_code=404, detail="Account not found")

    return await mailbox_sync.initialize_system_labels_in_mailbox(account)
