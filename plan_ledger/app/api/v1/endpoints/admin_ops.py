"""
Admin Operations API Endpoints.

Dead letter queue review for failures automatic processing gave up on.
"""

from fastapi import APIRouter, Depends, Path
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional

from plan_ledger.app.db.session import get_db
from plan_ledger.app.models.dlq import DLQStatus
from plan_ledger.app.core.dependencies import require_admin_secret
from plan_ledger.app.schemas.admin import DeadLetterResponse, DeadLetterResolveRequest
from plan_ledger.app.services.dead_letters import list_dead_letters, resolve_dead_letter

router = APIRouter(prefix="/admin/ops", tags=["Admin - Ops"])


@router.get("/dlq", response_model=List[DeadLetterResponse])
async def get_dead_letters(
    status: Optional[DLQStatus] = DLQStatus.FAILED,
    task_name: Optional[str] = None,
    actor: str = Depends(require_admin_secret),
    db: AsyncSession = Depends(get_db)
):
    return await list_dead_letters(db, status=status, task_name=task_name)


@router.post("/dlq/{dlq_id}/resolve", response_model=DeadLetterResponse)
async def resolve_dlq_item(
    body: DeadLetterResolveRequest,
    dlq_id: int = Path(..., description="DLQ Item ID"),
    actor: str = Depends(require_admin_secret),
    db: AsyncSession = Depends(get_db)
):
    """Close an entry once an operator has dealt with it."""
    item = await resolve_dead_letter(db, dlq_id, DLQStatus(body.status), actor=actor)
    await db.commit()
    return item
