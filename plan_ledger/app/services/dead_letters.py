"""
Dead letter queue access.

Failures automatic processing has given up on land here for an operator.
"""

import logging
from datetime import datetime
from typing import Optional, Dict, Any, List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from plan_ledger.app.core.exceptions import ResourceNotFoundError
from plan_ledger.app.models.dlq import DeadLetterQueue, DLQStatus

logger = logging.getLogger("plan_ledger.dlq")


async def record_dead_letter(
    db: AsyncSession,
    task_name: str,
    error_message: str,
    payload: Optional[Dict[str, Any]] = None
) -> DeadLetterQueue:
    """Add an entry to the caller's transaction."""
    entry = DeadLetterQueue(
        task_name=task_name,
        error_message=error_message,
        payload=payload,
        status=DLQStatus.FAILED,
    )
    db.add(entry)
    await db.flush()
    return entry


async def list_dead_letters(
    db: AsyncSession,
    status: Optional[DLQStatus] = DLQStatus.FAILED,
    task_name: Optional[str] = None
) -> List[DeadLetterQueue]:
    query = select(DeadLetterQueue)
    if status:
        query = query.where(DeadLetterQueue.status == status)
    if task_name:
        query = query.where(DeadLetterQueue.task_name == task_name)
    result = await db.execute(query.order_by(DeadLetterQueue.created_at.desc(), DeadLetterQueue.id.desc()))
    return list(result.scalars().all())


async def resolve_dead_letter(
    db: AsyncSession,
    dlq_id: int,
    status: DLQStatus,
    actor: Optional[str] = None
) -> DeadLetterQueue:
    """Operator closes an entry as PROCESSED or ARCHIVED."""
    result = await db.execute(select(DeadLetterQueue).where(DeadLetterQueue.id == dlq_id))
    entry = result.scalar_one_or_none()
    if not entry:
        raise ResourceNotFoundError("DLQ item", dlq_id)

    entry.status = status
    entry.resolved_at = datetime.utcnow()
    entry.resolved_by = actor
    await db.flush()
    logger.info("Dead letter resolved", extra={"dlq_id": dlq_id, "status": status.value, "actor": actor})
    return entry
