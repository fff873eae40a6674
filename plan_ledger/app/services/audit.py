"""
Audit logging service for operator and system actions on payment plans.
"""

from typing import Optional, Dict, Any
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, desc
from plan_ledger.app.models.audit_log import AuditLog


class AuditAction:
    """Standardized audit action constants."""
    INVOICE_STAGED = "INVOICE_STAGED"
    PAYMENT_PLAN_SCHEDULED = "PAYMENT_PLAN_SCHEDULED"
    PAYMENT_PLAN_ACTIVATED = "PAYMENT_PLAN_ACTIVATED"
    PAYMENT_PLAN_RESCHEDULED = "PAYMENT_PLAN_RESCHEDULED"
    PAYMENT_PLAN_CANCELLED = "PAYMENT_PLAN_CANCELLED"
    PAYMENT_PLAN_PAID_OFF = "PAYMENT_PLAN_PAID_OFF"
    INSTALLMENT_PROCESSED_MANUALLY = "INSTALLMENT_PROCESSED_MANUALLY"
    INSTALLMENT_RECOVERED = "INSTALLMENT_RECOVERED"
    ACCOUNTING_SYNC_RESET = "ACCOUNTING_SYNC_RESET"


async def log_event(
    db: AsyncSession,
    action: str,
    actor: Optional[str] = None,
    invoice_id: Optional[int] = None,
    installment_id: Optional[int] = None,
    metadata: Optional[Dict[str, Any]] = None
) -> AuditLog:
    """
    Add an audit row to the caller's transaction.

    Args:
        db: Database session
        action: Action being performed (use AuditAction constants)
        actor: Who performed it; None for scheduled jobs
        invoice_id: Invoice acted upon
        installment_id: Installment acted upon
        metadata: Additional context as JSON

    Returns:
        Created AuditLog instance (flushed, not committed)
    """
    audit_log = AuditLog(
        actor=actor,
        action=action,
        invoice_id=invoice_id,
        installment_id=installment_id,
        meta_data=metadata
    )

    db.add(audit_log)
    await db.flush()

    return audit_log


async def get_audit_trail(
    db: AsyncSession,
    invoice_id: Optional[int] = None,
    action: Optional[str] = None,
    limit: int = 100
) -> list[AuditLog]:
    """
    Retrieve audit trail with optional filtering, most recent first.
    """
    query = select(AuditLog).order_by(desc(AuditLog.timestamp), desc(AuditLog.id))

    if invoice_id:
        query = query.where(AuditLog.invoice_id == invoice_id)

    if action:
        query = query.where(AuditLog.action == action)

    result = await db.execute(query.limit(limit))
    return list(result.scalars().all())
