"""
Daily jobs shared by the cron endpoints and the CLI.
"""

from datetime import date, datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from plan_ledger.app.core.dependencies import LedgerServices
from plan_ledger.app.schemas.payment_plan import DailyJobsResponse, SyncResult


async def run_payment_plans(
    db: AsyncSession,
    services: LedgerServices,
    as_of: Optional[date] = None,
    now: Optional[datetime] = None
) -> DailyJobsResponse:
    """
    1. Reconcile attempts a crashed run left behind
    2. Charge what is due
    3. Remind owners of upcoming installments
    """
    now = now or datetime.utcnow()
    as_of = as_of or now.date()
    recovery = await services.processor.recover_stuck(db, now=now)
    processing = await services.processor.process_due(db, as_of=as_of, now=now)
    pre_notifications = await services.processor.send_pre_notifications(db, notify_date=as_of)
    return DailyJobsResponse(recovery=recovery, processing=processing, pre_notifications=pre_notifications)


async def run_accounting_sync(
    db: AsyncSession,
    services: LedgerServices,
    now: Optional[datetime] = None
) -> SyncResult:
    return await services.sync.sync_pending(db, now=now)
