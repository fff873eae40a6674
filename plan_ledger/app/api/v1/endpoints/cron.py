"""
Cron API Endpoints.

Triggered once a day by the platform scheduler. Guarded by CRON_SECRET.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from plan_ledger.app.db.session import get_db
from plan_ledger.app.core.dependencies import require_cron_secret, get_services, LedgerServices
from plan_ledger.app.domain.ledger.daily_jobs import run_payment_plans, run_accounting_sync
from plan_ledger.app.schemas.payment_plan import DailyJobsResponse, SyncResult

router = APIRouter(prefix="/cron", tags=["Cron"], dependencies=[Depends(require_cron_secret)])


@router.post("/payment-plans", response_model=DailyJobsResponse)
async def process_payment_plans(
    db: AsyncSession = Depends(get_db),
    services: LedgerServices = Depends(get_services)
):
    """Recover interrupted attempts, charge due installments, send reminders."""
    return await run_payment_plans(db, services)


@router.post("/accounting-sync", response_model=SyncResult)
async def sync_accounting(
    db: AsyncSession = Depends(get_db),
    services: LedgerServices = Depends(get_services)
):
    """Push pending invoices and installment payments to the accounting system."""
    return await run_accounting_sync(db, services)
