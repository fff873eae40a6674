"""
Admin Payment Plan API Endpoints.

Operator tools: manual runs, payoff, cancellation, rescheduling, recovery
and accounting sync resets. Guarded by ADMIN_SECRET.
"""

from fastapi import APIRouter, Depends, Path
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional

from plan_ledger.app.db.session import get_db
from plan_ledger.app.core.dependencies import require_admin_secret, get_services, LedgerServices
from plan_ledger.app.domain.ledger import ledger_store
from plan_ledger.app.domain.ledger.installment_scheduler import InstallmentScheduler
from plan_ledger.app.schemas.payment_plan import (
    RunPaymentPlansRequest, ProcessingResult, PaymentPlanSummary, OutstandingBalanceResponse,
    InvoiceResponse, InstallmentResponse, PaymentResponse, CancelPlanRequest, RescheduleRequest,
    RecoveryResult, SyncResetRequest, SyncResetResponse,
)

router = APIRouter(prefix="/admin/payment-plans", tags=["Admin - Payment Plans"])


@router.post("/run", response_model=ProcessingResult)
async def run_payment_plans(
    body: RunPaymentPlansRequest,
    actor: str = Depends(require_admin_secret),
    db: AsyncSession = Depends(get_db),
    services: LedgerServices = Depends(get_services)
):
    """
    Run the processor now.

    With installment_id, attempt just that installment regardless of its due
    date; otherwise process everything due as of `as_of` (default today).
    """
    if body.installment_id is not None:
        return await services.processor.process_installment(db, body.installment_id, actor=actor)
    return await services.processor.process_due(db, as_of=body.as_of)


@router.post("/recover-stuck", response_model=RecoveryResult)
async def recover_stuck_installments(
    older_than_minutes: Optional[int] = None,
    actor: str = Depends(require_admin_secret),
    db: AsyncSession = Depends(get_db),
    services: LedgerServices = Depends(get_services)
):
    """Reconcile installments left in processing against the gateway."""
    return await services.processor.recover_stuck(db, older_than_minutes=older_than_minutes, actor=actor)


@router.get("/exhausted", response_model=List[InstallmentResponse])
async def list_exhausted_installments(
    actor: str = Depends(require_admin_secret),
    db: AsyncSession = Depends(get_db),
    services: LedgerServices = Depends(get_services)
):
    """Installments automatic retries have given up on."""
    return await services.processor.list_exhausted(db)


@router.post("/accounting-sync/reset", response_model=SyncResetResponse)
async def reset_failed_sync(
    body: SyncResetRequest,
    actor: str = Depends(require_admin_secret),
    db: AsyncSession = Depends(get_db),
    services: LedgerServices = Depends(get_services)
):
    """Send rejected invoices/installments back to pending."""
    invoices, installments = await services.sync.reset_failed(
        db, invoice_ids=body.invoice_ids, installment_ids=body.installment_ids, actor=actor
    )
    return SyncResetResponse(invoices_reset=invoices, installments_reset=installments)


@router.get("/users/{user_id}", response_model=List[PaymentPlanSummary])
async def get_user_payment_plans(
    user_id: int = Path(..., description="User ID"),
    actor: str = Depends(require_admin_secret),
    db: AsyncSession = Depends(get_db),
    services: LedgerServices = Depends(get_services)
):
    return await services.payoff.get_user_payment_plans(db, user_id)


@router.get("/users/{user_id}/outstanding", response_model=OutstandingBalanceResponse)
async def get_outstanding_balance(
    user_id: int = Path(..., description="User ID"),
    actor: str = Depends(require_admin_secret),
    db: AsyncSession = Depends(get_db),
    services: LedgerServices = Depends(get_services)
):
    balance = await services.payoff.get_total_outstanding_balance(db, user_id)
    return OutstandingBalanceResponse(user_id=user_id, outstanding_balance=balance)


@router.get("/{invoice_id}", response_model=InvoiceResponse)
async def get_payment_plan(
    invoice_id: int = Path(..., description="Invoice ID"),
    actor: str = Depends(require_admin_secret),
    db: AsyncSession = Depends(get_db)
):
    return await ledger_store.get_invoice(db, invoice_id)


@router.post("/{invoice_id}/payoff", response_model=PaymentResponse)
async def pay_off_plan(
    invoice_id: int = Path(..., description="Invoice ID"),
    actor: str = Depends(require_admin_secret),
    db: AsyncSession = Depends(get_db),
    services: LedgerServices = Depends(get_services)
):
    """Charge the whole remaining balance now."""
    return await services.payoff.payoff(db, invoice_id, actor=actor)


@router.post("/{invoice_id}/cancel", response_model=InvoiceResponse)
async def cancel_plan(
    body: CancelPlanRequest,
    invoice_id: int = Path(..., description="Invoice ID"),
    actor: str = Depends(require_admin_secret),
    db: AsyncSession = Depends(get_db),
    services: LedgerServices = Depends(get_services)
):
    await services.payoff.cancel(db, invoice_id, body.reason, actor=actor)
    return await ledger_store.get_invoice(db, invoice_id)


@router.post("/{invoice_id}/reschedule", response_model=List[InstallmentResponse])
async def reschedule_plan(
    body: RescheduleRequest,
    invoice_id: int = Path(..., description="Invoice ID"),
    actor: str = Depends(require_admin_secret),
    db: AsyncSession = Depends(get_db)
):
    """Move the remaining installments to start on a new date, 30 days apart."""
    return await InstallmentScheduler.reschedule(db, invoice_id, body.start_date, actor=actor)
