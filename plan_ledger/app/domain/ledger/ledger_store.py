"""
Ledger Store (Data Access).

Every transition that guards money movement is a conditional UPDATE evaluated
by the database. Callers check the returned rowcount; nothing here reads a row
and then writes it back.
"""

from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select, update, exists, func, or_, and_, case
from sqlalchemy.ext.asyncio import AsyncSession

from plan_ledger.app.core.exceptions import ResourceNotFoundError
from plan_ledger.app.models.invoice import Invoice
from plan_ledger.app.models.installment import Installment
from plan_ledger.app.models.payment import Payment
from plan_ledger.app.models.ledger_enums import (
    InstallmentStatus, InvoiceSyncStatus, PlanStatus, PaymentMethod, PaymentStatus,
    OUTSTANDING_INSTALLMENT_STATUSES,
)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

async def get_invoice(db: AsyncSession, invoice_id: int) -> Invoice:
    result = await db.execute(
        select(Invoice)
        .where(Invoice.id == invoice_id)
        .execution_options(populate_existing=True)
    )
    invoice = result.scalar_one_or_none()
    if not invoice:
        raise ResourceNotFoundError("Invoice", invoice_id)
    return invoice


async def get_installment(db: AsyncSession, installment_id: int) -> Installment:
    result = await db.execute(
        select(Installment)
        .where(Installment.id == installment_id)
        .execution_options(populate_existing=True)
    )
    installment = result.scalar_one_or_none()
    if not installment:
        raise ResourceNotFoundError("Installment", installment_id)
    return installment


async def list_installments(
    db: AsyncSession,
    invoice_id: int,
    statuses: Optional[Iterable[InstallmentStatus]] = None
) -> List[Installment]:
    query = select(Installment).where(Installment.invoice_id == invoice_id)
    if statuses is not None:
        query = query.where(Installment.status.in_(list(statuses)))
    query = query.order_by(Installment.sequence_number).execution_options(populate_existing=True)
    result = await db.execute(query)
    return list(result.scalars().all())


def eligible_for_charge(
    as_of: date,
    now: datetime,
    max_attempts: int,
    retry_interval_hours: int
):
    """
    WHERE clause for installments the processor may charge.

    planned AND due AND (never attempted OR (under the ceiling AND the flat
    retry interval has elapsed since the last attempt)).
    """
    retry_cutoff = now - timedelta(hours=retry_interval_hours)
    return and_(
        Installment.status == InstallmentStatus.PLANNED,
        Installment.due_date <= as_of,
        or_(
            Installment.attempt_count == 0,
            and_(
                Installment.attempt_count < max_attempts,
                or_(
                    Installment.last_attempt_at.is_(None),
                    Installment.last_attempt_at <= retry_cutoff,
                ),
            ),
        ),
    )


async def select_due_installments(
    db: AsyncSession,
    as_of: date,
    now: datetime,
    max_attempts: int,
    retry_interval_hours: int
) -> List[Installment]:
    result = await db.execute(
        select(Installment)
        .where(eligible_for_charge(as_of, now, max_attempts, retry_interval_hours))
        .order_by(Installment.due_date, Installment.id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def count_due_planned(db: AsyncSession, as_of: date) -> int:
    """All planned installments that are due, eligible or not."""
    result = await db.execute(
        select(func.count(Installment.id)).where(
            Installment.status == InstallmentStatus.PLANNED,
            Installment.due_date <= as_of,
        )
    )
    return result.scalar() or 0


async def select_planned_due_on(db: AsyncSession, due_date: date) -> List[Installment]:
    result = await db.execute(
        select(Installment)
        .where(
            Installment.status == InstallmentStatus.PLANNED,
            Installment.due_date == due_date,
        )
        .order_by(Installment.id)
    )
    return list(result.scalars().all())


async def select_exhausted(db: AsyncSession, max_attempts: int) -> List[Installment]:
    """Planned installments automatic retries will never pick up again."""
    result = await db.execute(
        select(Installment)
        .where(
            Installment.status == InstallmentStatus.PLANNED,
            Installment.attempt_count >= max_attempts,
        )
        .order_by(Installment.due_date, Installment.id)
    )
    return list(result.scalars().all())


async def select_stuck_processing(db: AsyncSession, older_than: datetime) -> List[Installment]:
    """
    Installments whose last gateway call may have gone through unrecorded:
    stuck in processing since before the cutoff, or released with the key kept
    (planned, or failed when the plan was cancelled meanwhile).
    """
    result = await db.execute(
        select(Installment)
        .where(
            Installment.in_flight_idempotency_key.is_not(None),
            or_(
                and_(
                    Installment.status == InstallmentStatus.PROCESSING,
                    or_(
                        Installment.last_attempt_at.is_(None),
                        Installment.last_attempt_at <= older_than,
                    ),
                ),
                Installment.status.in_([InstallmentStatus.PLANNED, InstallmentStatus.FAILED]),
            ),
        )
        .order_by(Installment.id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def select_pending_invoices(db: AsyncSession) -> List[Invoice]:
    result = await db.execute(
        select(Invoice)
        .where(Invoice.sync_status == InvoiceSyncStatus.PENDING)
        .order_by(Invoice.staged_at, Invoice.id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def select_pending_installments(db: AsyncSession) -> List[Installment]:
    result = await db.execute(
        select(Installment)
        .where(Installment.status == InstallmentStatus.PENDING)
        .order_by(Installment.invoice_id, Installment.sequence_number)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def select_user_plan_invoices(db: AsyncSession, user_id: int) -> List[Invoice]:
    result = await db.execute(
        select(Invoice)
        .where(Invoice.user_id == user_id, Invoice.is_payment_plan.is_(True))
        .order_by(Invoice.created_at.desc(), Invoice.id.desc())
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def sum_outstanding_for_user(db: AsyncSession, user_id: int) -> int:
    """Unpaid installment amounts across the user's active plans."""
    result = await db.execute(
        select(func.coalesce(func.sum(Installment.amount), 0))
        .join(Invoice, Invoice.id == Installment.invoice_id)
        .where(
            Invoice.user_id == user_id,
            Invoice.plan_status == PlanStatus.ACTIVE,
            or_(is_outstanding(), Installment.status == InstallmentStatus.PROCESSING),
        )
    )
    return int(result.scalar() or 0)


async def find_installment_settled_by(db: AsyncSession, payment_id: int) -> Optional[Installment]:
    result = await db.execute(select(Installment).where(Installment.payment_id == payment_id))
    return result.scalar_one_or_none()


async def find_payment_by_reference(db: AsyncSession, transaction_ref: str) -> Optional[Payment]:
    result = await db.execute(
        select(Payment).where(Payment.gateway_transaction_ref == transaction_ref)
    )
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Conditional transitions
# ---------------------------------------------------------------------------

def is_outstanding():
    """Never charged: planned, or failed without a Payment behind it."""
    return and_(
        Installment.status.in_(list(OUTSTANDING_INSTALLMENT_STATUSES)),
        Installment.payment_id.is_(None),
        Installment.payoff_payment_id.is_(None),
    )


def plan_in_status(status: PlanStatus):
    """Correlated check on the installment's parent invoice."""
    return exists().where(
        Invoice.id == Installment.invoice_id,
        Invoice.plan_status == status,
    ).correlate(Installment)


def cancelled_plan_reason(reason: Optional[str]) -> str:
    return f"Payment plan cancelled: {reason}" if reason else "Payment plan cancelled"


async def _execute_update(db: AsyncSession, stmt) -> int:
    result = await db.execute(stmt.execution_options(synchronize_session=False))
    return result.rowcount


async def _plan_state(db: AsyncSession, installment_id: int) -> Tuple[PlanStatus, Optional[str]]:
    result = await db.execute(
        select(Invoice.plan_status, Invoice.cancellation_reason)
        .join(Installment, Installment.invoice_id == Invoice.id)
        .where(Installment.id == installment_id)
    )
    return tuple(result.one())


async def claim_installment(
    db: AsyncSession,
    installment_id: int,
    expected_attempt_count: int,
    now: datetime,
    idempotency_key: str,
    max_attempts: int
) -> bool:
    """
    planned -> processing, attempt_count + 1.

    Matches only the attempt_count the caller observed, so of two racing
    runs exactly one wins. A key still in flight from an earlier attempt is
    preserved so it can be reconciled before a new charge. Installments of
    a plan that is no longer active are never claimed.
    """
    rows = await _execute_update(
        db,
        update(Installment)
        .where(
            Installment.id == installment_id,
            Installment.status == InstallmentStatus.PLANNED,
            Installment.attempt_count == expected_attempt_count,
            Installment.attempt_count < max_attempts,
            plan_in_status(PlanStatus.ACTIVE),
        )
        .values(
            status=InstallmentStatus.PROCESSING,
            attempt_count=Installment.attempt_count + 1,
            last_attempt_at=now,
            in_flight_idempotency_key=func.coalesce(
                Installment.in_flight_idempotency_key, idempotency_key
            ),
        )
    )
    return rows == 1


async def set_in_flight_key(db: AsyncSession, installment_id: int, idempotency_key: Optional[str]) -> bool:
    rows = await _execute_update(
        db,
        update(Installment)
        .where(
            Installment.id == installment_id,
            Installment.status == InstallmentStatus.PROCESSING,
        )
        .values(in_flight_idempotency_key=idempotency_key)
    )
    return rows == 1


async def release_installment(
    db: AsyncSession,
    installment_id: int,
    reason: str,
    keep_in_flight_key: bool = False
) -> bool:
    """
    processing -> planned, recording why.

    If the plan was cancelled while the attempt was in flight the row goes
    to failed with the cancellation reason instead. The update only matches
    the plan status read here; a cancel landing in between leaves the row in
    processing and returns False.
    """
    plan_status, cancellation_reason = await _plan_state(db, installment_id)
    if plan_status == PlanStatus.CANCELLED:
        values = {"status": InstallmentStatus.FAILED, "failure_reason": cancelled_plan_reason(cancellation_reason)}
    else:
        values = {"status": InstallmentStatus.PLANNED, "failure_reason": reason}
    if not keep_in_flight_key:
        values["in_flight_idempotency_key"] = None
    rows = await _execute_update(
        db,
        update(Installment)
        .where(
            Installment.id == installment_id,
            Installment.status == InstallmentStatus.PROCESSING,
            plan_in_status(plan_status),
        )
        .values(**values)
    )
    return rows == 1


async def clear_in_doubt_key(db: AsyncSession, installment_id: int, reason: str) -> bool:
    """
    Drop a key the gateway confirmed never produced a charge. Planned rows
    record why; failed rows keep the reason they failed with.
    """
    rows = await _execute_update(
        db,
        update(Installment)
        .where(
            Installment.id == installment_id,
            Installment.status == InstallmentStatus.PLANNED,
        )
        .values(in_flight_idempotency_key=None, failure_reason=reason)
    )
    if rows:
        return True
    rows = await _execute_update(
        db,
        update(Installment)
        .where(
            Installment.id == installment_id,
            Installment.status == InstallmentStatus.FAILED,
        )
        .values(in_flight_idempotency_key=None)
    )
    return rows == 1


async def mark_installment_pending(
    db: AsyncSession,
    installment_id: int,
    payment_id: int,
    from_statuses: Iterable[InstallmentStatus] = (InstallmentStatus.PROCESSING,)
) -> bool:
    """processing -> pending, linked to the Payment that settled it."""
    rows = await _execute_update(
        db,
        update(Installment)
        .where(
            Installment.id == installment_id,
            Installment.status.in_(list(from_statuses)),
            Installment.payment_id.is_(None),
        )
        .values(
            status=InstallmentStatus.PENDING,
            payment_id=payment_id,
            failure_reason=None,
            in_flight_idempotency_key=None,
        )
    )
    return rows == 1


async def claim_for_payoff(
    db: AsyncSession,
    invoice_id: int,
    installment_ids: List[int],
    now: datetime,
    idempotency_key: str
) -> int:
    return await _execute_update(
        db,
        update(Installment)
        .where(
            Installment.invoice_id == invoice_id,
            Installment.id.in_(installment_ids),
            is_outstanding(),
            Installment.in_flight_idempotency_key.is_(None),
        )
        .values(
            status=InstallmentStatus.PROCESSING,
            last_attempt_at=now,
            in_flight_idempotency_key=idempotency_key,
        )
    )


async def restore_after_payoff(db: AsyncSession, prior_state: Dict[int, dict]) -> int:
    """Put payoff-claimed rows back exactly as they were before the claim."""
    restored = 0
    for installment_id, state in prior_state.items():
        restored += await _execute_update(
            db,
            update(Installment)
            .where(
                Installment.id == installment_id,
                Installment.status == InstallmentStatus.PROCESSING,
            )
            .values(
                status=state["status"],
                last_attempt_at=state["last_attempt_at"],
                in_flight_idempotency_key=None,
            )
        )
    return restored


async def settle_by_payoff(db: AsyncSession, installment_ids: List[int], payment_id: int) -> int:
    return await _execute_update(
        db,
        update(Installment)
        .where(
            Installment.id.in_(installment_ids),
            Installment.status == InstallmentStatus.PROCESSING,
        )
        .values(
            status=InstallmentStatus.PENDING,
            payoff_payment_id=payment_id,
            failure_reason=None,
            in_flight_idempotency_key=None,
        )
    )


async def activate_staged_installments(db: AsyncSession, invoice_id: int) -> int:
    """staged -> planned for every installment of the invoice."""
    return await _execute_update(
        db,
        update(Installment)
        .where(
            Installment.invoice_id == invoice_id,
            Installment.status == InstallmentStatus.STAGED,
        )
        .values(status=InstallmentStatus.PLANNED)
    )


async def set_due_date(db: AsyncSession, installment_id: int, due_date: date) -> bool:
    rows = await _execute_update(
        db,
        update(Installment)
        .where(
            Installment.id == installment_id,
            Installment.status.in_([InstallmentStatus.STAGED, InstallmentStatus.PLANNED]),
        )
        .values(due_date=due_date)
    )
    return rows == 1


async def cancel_installments(db: AsyncSession, invoice_id: int, reason: str) -> int:
    return await _execute_update(
        db,
        update(Installment)
        .where(
            Installment.invoice_id == invoice_id,
            is_outstanding(),
        )
        .values(status=InstallmentStatus.FAILED, failure_reason=reason)
    )


async def mark_installment_synced(db: AsyncSession, installment_id: int, external_id: Optional[str], now: datetime) -> bool:
    rows = await _execute_update(
        db,
        update(Installment)
        .where(
            Installment.id == installment_id,
            Installment.status == InstallmentStatus.PENDING,
        )
        .values(
            status=InstallmentStatus.SYNCED,
            external_id=external_id,
            sync_error=None,
            synced_at=now,
        )
    )
    return rows == 1


async def record_installment_sync_error(
    db: AsyncSession,
    installment_id: int,
    error: str,
    terminal: bool
) -> bool:
    values = {"sync_error": error, "sync_attempts": Installment.sync_attempts + 1}
    if terminal:
        values["status"] = InstallmentStatus.FAILED
    rows = await _execute_update(
        db,
        update(Installment)
        .where(
            Installment.id == installment_id,
            Installment.status == InstallmentStatus.PENDING,
        )
        .values(**values)
    )
    return rows == 1


async def mark_invoice_synced(
    db: AsyncSession,
    invoice_id: int,
    external_id: str,
    invoice_number: Optional[str],
    now: datetime
) -> bool:
    rows = await _execute_update(
        db,
        update(Invoice)
        .where(
            Invoice.id == invoice_id,
            Invoice.sync_status == InvoiceSyncStatus.PENDING,
        )
        .values(
            sync_status=InvoiceSyncStatus.SYNCED,
            external_id=external_id,
            invoice_number=invoice_number,
            sync_error=None,
            last_synced_at=now,
        )
    )
    return rows == 1


async def record_invoice_sync_error(
    db: AsyncSession,
    invoice_id: int,
    error: str,
    terminal: bool,
    now: datetime
) -> bool:
    values = {
        "sync_error": error,
        "sync_attempts": Invoice.sync_attempts + 1,
        "last_synced_at": now,
    }
    if terminal:
        values["sync_status"] = InvoiceSyncStatus.FAILED
    rows = await _execute_update(
        db,
        update(Invoice)
        .where(
            Invoice.id == invoice_id,
            Invoice.sync_status == InvoiceSyncStatus.PENDING,
        )
        .values(**values)
    )
    return rows == 1


async def reset_failed_invoices(db: AsyncSession, invoice_ids: Optional[List[int]] = None) -> int:
    stmt = update(Invoice).where(Invoice.sync_status == InvoiceSyncStatus.FAILED)
    if invoice_ids is not None:
        stmt = stmt.where(Invoice.id.in_(invoice_ids))
    return await _execute_update(db, stmt.values(sync_status=InvoiceSyncStatus.PENDING, sync_error=None))


async def reset_failed_installment_syncs(db: AsyncSession, installment_ids: Optional[List[int]] = None) -> int:
    """
    Only installments that were actually charged go back to pending; a
    cancelled installment is failed too but has nothing to sync.
    """
    stmt = update(Installment).where(
        Installment.status == InstallmentStatus.FAILED,
        or_(Installment.payment_id.is_not(None), Installment.payoff_payment_id.is_not(None)),
    )
    if installment_ids is not None:
        stmt = stmt.where(Installment.id.in_(installment_ids))
    return await _execute_update(db, stmt.values(status=InstallmentStatus.PENDING, sync_error=None))


async def reset_failed_sync(
    db: AsyncSession,
    invoice_ids: Optional[List[int]] = None,
    installment_ids: Optional[List[int]] = None
) -> Tuple[int, int]:
    invoices = await reset_failed_invoices(db, invoice_ids)
    installments = await reset_failed_installment_syncs(db, installment_ids)
    return invoices, installments


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------

async def recompute_invoice_totals(db: AsyncSession, invoice_id: int) -> Invoice:
    """
    Refresh paid_amount from the installments and advance the invoice:
    staged -> pending once money has moved, plan completed once every
    installment is paid.

    Paid means a Payment settled the installment. Its status can still be
    failed when the accounting system rejected the record.
    """
    invoice = await get_invoice(db, invoice_id)

    is_paid = or_(Installment.payment_id.is_not(None), Installment.payoff_payment_id.is_not(None))
    result = await db.execute(
        select(
            func.count(Installment.id),
            func.coalesce(func.sum(case((is_paid, Installment.amount), else_=0)), 0),
            func.coalesce(func.sum(case((is_paid, 1), else_=0)), 0),
        ).where(Installment.invoice_id == invoice_id)
    )
    total_count, paid_amount, paid_count = result.one()

    invoice.paid_amount = int(paid_amount)
    if total_count and paid_count == total_count and invoice.plan_status == PlanStatus.ACTIVE:
        invoice.plan_status = PlanStatus.COMPLETED
    if invoice.sync_status == InvoiceSyncStatus.STAGED and paid_count > 0:
        invoice.sync_status = InvoiceSyncStatus.PENDING

    await db.flush()
    return invoice


async def get_or_create_gateway_payment(
    db: AsyncSession,
    user_id: int,
    amount: int,
    transaction_ref: Optional[str],
    completed_at: datetime
) -> Payment:
    """
    Completed Payment for a confirmed charge. A gateway reference is only
    ever booked once; a missing reference means a free (zero-amount) payment.
    """
    if transaction_ref:
        existing = await find_payment_by_reference(db, transaction_ref)
        if existing:
            return existing

    payment = Payment(
        user_id=user_id,
        amount=amount,
        payment_method=PaymentMethod.GATEWAY if transaction_ref else PaymentMethod.FREE,
        gateway_transaction_ref=transaction_ref,
        status=PaymentStatus.COMPLETED,
        completed_at=completed_at,
    )
    db.add(payment)
    await db.flush()
    return payment
