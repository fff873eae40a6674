"""
Installment Scheduler (Domain Logic).

Splits an invoice's net amount into installments and lays out their due
dates. The amounts always add back up to the invoice exactly.
"""

import logging
from datetime import date, datetime, timedelta
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from plan_ledger.app.core.config import settings
from plan_ledger.app.core.exceptions import SchedulingError
from plan_ledger.app.domain.ledger import ledger_store
from plan_ledger.app.models.installment import Installment
from plan_ledger.app.models.payment import Payment
from plan_ledger.app.models.user import User
from plan_ledger.app.models.ledger_enums import (
    InstallmentStatus, PlanStatus, PaymentStatus,
)
from plan_ledger.app.services.audit import log_event, AuditAction

logger = logging.getLogger("plan_ledger.scheduler")


async def _ensure_payment_unused(db: AsyncSession, payment_id: int) -> None:
    """A Payment settles at most one installment."""
    settled = await ledger_store.find_installment_settled_by(db, payment_id)
    if settled is not None:
        raise SchedulingError(
            "Payment already settles another installment",
            details={"payment_id": payment_id, "installment_id": settled.id}
        )


def split_amount(total_amount: int, installment_count: int) -> List[int]:
    """
    Integer split with the remainder on the first installment.

    >>> split_amount(10000, 3)
    [3334, 3333, 3333]
    """
    if total_amount < 0:
        raise SchedulingError("Amount cannot be negative", details={"total_amount": total_amount})
    count = max(installment_count, 1)
    base, remainder = divmod(total_amount, count)
    return [base + remainder] + [base] * (count - 1)


def due_dates(start_date: date, installment_count: int, interval_days: int) -> List[date]:
    return [start_date + timedelta(days=interval_days * i) for i in range(max(installment_count, 1))]


def can_create_payment_plan(user: Optional[User]) -> bool:
    """A plan needs a saved payment method whose setup completed."""
    if not user:
        return False
    return bool(user.gateway_payment_method_id) and user.payment_method_status == "succeeded"


class InstallmentScheduler:

    @staticmethod
    async def schedule(
        db: AsyncSession,
        invoice_id: int,
        installment_count: int,
        total_amount: Optional[int] = None,
        first_payment_id: Optional[int] = None,
        start_date: Optional[date] = None,
        activate: bool = True,
        interval_days: Optional[int] = None
    ) -> List[Installment]:
        """
        Create the installment schedule for a staged invoice.

        Flow:
        1. Validate invoice (no existing schedule, amount matches net)
        2. Split amount, remainder on installment 1
        3. Lay out due dates: #1 on start_date, then every interval_days
        4. Statuses:
           - first_payment_id: #1 PENDING linked to it, rest PLANNED
           - otherwise all PLANNED, or all STAGED when activate=False
        5. Recompute invoice totals and commit

        installment_count <= 1 produces a single full-amount installment and
        the invoice is not a payment plan.
        """
        interval_days = interval_days or settings.installment_interval_days
        start_date = start_date or datetime.utcnow().date()

        # 1. Validate
        invoice = await ledger_store.get_invoice(db, invoice_id)
        if invoice.installments:
            raise SchedulingError("Invoice already has an installment schedule", details={"invoice_id": invoice_id})
        if invoice.plan_status == PlanStatus.CANCELLED:
            raise SchedulingError("Invoice is cancelled", details={"invoice_id": invoice_id})

        total_amount = invoice.net_amount if total_amount is None else total_amount
        if total_amount != invoice.net_amount:
            raise SchedulingError(
                "Schedule total must equal the invoice net amount",
                details={"total_amount": total_amount, "net_amount": invoice.net_amount}
            )
        if total_amount == 0:
            raise SchedulingError("Nothing to schedule for a zero-amount invoice", details={"invoice_id": invoice_id})

        # 2-3. Amounts and dates
        count = max(installment_count, 1)
        amounts = split_amount(total_amount, count)
        dates = due_dates(start_date, count, interval_days)

        first_payment = None
        if first_payment_id is not None:
            first_payment = await db.get(Payment, first_payment_id)
            if not first_payment or first_payment.status != PaymentStatus.COMPLETED:
                raise SchedulingError(
                    "First payment must be a completed payment",
                    details={"payment_id": first_payment_id}
                )
            if first_payment.amount != amounts[0]:
                raise SchedulingError(
                    "First payment amount does not match the first installment",
                    details={"payment_amount": first_payment.amount, "installment_amount": amounts[0]}
                )
            await _ensure_payment_unused(db, first_payment_id)

        # 4. Statuses
        default_status = InstallmentStatus.PLANNED if (activate or first_payment) else InstallmentStatus.STAGED
        installments = []
        for sequence_number, (amount, due_date) in enumerate(zip(amounts, dates), start=1):
            installment = Installment(
                invoice_id=invoice.id,
                sequence_number=sequence_number,
                amount=amount,
                due_date=due_date,
                status=default_status,
                attempt_count=0,
            )
            if sequence_number == 1 and first_payment:
                installment.status = InstallmentStatus.PENDING
                installment.payment_id = first_payment.id
                installment.last_attempt_at = first_payment.completed_at
            installments.append(installment)

        invoice.is_payment_plan = count > 1
        db.add_all(installments)
        try:
            await db.flush()
        except IntegrityError as e:
            # Another schedule took the same first payment concurrently
            await db.rollback()
            raise SchedulingError(
                "Installment schedule could not be written",
                details={"invoice_id": invoice_id, "first_payment_id": first_payment_id, "error": str(e.orig)}
            ) from e

        # 5. Totals
        await ledger_store.recompute_invoice_totals(db, invoice.id)
        await log_event(
            db,
            AuditAction.PAYMENT_PLAN_SCHEDULED,
            invoice_id=invoice.id,
            metadata={"installment_count": count, "amounts": amounts, "first_payment_id": first_payment_id}
        )
        await db.commit()

        logger.info(
            "Installments scheduled",
            extra={"invoice_id": invoice.id, "installment_count": count, "status": default_status.value}
        )
        return await ledger_store.list_installments(db, invoice.id)

    @staticmethod
    async def activate(
        db: AsyncSession,
        invoice_id: int,
        first_payment_id: Optional[int] = None
    ) -> List[Installment]:
        """
        Move a staged schedule to planned once the purchase is confirmed.
        With a first payment, installment 1 is settled by it instead.
        """
        installments = await ledger_store.list_installments(db, invoice_id)
        if not installments:
            raise SchedulingError("Invoice has no installment schedule", details={"invoice_id": invoice_id})

        if first_payment_id is not None:
            first = installments[0]
            payment = await db.get(Payment, first_payment_id)
            if not payment or payment.status != PaymentStatus.COMPLETED or payment.amount != first.amount:
                raise SchedulingError(
                    "First payment does not settle the first installment",
                    details={"payment_id": first_payment_id, "installment_id": first.id}
                )
            await _ensure_payment_unused(db, first_payment_id)
            settled = await ledger_store.mark_installment_pending(
                db, first.id, payment.id, from_statuses=(InstallmentStatus.STAGED,)
            )
            if not settled:
                raise SchedulingError(
                    "First installment is no longer staged",
                    details={"installment_id": first.id}
                )

        activated = await ledger_store.activate_staged_installments(db, invoice_id)
        await ledger_store.recompute_invoice_totals(db, invoice_id)
        await log_event(
            db,
            AuditAction.PAYMENT_PLAN_ACTIVATED,
            invoice_id=invoice_id,
            metadata={"activated": activated, "first_payment_id": first_payment_id}
        )
        await db.commit()

        logger.info("Installments activated", extra={"invoice_id": invoice_id, "activated": activated})
        return await ledger_store.list_installments(db, invoice_id)

    @staticmethod
    async def reschedule(
        db: AsyncSession,
        invoice_id: int,
        start_date: date,
        actor: Optional[str] = None,
        interval_days: Optional[int] = None
    ) -> List[Installment]:
        """
        Re-lay the due dates of the unpaid, uncharged installments: the first
        of them on start_date, the rest interval_days apart.
        """
        interval_days = interval_days or settings.installment_interval_days
        invoice = await ledger_store.get_invoice(db, invoice_id)
        if invoice.plan_status != PlanStatus.ACTIVE:
            raise SchedulingError(
                f"Cannot reschedule a {invoice.plan_status.value} plan",
                details={"invoice_id": invoice_id}
            )

        remaining = await ledger_store.list_installments(
            db, invoice_id, statuses=(InstallmentStatus.STAGED, InstallmentStatus.PLANNED)
        )
        new_dates = due_dates(start_date, len(remaining), interval_days)
        changes = {}
        for installment, due_date in zip(remaining, new_dates):
            if await ledger_store.set_due_date(db, installment.id, due_date):
                changes[installment.id] = due_date.isoformat()

        await log_event(
            db,
            AuditAction.PAYMENT_PLAN_RESCHEDULED,
            actor=actor,
            invoice_id=invoice_id,
            metadata={"due_dates": changes}
        )
        await db.commit()

        logger.info("Installments rescheduled", extra={"invoice_id": invoice_id, "count": len(changes)})
        return await ledger_store.list_installments(db, invoice_id)


