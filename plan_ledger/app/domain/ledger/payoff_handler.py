"""
Payoff / Cancellation Handler (Domain Logic).

Short-circuits the rest of a payment plan: either charge everything still
owed in one go, or stop charging altogether.
"""

import logging
from datetime import datetime
from typing import Optional, List

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from plan_ledger.app.core.exceptions import (
    GatewayError, InstallmentClaimConflictError, NoPaymentMethodError,
    NoRemainingBalanceError, PayoffChargeFailedError,
)
from plan_ledger.app.domain.ledger import ledger_store
from plan_ledger.app.domain.ledger.installment_scheduler import can_create_payment_plan
from plan_ledger.app.models.dlq import DLQTask
from plan_ledger.app.models.installment import Installment
from plan_ledger.app.models.notification import NotificationEvent
from plan_ledger.app.models.payment import Payment
from plan_ledger.app.models.user import User
from plan_ledger.app.models.ledger_enums import (
    InstallmentStatus, PlanStatus, OUTSTANDING_INSTALLMENT_STATUSES,
)
from plan_ledger.app.schemas.payment_plan import PaymentPlanSummary, InstallmentResponse
from plan_ledger.app.services.audit import log_event, AuditAction
from plan_ledger.app.services.dead_letters import record_dead_letter
from plan_ledger.app.services.notification_service import Notifier, Recipient, notify_safely
from plan_ledger.app.services.payment_gateway import PaymentGateway

logger = logging.getLogger("plan_ledger.payoff")


def payoff_idempotency_key(invoice_id: int, installment_ids: List[int]) -> str:
    return f"invoice-{invoice_id}-payoff-{'-'.join(str(i) for i in sorted(installment_ids))}"


def _is_outstanding(installment: Installment) -> bool:
    return installment.status in OUTSTANDING_INSTALLMENT_STATUSES and installment.settling_payment_id is None


class PayoffHandler:

    def __init__(self, gateway: PaymentGateway, notifier: Notifier):
        self.gateway = gateway
        self.notifier = notifier

    async def payoff(
        self,
        db: AsyncSession,
        invoice_id: int,
        actor: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Payment:
        """
        Charge the remaining balance of a plan as one consolidated payment.

        Flow:
        1. Validate: balance > 0, nothing processing or awaiting confirmation,
           usable payment method
        2. Claim every outstanding installment (planned/failed -> processing)
        3. One gateway charge for the sum
        4. Success: Payment, installments -> pending, plan completed
           Decline: installments restored to exactly what they were

        Raises without side effects when validation fails.
        """
        now = now or datetime.utcnow()

        # 1. Validate
        invoice = await ledger_store.get_invoice(db, invoice_id)
        if invoice.plan_status == PlanStatus.CANCELLED:
            raise InstallmentClaimConflictError(
                "Payment plan is cancelled",
                details={"invoice_id": invoice_id}
            )
        installments = await ledger_store.list_installments(db, invoice_id)
        processing = [i.id for i in installments if i.status == InstallmentStatus.PROCESSING]
        if processing:
            raise InstallmentClaimConflictError(
                "Installments are currently being processed",
                details={"invoice_id": invoice_id, "installment_ids": processing}
            )

        outstanding = [i for i in installments if _is_outstanding(i)]
        # A released attempt may have charged; recover_stuck settles it first
        in_doubt = [i.id for i in outstanding if i.in_flight_idempotency_key]
        if in_doubt:
            raise InstallmentClaimConflictError(
                "Installments have a charge awaiting confirmation",
                details={"invoice_id": invoice_id, "installment_ids": in_doubt}
            )
        balance = sum(i.amount for i in outstanding)
        if balance <= 0:
            raise NoRemainingBalanceError(invoice_id)

        user = await db.get(User, invoice.user_id)
        if not can_create_payment_plan(user):
            raise NoPaymentMethodError(invoice.user_id)

        # 2. Claim
        ids = [i.id for i in outstanding]
        prior_state = {i.id: {"status": i.status, "last_attempt_at": i.last_attempt_at} for i in outstanding}
        key = payoff_idempotency_key(invoice_id, ids)
        claimed = await ledger_store.claim_for_payoff(db, invoice_id, ids, now, key)
        if claimed != len(ids):
            await db.rollback()
            raise InstallmentClaimConflictError(
                "Installments changed while preparing the payoff",
                details={"invoice_id": invoice_id, "expected": len(ids), "claimed": claimed}
            )
        await db.commit()

        log_extra = {"invoice_id": invoice_id, "amount": balance, "installment_ids": ids}

        # 3. Charge
        try:
            charge = await self.gateway.charge(
                amount=balance,
                payment_method_ref=user.gateway_payment_method_id,
                customer_ref=user.gateway_customer_id,
                idempotency_key=key,
                metadata={"invoice_id": invoice_id, "type": "early_payoff"},
            )
        except GatewayError as e:
            # Outcome unknown: rows stay processing under the key for recover_stuck
            logger.error("Payoff charge outcome unknown", extra={**log_extra, "error": str(e)})
            raise PayoffChargeFailedError(invoice_id, "Payment could not be confirmed") from e

        if not charge.succeeded:
            reason = charge.failure_message or f"Payment {charge.status.value}"
            await ledger_store.restore_after_payoff(db, prior_state)
            await db.commit()
            logger.warning("Payoff charge declined", extra={**log_extra, "reason": reason})
            raise PayoffChargeFailedError(invoice_id, reason)

        # 4. Record
        try:
            payment = await ledger_store.get_or_create_gateway_payment(
                db, user.id, balance, charge.transaction_ref, now
            )
            settled = await ledger_store.settle_by_payoff(db, ids, payment.id)
            invoice = await ledger_store.recompute_invoice_totals(db, invoice_id)
            await log_event(
                db,
                AuditAction.PAYMENT_PLAN_PAID_OFF,
                actor=actor,
                invoice_id=invoice_id,
                metadata={"payment_id": payment.id, "amount": balance, "installment_ids": ids}
            )
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error(
                "Payoff charged but not recorded",
                extra={**log_extra, "transaction_ref": charge.transaction_ref, "error": str(e)}
            )
            await record_dead_letter(
                db,
                DLQTask.INSTALLMENT_CHARGE_IN_DOUBT,
                str(e),
                payload={"invoice_id": invoice_id, "installment_ids": ids,
                         "transaction_ref": charge.transaction_ref},
            )
            await db.commit()
            raise

        logger.info(
            "Payment plan paid off",
            extra={**log_extra, "payment_id": payment.id, "settled": settled}
        )

        await notify_safely(
            self.notifier,
            NotificationEvent.PAYMENT_PLAN_EARLY_PAYOFF.value,
            Recipient.for_user(user),
            {
                "invoice_id": invoice_id,
                "amount": balance,
                "installments_settled": settled,
                "paid_amount": invoice.paid_amount,
                "transaction_ref": charge.transaction_ref,
            },
        )
        return payment

    async def cancel(
        self,
        db: AsyncSession,
        invoice_id: int,
        reason: str,
        actor: Optional[str] = None
    ) -> None:
        """
        Stop a plan. Outstanding installments become failed with the reason;
        nothing is charged. Cancelling a cancelled plan does nothing.
        """
        invoice = await ledger_store.get_invoice(db, invoice_id)
        if invoice.plan_status == PlanStatus.CANCELLED:
            logger.info("Payment plan already cancelled", extra={"invoice_id": invoice_id})
            return
        if invoice.plan_status == PlanStatus.COMPLETED:
            logger.info("Payment plan already completed, nothing to cancel", extra={"invoice_id": invoice_id})
            return

        cancelled = await ledger_store.cancel_installments(
            db, invoice_id, ledger_store.cancelled_plan_reason(reason)
        )
        invoice.plan_status = PlanStatus.CANCELLED
        invoice.cancellation_reason = reason
        await db.flush()
        await log_event(
            db,
            AuditAction.PAYMENT_PLAN_CANCELLED,
            actor=actor,
            invoice_id=invoice_id,
            metadata={"reason": reason, "installments_cancelled": cancelled}
        )
        await db.commit()

        logger.info(
            "Payment plan cancelled",
            extra={"invoice_id": invoice_id, "installments_cancelled": cancelled, "reason": reason}
        )

    @staticmethod
    async def get_user_payment_plans(db: AsyncSession, user_id: int) -> List[PaymentPlanSummary]:
        summaries = []
        for invoice in await ledger_store.select_user_plan_invoices(db, user_id):
            installments = list(invoice.installments)
            paid = [i for i in installments if i.settling_payment_id is not None]
            upcoming = [
                i for i in installments
                if i.status in (InstallmentStatus.PLANNED, InstallmentStatus.PROCESSING)
            ]
            next_installment = min(upcoming, key=lambda i: i.due_date) if upcoming else None
            summaries.append(PaymentPlanSummary(
                invoice_id=invoice.id,
                source_type=invoice.source_type,
                source_id=invoice.source_id,
                plan_status=invoice.plan_status,
                total_amount=invoice.net_amount,
                paid_amount=invoice.paid_amount,
                remaining_balance=invoice.remaining_balance,
                installments_paid=len(paid),
                installments_total=len(installments),
                next_due_date=next_installment.due_date if next_installment else None,
                next_amount=next_installment.amount if next_installment else None,
                installments=[InstallmentResponse.model_validate(i) for i in installments],
            ))
        return summaries

    @staticmethod
    async def get_total_outstanding_balance(db: AsyncSession, user_id: int) -> int:
        return await ledger_store.sum_outstanding_for_user(db, user_id)
