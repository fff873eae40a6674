"""
Installment Processor (Domain Logic).

Charges due installments through the payment gateway. Runs one installment
at a time; concurrent runs are kept apart only by the conditional claim in
the ledger store.

Every attempt commits in three steps:
1. the claim (planned -> processing, attempt_count + 1)
2. the gateway call, outside any transaction
3. the outcome (pending + Payment, or back to planned with a reason;
   failed instead when the plan was cancelled during the attempt)

Notifications go out after step 3 commits.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional, List, Tuple, Dict, Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from plan_ledger.app.core.config import settings
from plan_ledger.app.core.exceptions import GatewayError, InstallmentClaimConflictError
from plan_ledger.app.domain.ledger import ledger_store
from plan_ledger.app.domain.ledger.installment_scheduler import can_create_payment_plan as has_usable_payment_method
from plan_ledger.app.models.installment import Installment
from plan_ledger.app.models.invoice import Invoice
from plan_ledger.app.models.user import User
from plan_ledger.app.models.dlq import DLQTask
from plan_ledger.app.models.notification import NotificationEvent
from plan_ledger.app.models.ledger_enums import InstallmentStatus, PlanStatus
from plan_ledger.app.schemas.payment_plan import ProcessingResult, PreNotificationResult, RecoveryResult
from plan_ledger.app.services.audit import log_event, AuditAction
from plan_ledger.app.services.dead_letters import record_dead_letter
from plan_ledger.app.services.notification_service import Notifier, Recipient, notify_safely
from plan_ledger.app.services.payment_gateway import PaymentGateway, ChargeResult

logger = logging.getLogger("plan_ledger.processor")

NO_PAYMENT_METHOD = "No saved payment method"

PendingNotification = Tuple[str, Recipient, Dict[str, Any]]


def installment_idempotency_key(installment_id: int, attempt: int) -> str:
    return f"installment-{installment_id}-attempt-{attempt}"


@dataclass
class _Snapshot:
    """Row values as selected, before any claim."""
    id: int
    invoice_id: int
    sequence_number: int
    amount: int
    due_date: date
    attempt_count: int
    in_flight_idempotency_key: Optional[str]
    status: InstallmentStatus
    last_attempt_at: Optional[datetime]

    @classmethod
    def of(cls, installment: Installment) -> "_Snapshot":
        return cls(
            id=installment.id,
            invoice_id=installment.invoice_id,
            sequence_number=installment.sequence_number,
            amount=installment.amount,
            due_date=installment.due_date,
            attempt_count=installment.attempt_count,
            in_flight_idempotency_key=installment.in_flight_idempotency_key,
            status=installment.status,
            last_attempt_at=installment.last_attempt_at,
        )


class InstallmentProcessor:

    def __init__(
        self,
        gateway: PaymentGateway,
        notifier: Notifier,
        max_attempts: Optional[int] = None,
        retry_interval_hours: Optional[int] = None
    ):
        self.gateway = gateway
        self.notifier = notifier
        self.max_attempts = max_attempts or settings.max_payment_attempts
        self.retry_interval_hours = retry_interval_hours or settings.retry_interval_hours

    async def process_due(
        self,
        db: AsyncSession,
        as_of: Optional[date] = None,
        now: Optional[datetime] = None
    ) -> ProcessingResult:
        """
        Charge every installment that is due and eligible.

        Eligible: planned, due on or before as_of, and either never attempted
        or under the attempt ceiling with the retry interval elapsed.
        """
        now = now or datetime.utcnow()
        as_of = as_of or now.date()
        result = ProcessingResult()

        candidates = await ledger_store.select_due_installments(
            db, as_of, now, self.max_attempts, self.retry_interval_hours
        )
        snapshots = [_Snapshot.of(installment) for installment in candidates]
        result.found = len(snapshots)

        logger.info(
            "Processing due installments",
            extra={
                "as_of": as_of.isoformat(),
                "eligible": result.found,
                "due_planned": await ledger_store.count_due_planned(db, as_of),
            }
        )

        for snapshot in snapshots:
            await self._process_one(db, snapshot, now, result)

        logger.info(
            "Installment run finished",
            extra={
                "processed": result.processed,
                "failed": result.failed,
                "skipped": result.skipped,
                "exhausted": result.exhausted,
            }
        )
        return result

    async def process_installment(
        self,
        db: AsyncSession,
        installment_id: int,
        now: Optional[datetime] = None,
        actor: Optional[str] = None
    ) -> ProcessingResult:
        """
        Out-of-band attempt for one installment. Ignores the due date and the
        retry interval; the claim and the attempt ceiling still apply.
        """
        now = now or datetime.utcnow()
        result = ProcessingResult()
        installment = await ledger_store.get_installment(db, installment_id)
        result.found = 1

        if installment.status != InstallmentStatus.PLANNED:
            result.skipped = 1
            result.errors.append(f"Installment {installment_id} is {installment.status.value}, not planned")
            return result
        if installment.attempt_count >= self.max_attempts:
            result.skipped = 1
            result.errors.append(f"Installment {installment_id} reached the retry limit")
            return result

        snapshot = _Snapshot.of(installment)
        await log_event(
            db,
            AuditAction.INSTALLMENT_PROCESSED_MANUALLY,
            actor=actor,
            invoice_id=snapshot.invoice_id,
            installment_id=snapshot.id,
            metadata={"attempt": snapshot.attempt_count + 1}
        )
        await db.commit()

        await self._process_one(db, snapshot, now, result)
        return result

    async def _process_one(
        self,
        db: AsyncSession,
        snapshot: _Snapshot,
        now: datetime,
        result: ProcessingResult
    ) -> None:
        attempt = snapshot.attempt_count + 1
        key = installment_idempotency_key(snapshot.id, attempt)
        log_extra = {"installment_id": snapshot.id, "invoice_id": snapshot.invoice_id, "attempt_count": attempt}

        # 1. Claim
        claimed = await ledger_store.claim_installment(
            db, snapshot.id, snapshot.attempt_count, now, key, self.max_attempts
        )
        if not claimed:
            await db.rollback()
            result.skipped += 1
            logger.info("Installment claimed by another run", extra=log_extra)
            return
        await db.commit()
        if attempt > 1:
            result.retries_attempted += 1

        notifications: List[PendingNotification] = []
        charge_sent = snapshot.in_flight_idempotency_key is not None
        confirmed: Optional[ChargeResult] = None

        try:
            invoice = await ledger_store.get_invoice(db, snapshot.invoice_id)
            user = await db.get(User, invoice.user_id)
            charge: Optional[ChargeResult] = None

            # 2. An earlier attempt may have charged without being recorded
            if snapshot.in_flight_idempotency_key:
                earlier = await self.gateway.find_charge(snapshot.in_flight_idempotency_key)
                if earlier is not None and earlier.succeeded:
                    logger.warning(
                        "Adopting unrecorded charge from earlier attempt",
                        extra={**log_extra, "idempotency_key": snapshot.in_flight_idempotency_key}
                    )
                    charge = earlier
                else:
                    await ledger_store.set_in_flight_key(db, snapshot.id, key)
                    await db.commit()
                    charge_sent = False

            if charge is None:
                if snapshot.amount == 0:
                    charge = ChargeResult(status="succeeded")
                elif not has_usable_payment_method(user):
                    # 3. No method: a failed attempt, nothing was sent
                    charge_sent = False
                    await self._record_failure(db, snapshot, attempt, NO_PAYMENT_METHOD, user, invoice,
                                               notifications, result)
                    return
                else:
                    charge_sent = True
                    charge = await self.gateway.charge(
                        amount=snapshot.amount,
                        payment_method_ref=user.gateway_payment_method_id,
                        customer_ref=user.gateway_customer_id,
                        idempotency_key=key,
                        metadata={
                            "installment_id": snapshot.id,
                            "invoice_id": snapshot.invoice_id,
                            "attempt": attempt,
                        },
                    )

            # 4. Outcome
            if charge.succeeded:
                confirmed = charge
                await self._record_success(db, snapshot, charge, user, now, notifications)
                result.processed += 1
                result.completion_notifications += sum(
                    1 for event, _, _ in notifications if event == NotificationEvent.PAYMENT_PLAN_COMPLETED.value
                )
            else:
                reason = charge.failure_message or f"Payment {charge.status.value}"
                await self._record_failure(db, snapshot, attempt, reason, user, invoice, notifications, result)

        except Exception as e:
            await db.rollback()
            notifications.clear()
            reason = str(e) or type(e).__name__
            result.failed += 1
            result.errors.append(f"Installment {snapshot.id}: {reason}")
            logger.error("Installment attempt errored", extra={**log_extra, "error": reason})
            await self._release_after_error(db, snapshot, attempt, reason, charge_sent, confirmed,
                                            notifications, result)
        finally:
            # Ledger is committed (or rolled back) by now
            for event_type, recipient, template_data in notifications:
                await notify_safely(self.notifier, event_type, recipient, template_data)

    async def _record_success(
        self,
        db: AsyncSession,
        snapshot: _Snapshot,
        charge: ChargeResult,
        user: User,
        now: datetime,
        notifications: List[PendingNotification]
    ) -> None:
        payment = await ledger_store.get_or_create_gateway_payment(
            db,
            user_id=user.id,
            amount=snapshot.amount,
            transaction_ref=charge.transaction_ref,
            completed_at=now,
        )
        settled = await ledger_store.mark_installment_pending(
            db, snapshot.id, payment.id, from_statuses=(InstallmentStatus.PROCESSING,)
        )
        if not settled:
            raise InstallmentClaimConflictError(
                "Installment left processing before its charge was recorded",
                details={"installment_id": snapshot.id, "transaction_ref": charge.transaction_ref}
            )
        invoice = await ledger_store.recompute_invoice_totals(db, snapshot.invoice_id)
        await db.commit()

        logger.info(
            "Installment paid",
            extra={
                "installment_id": snapshot.id,
                "invoice_id": snapshot.invoice_id,
                "payment_id": payment.id,
                "amount": snapshot.amount,
            }
        )

        recipient = Recipient.for_user(user)
        data = self._template_data(snapshot, invoice)
        data["transaction_ref"] = charge.transaction_ref
        notifications.append((NotificationEvent.PAYMENT_PLAN_PAYMENT_PROCESSED.value, recipient, data))
        if invoice.is_payment_plan and invoice.plan_status == PlanStatus.COMPLETED:
            notifications.append((NotificationEvent.PAYMENT_PLAN_COMPLETED.value, recipient,
                                  self._template_data(snapshot, invoice)))

    async def _record_failure(
        self,
        db: AsyncSession,
        snapshot: _Snapshot,
        attempt: int,
        reason: str,
        user: Optional[User],
        invoice: Invoice,
        notifications: List[PendingNotification],
        result: ProcessingResult
    ) -> None:
        released = await ledger_store.release_installment(db, snapshot.id, reason)
        if not released:
            raise InstallmentClaimConflictError(
                "Installment left processing before its failure was recorded",
                details={"installment_id": snapshot.id}
            )
        exhausted = attempt >= self.max_attempts
        if exhausted:
            await self._surface_exhausted(db, snapshot, attempt, reason, notifications)
        await db.commit()

        result.failed += 1
        if exhausted:
            result.exhausted += 1
        logger.warning(
            "Installment charge failed",
            extra={"installment_id": snapshot.id, "attempt_count": attempt, "reason": reason}
        )

        if user:
            data = self._template_data(snapshot, invoice)
            data.update({
                "failure_reason": reason,
                "attempts_remaining": max(self.max_attempts - attempt, 0),
                "update_payment_method_url": f"{settings.site_url}/account/payment-methods",
            })
            notifications.append((NotificationEvent.PAYMENT_PLAN_PAYMENT_FAILED.value, Recipient.for_user(user), data))

    async def _release_after_error(
        self,
        db: AsyncSession,
        snapshot: _Snapshot,
        attempt: int,
        reason: str,
        charge_sent: bool,
        confirmed: Optional[ChargeResult],
        notifications: List[PendingNotification],
        result: ProcessingResult
    ) -> None:
        """
        Put the installment back to planned (failed, if the plan was cancelled
        meanwhile) after an unexpected error. The in-flight key stays when the
        gateway may have taken the money, so the next attempt or recover_stuck
        looks it up before charging again.
        """
        try:
            await ledger_store.release_installment(db, snapshot.id, reason, keep_in_flight_key=charge_sent)
            if confirmed is not None:
                logger.error(
                    "Charge succeeded but was not recorded",
                    extra={"installment_id": snapshot.id, "transaction_ref": confirmed.transaction_ref}
                )
                await record_dead_letter(
                    db,
                    DLQTask.INSTALLMENT_CHARGE_IN_DOUBT,
                    reason,
                    payload={"installment_id": snapshot.id, "transaction_ref": confirmed.transaction_ref},
                )
            if attempt >= self.max_attempts:
                await self._surface_exhausted(db, snapshot, attempt, reason, notifications)
                result.exhausted += 1
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            logger.critical(
                "Could not release installment; left in processing for recovery",
                extra={"installment_id": snapshot.id, "error": str(e)}
            )
            result.errors.append(f"Installment {snapshot.id}: release failed: {e}")

    async def _surface_exhausted(
        self,
        db: AsyncSession,
        snapshot: _Snapshot,
        attempt: int,
        reason: str,
        notifications: List[PendingNotification]
    ) -> None:
        logger.error(
            "Installment retries exhausted",
            extra={"installment_id": snapshot.id, "invoice_id": snapshot.invoice_id,
                   "attempt_count": attempt, "reason": reason}
        )
        payload = {
            "installment_id": snapshot.id,
            "invoice_id": snapshot.invoice_id,
            "amount": snapshot.amount,
            "attempt_count": attempt,
        }
        await record_dead_letter(db, DLQTask.INSTALLMENT_CHARGE, reason, payload=payload)
        notifications.append((
            NotificationEvent.PAYMENT_PLAN_RETRIES_EXHAUSTED.value,
            Recipient(email=settings.operator_email, name="Billing operations"),
            {**payload, "failure_reason": reason},
        ))

    @staticmethod
    def _template_data(snapshot: _Snapshot, invoice: Invoice) -> Dict[str, Any]:
        return {
            "invoice_id": invoice.id,
            "installment_id": snapshot.id,
            "installment_number": snapshot.sequence_number,
            "installment_count": len(invoice.installments),
            "amount": snapshot.amount,
            "due_date": snapshot.due_date.isoformat(),
            "paid_amount": invoice.paid_amount,
            "remaining_balance": invoice.remaining_balance,
        }

    async def send_pre_notifications(
        self,
        db: AsyncSession,
        notify_date: Optional[date] = None,
        days_ahead: Optional[int] = None
    ) -> PreNotificationResult:
        """Remind owners of planned installments due days_ahead after notify_date."""
        notify_date = notify_date or datetime.utcnow().date()
        days_ahead = days_ahead if days_ahead is not None else settings.pre_notification_days
        due_date = notify_date + timedelta(days=days_ahead)
        result = PreNotificationResult(notify_date=notify_date)

        upcoming = await ledger_store.select_planned_due_on(db, due_date)
        result.found = len(upcoming)
        for installment in upcoming:
            invoice = await ledger_store.get_invoice(db, installment.invoice_id)
            if invoice.plan_status != PlanStatus.ACTIVE:
                continue
            user = await db.get(User, invoice.user_id)
            data = self._template_data(_Snapshot.of(installment), invoice)
            data["has_payment_method"] = has_usable_payment_method(user)
            sent = await notify_safely(
                self.notifier,
                NotificationEvent.PAYMENT_PLAN_PRE_NOTIFICATION.value,
                Recipient.for_user(user),
                data,
            )
            if sent:
                result.sent += 1
            else:
                result.errors.append(f"Installment {installment.id}: pre-notification failed")

        logger.info(
            "Pre-notifications sent",
            extra={"due_date": due_date.isoformat(), "found": result.found, "sent": result.sent}
        )
        return result

    async def recover_stuck(
        self,
        db: AsyncSession,
        older_than_minutes: Optional[int] = None,
        now: Optional[datetime] = None,
        actor: Optional[str] = None
    ) -> RecoveryResult:
        """
        Reconciliation sweep for attempts whose outcome was never recorded:
        rows stuck in processing (crash mid-attempt) and rows released with
        their in-flight key kept. Each key is looked up at the gateway; a
        succeeded charge is booked, anything else frees the row.
        """
        now = now or datetime.utcnow()
        minutes = older_than_minutes if older_than_minutes is not None else settings.stuck_processing_minutes
        result = RecoveryResult()

        rows = await ledger_store.select_stuck_processing(db, now - timedelta(minutes=minutes))
        result.found = len(rows)

        # Payoff claims share one key across the invoice's rows
        by_key: Dict[str, List[_Snapshot]] = {}
        for row in rows:
            by_key.setdefault(row.in_flight_idempotency_key, []).append(_Snapshot.of(row))

        for key, group in by_key.items():
            try:
                charge = await self.gateway.find_charge(key)
            except GatewayError as e:
                result.unresolved += len(group)
                result.errors.append(f"{key}: {e}")
                logger.warning("Gateway lookup failed during recovery", extra={"idempotency_key": key})
                continue

            try:
                if key.startswith("invoice-"):
                    await self._recover_payoff(db, key, group, charge, now, result)
                else:
                    for row in group:
                        await self._recover_installment(db, row, charge, now, result)
                await log_event(
                    db,
                    AuditAction.INSTALLMENT_RECOVERED,
                    actor=actor,
                    invoice_id=group[0].invoice_id,
                    installment_id=group[0].id if len(group) == 1 else None,
                    metadata={
                        "idempotency_key": key,
                        "installment_ids": [row.id for row in group],
                        "charge_status": charge.status.value if charge else None,
                    }
                )
                await db.commit()
            except SQLAlchemyError as e:
                await db.rollback()
                result.unresolved += len(group)
                result.errors.append(f"{key}: {e}")
                logger.error("Recovery failed", extra={"idempotency_key": key, "error": str(e)})

        return result

    async def _recover_installment(
        self,
        db: AsyncSession,
        snapshot: _Snapshot,
        charge: Optional[ChargeResult],
        now: datetime,
        result: RecoveryResult
    ) -> None:
        if charge is not None and charge.succeeded:
            invoice = await ledger_store.get_invoice(db, snapshot.invoice_id)
            payment = await ledger_store.get_or_create_gateway_payment(
                db, invoice.user_id, snapshot.amount, charge.transaction_ref, now
            )
            await ledger_store.mark_installment_pending(
                db, snapshot.id, payment.id,
                from_statuses=(InstallmentStatus.PROCESSING, InstallmentStatus.PLANNED, InstallmentStatus.FAILED),
            )
            await ledger_store.recompute_invoice_totals(db, snapshot.invoice_id)
            result.recovered_paid += 1
            logger.warning(
                "Recovered unrecorded charge",
                extra={"installment_id": snapshot.id, "transaction_ref": charge.transaction_ref}
            )
            return

        reason = "No charge found for interrupted attempt"
        if charge is not None:
            reason = charge.failure_message or f"Payment {charge.status.value}"
        if snapshot.status == InstallmentStatus.PROCESSING:
            await ledger_store.release_installment(db, snapshot.id, reason)
        else:
            await ledger_store.clear_in_doubt_key(db, snapshot.id, reason)
        result.released += 1
        logger.info("Released interrupted installment", extra={"installment_id": snapshot.id, "reason": reason})

    async def _recover_payoff(
        self,
        db: AsyncSession,
        key: str,
        group: List[_Snapshot],
        charge: Optional[ChargeResult],
        now: datetime,
        result: RecoveryResult
    ) -> None:
        invoice_id = group[0].invoice_id
        ids = [row.id for row in group]
        if charge is not None and charge.succeeded:
            invoice = await ledger_store.get_invoice(db, invoice_id)
            payment = await ledger_store.get_or_create_gateway_payment(
                db, invoice.user_id, sum(row.amount for row in group), charge.transaction_ref, now
            )
            await ledger_store.settle_by_payoff(db, ids, payment.id)
            await ledger_store.recompute_invoice_totals(db, invoice_id)
            result.recovered_paid += len(group)
            logger.warning("Recovered unrecorded payoff", extra={"invoice_id": invoice_id, "idempotency_key": key})
            return

        invoice = await ledger_store.get_invoice(db, invoice_id)
        status = InstallmentStatus.FAILED if invoice.plan_status == PlanStatus.CANCELLED else InstallmentStatus.PLANNED
        await ledger_store.restore_after_payoff(
            db, {row.id: {"status": status, "last_attempt_at": row.last_attempt_at} for row in group}
        )
        result.released += len(group)
        logger.info("Released interrupted payoff", extra={"invoice_id": invoice_id, "idempotency_key": key})

    async def list_exhausted(self, db: AsyncSession) -> List[Installment]:
        return await ledger_store.select_exhausted(db, self.max_attempts)
