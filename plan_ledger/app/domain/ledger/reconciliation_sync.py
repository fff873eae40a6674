"""
Reconciliation Sync (Domain Logic).

Pushes pending ledger records to the accounting system: invoices first, then
the installment payments against them. Only a confirmed rejection fails a
record; anything transient leaves it pending for the next run.
"""

import logging
from datetime import datetime
from typing import Optional, List, Dict, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from plan_ledger.app.core.exceptions import AccountingTransientError, AccountingRejectedError
from plan_ledger.app.core.reliability import CircuitBreaker, CircuitOpenError
from plan_ledger.app.domain.ledger import ledger_store
from plan_ledger.app.models.dlq import DLQTask
from plan_ledger.app.models.installment import Installment
from plan_ledger.app.models.invoice import Invoice
from plan_ledger.app.models.payment import Payment
from plan_ledger.app.models.user import User
from plan_ledger.app.schemas.payment_plan import SyncResult
from plan_ledger.app.services.accounting_client import AccountingClient, LedgerLineItem
from plan_ledger.app.services.audit import log_event, AuditAction
from plan_ledger.app.services.dead_letters import record_dead_letter

logger = logging.getLogger("plan_ledger.sync")

TRANSIENT_ERRORS = (AccountingTransientError, CircuitOpenError)


def invoice_reference(invoice: Invoice) -> str:
    return f"{invoice.source_type.value}-{invoice.source_id}"


def installment_reference(installment: Installment, invoice: Invoice) -> str:
    if not invoice.is_payment_plan:
        return f"Payment for {invoice_reference(invoice)}"
    return f"Installment {installment.sequence_number} of {len(invoice.installments)} for {invoice_reference(invoice)}"


class ReconciliationSync:

    def __init__(self, accounting: AccountingClient, circuit_breaker: CircuitBreaker):
        self.accounting = accounting
        self.circuit_breaker = circuit_breaker

    async def sync_pending(self, db: AsyncSession, now: Optional[datetime] = None) -> SyncResult:
        now = now or datetime.utcnow()
        result = SyncResult()

        invoices = await ledger_store.select_pending_invoices(db)
        for invoice_id in [invoice.id for invoice in invoices]:
            await self._sync_invoice(db, invoice_id, now, result)

        installments = await ledger_store.select_pending_installments(db)
        for installment_id in [installment.id for installment in installments]:
            await self._sync_installment(db, installment_id, now, result)

        logger.info(
            "Accounting sync finished",
            extra={"synced": result.synced, "failed": result.failed, "retained": result.retained}
        )
        return result

    async def _sync_invoice(self, db: AsyncSession, invoice_id: int, now: datetime, result: SyncResult) -> None:
        invoice = await ledger_store.get_invoice(db, invoice_id)

        # Already in the accounting system: record it, do not resubmit
        if invoice.external_id:
            await ledger_store.mark_invoice_synced(db, invoice.id, invoice.external_id, invoice.invoice_number, now)
            await db.commit()
            result.synced += 1
            return

        try:
            user = await db.get(User, invoice.user_id)
            contact_ref = await self.circuit_breaker.call(self.accounting.resolve_contact, user)
            if user.accounting_contact_id != contact_ref:
                user.accounting_contact_id = contact_ref

            line_items = [
                LedgerLineItem(
                    description=item.description,
                    quantity=item.quantity,
                    unit_amount=item.unit_amount,
                    line_amount=item.line_amount,
                    account_code=item.account_code,
                    item_code=item.item_id,
                )
                for item in invoice.line_items
            ]
            entry = await self.circuit_breaker.call(
                self.accounting.create_ledger_entry, contact_ref, line_items, invoice_reference(invoice)
            )
            await db.flush()
            await ledger_store.mark_invoice_synced(db, invoice.id, entry.external_id, entry.number, now)
            await db.commit()
            result.synced += 1
            logger.info(
                "Invoice synced",
                extra={"invoice_id": invoice.id, "external_id": entry.external_id, "number": entry.number}
            )
        except AccountingRejectedError as e:
            await db.rollback()
            await ledger_store.record_invoice_sync_error(db, invoice_id, str(e), terminal=True, now=now)
            await record_dead_letter(db, DLQTask.ACCOUNTING_SYNC, str(e), payload={"invoice_id": invoice_id})
            await db.commit()
            result.failed += 1
            result.errors.append(f"Invoice {invoice_id}: {e}")
            logger.error("Invoice rejected by accounting system", extra={"invoice_id": invoice_id, "error": str(e)})
        except TRANSIENT_ERRORS as e:
            await db.rollback()
            await ledger_store.record_invoice_sync_error(db, invoice_id, str(e), terminal=False, now=now)
            await db.commit()
            result.retained += 1
            result.errors.append(f"Invoice {invoice_id}: {e}")
            logger.warning("Invoice sync deferred", extra={"invoice_id": invoice_id, "error": str(e)})

    async def _sync_installment(
        self,
        db: AsyncSession,
        installment_id: int,
        now: datetime,
        result: SyncResult
    ) -> None:
        installment = await ledger_store.get_installment(db, installment_id)
        invoice_id = installment.invoice_id

        if installment.external_id:
            await ledger_store.mark_installment_synced(db, installment.id, installment.external_id, now)
            await db.commit()
            result.synced += 1
            return

        invoice = await ledger_store.get_invoice(db, invoice_id)
        if not invoice.external_id:
            # Payment needs the invoice to exist on the other side first
            result.retained += 1
            return

        if installment.amount == 0:
            await ledger_store.mark_installment_synced(db, installment.id, None, now)
            await db.commit()
            result.synced += 1
            return

        payment = await db.get(Payment, installment.settling_payment_id)
        paid_on = (payment.completed_at or now).date() if payment else now.date()

        try:
            entry = await self.circuit_breaker.call(
                self.accounting.record_payment,
                invoice.external_id,
                installment.amount,
                installment_reference(installment, invoice),
                paid_on,
            )
            await ledger_store.mark_installment_synced(db, installment.id, entry.external_id, now)
            await db.commit()
            result.synced += 1
            logger.info(
                "Installment payment synced",
                extra={"installment_id": installment.id, "external_id": entry.external_id}
            )
        except AccountingRejectedError as e:
            await db.rollback()
            await ledger_store.record_installment_sync_error(db, installment_id, str(e), terminal=True)
            await record_dead_letter(
                db, DLQTask.ACCOUNTING_SYNC, str(e),
                payload={"installment_id": installment_id, "invoice_id": invoice_id},
            )
            await db.commit()
            result.failed += 1
            result.errors.append(f"Installment {installment_id}: {e}")
            logger.error(
                "Installment payment rejected by accounting system",
                extra={"installment_id": installment_id, "error": str(e)}
            )
        except TRANSIENT_ERRORS as e:
            await db.rollback()
            await ledger_store.record_installment_sync_error(db, installment_id, str(e), terminal=False)
            await db.commit()
            result.retained += 1
            result.errors.append(f"Installment {installment_id}: {e}")
            logger.warning("Installment sync deferred", extra={"installment_id": installment_id, "error": str(e)})

    async def reset_failed(
        self,
        db: AsyncSession,
        invoice_ids: Optional[List[int]] = None,
        installment_ids: Optional[List[int]] = None,
        actor: Optional[str] = None
    ) -> Tuple[int, int]:
        """Send rejected records back to pending once the cause is fixed."""
        invoices, installments = await ledger_store.reset_failed_sync(db, invoice_ids, installment_ids)
        await log_event(
            db,
            AuditAction.ACCOUNTING_SYNC_RESET,
            actor=actor,
            metadata={
                "invoice_ids": invoice_ids,
                "installment_ids": installment_ids,
                "invoices_reset": invoices,
                "installments_reset": installments,
            }
        )
        await db.commit()
        logger.info("Failed syncs reset", extra={"invoices": invoices, "installments": installments})
        return invoices, installments
