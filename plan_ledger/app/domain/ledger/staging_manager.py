"""
Staging Manager (Domain Logic).

Records a purchase in the ledger before any money moves. No network calls:
if the invoice cannot be written the purchase must not proceed.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from plan_ledger.app.core.exceptions import StagingError
from plan_ledger.app.domain.ledger import ledger_store
from plan_ledger.app.models.invoice import Invoice, InvoiceLineItem
from plan_ledger.app.models.payment import Payment
from plan_ledger.app.models.user import User
from plan_ledger.app.models.ledger_enums import (
    InvoiceSyncStatus, PlanStatus, LineItemType, PaymentMethod, PaymentStatus,
)
from plan_ledger.app.schemas.payment_plan import PurchaseCreate
from plan_ledger.app.services.audit import log_event, AuditAction

logger = logging.getLogger("plan_ledger.staging")


class StagingManager:

    @staticmethod
    async def stage(db: AsyncSession, purchase: PurchaseCreate, now: Optional[datetime] = None) -> Invoice:
        """
        Stage an invoice for a purchase.

        Flow:
        1. Validate amounts
        2. Idempotency Check (one invoice per source purchase, same amounts)
        3. Create Invoice + line items in STAGED
        4. Zero-amount purchase: free Payment, invoice straight to PENDING
        5. Commit

        Raises:
            StagingError: on invalid amounts or any persistence failure.
            Nothing is left behind in that case.
        """
        now = now or datetime.utcnow()

        # 1. Validate
        total_amount = purchase.total_amount
        if purchase.discount_amount > total_amount:
            raise StagingError(
                "Discount exceeds purchase total",
                details={"total_amount": total_amount, "discount_amount": purchase.discount_amount}
            )
        net_amount = total_amount - purchase.discount_amount

        try:
            # 2. Idempotency
            existing = await StagingManager.find_by_source(db, purchase.source_type, purchase.source_id)
            if existing:
                StagingManager._check_same_amounts(existing, purchase, net_amount)
                logger.info(
                    "Invoice already staged",
                    extra={"invoice_id": existing.id, "source_id": purchase.source_id}
                )
                return existing

            user = await db.get(User, purchase.user_id)
            if not user:
                raise StagingError("Purchaser not found", details={"user_id": purchase.user_id})

            # 3. Invoice + line items
            invoice = Invoice(
                user_id=purchase.user_id,
                source_type=purchase.source_type,
                source_id=purchase.source_id,
                total_amount=total_amount,
                discount_amount=purchase.discount_amount,
                net_amount=net_amount,
                paid_amount=0,
                is_payment_plan=False,
                plan_status=PlanStatus.ACTIVE,
                sync_status=InvoiceSyncStatus.STAGED,
                staged_at=now,
            )
            for item in purchase.line_items:
                invoice.line_items.append(InvoiceLineItem(
                    line_item_type=item.line_item_type,
                    item_id=item.item_id,
                    description=item.description,
                    quantity=item.quantity,
                    unit_amount=item.unit_amount,
                    line_amount=item.line_amount,
                    account_code=item.account_code,
                ))
            if purchase.discount_amount:
                invoice.line_items.append(InvoiceLineItem(
                    line_item_type=LineItemType.DISCOUNT,
                    description=purchase.discount_description,
                    quantity=1,
                    unit_amount=-purchase.discount_amount,
                    line_amount=-purchase.discount_amount,
                    account_code=purchase.discount_account_code,
                ))
            db.add(invoice)

            # 4. Free purchase
            if net_amount == 0:
                payment = Payment(
                    user_id=purchase.user_id,
                    amount=0,
                    payment_method=PaymentMethod.FREE,
                    status=PaymentStatus.COMPLETED,
                    completed_at=now,
                )
                db.add(payment)
                await db.flush()
                invoice.payment_id = payment.id
                invoice.plan_status = PlanStatus.COMPLETED
                invoice.sync_status = InvoiceSyncStatus.PENDING

            await db.flush()
            await log_event(
                db,
                AuditAction.INVOICE_STAGED,
                invoice_id=invoice.id,
                metadata={"source_type": purchase.source_type.value, "source_id": purchase.source_id,
                          "net_amount": net_amount}
            )

            # 5. Durable before any charge
            await db.commit()
        except StagingError:
            await db.rollback()
            raise
        except IntegrityError as e:
            # Lost a race with a concurrent stage of the same purchase
            await db.rollback()
            existing = await StagingManager.find_by_source(db, purchase.source_type, purchase.source_id)
            if existing:
                StagingManager._check_same_amounts(existing, purchase, net_amount)
                return existing
            raise StagingError("Invoice could not be staged", details={"error": str(e.orig)}) from e
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error(
                "Invoice staging failed",
                extra={"source_id": purchase.source_id, "error": str(e)}
            )
            raise StagingError("Invoice could not be staged", details={"error": str(e)}) from e

        logger.info(
            "Invoice staged",
            extra={
                "invoice_id": invoice.id,
                "net_amount": net_amount,
                "sync_status": invoice.sync_status.value,
            }
        )
        return await ledger_store.get_invoice(db, invoice.id)

    @staticmethod
    def _check_same_amounts(existing: Invoice, purchase: PurchaseCreate, net_amount: int) -> None:
        """A source purchase re-staged with different amounts is a different purchase."""
        staged = (existing.total_amount, existing.discount_amount, existing.net_amount)
        requested = (purchase.total_amount, purchase.discount_amount, net_amount)
        if staged != requested:
            logger.warning(
                "Purchase re-staged with different amounts",
                extra={"invoice_id": existing.id, "source_id": purchase.source_id,
                       "staged": staged, "requested": requested}
            )
            raise StagingError(
                "Purchase already staged with different amounts",
                details={
                    "invoice_id": existing.id,
                    "staged_net_amount": existing.net_amount,
                    "requested_net_amount": net_amount,
                }
            )

    @staticmethod
    async def find_by_source(db: AsyncSession, source_type, source_id: str) -> Optional[Invoice]:
        result = await db.execute(
            select(Invoice).where(
                Invoice.source_type == source_type,
                Invoice.source_id == source_id,
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def record_external_payment(
        db: AsyncSession,
        user_id: int,
        amount: int,
        transaction_ref: str,
        completed_at: Optional[datetime] = None
    ) -> Payment:
        """
        Record a charge the checkout flow made itself (the up-front first
        installment). Idempotent on the gateway reference. Flushes only.
        """
        return await ledger_store.get_or_create_gateway_payment(
            db,
            user_id=user_id,
            amount=amount,
            transaction_ref=transaction_ref,
            completed_at=completed_at or datetime.utcnow(),
        )
