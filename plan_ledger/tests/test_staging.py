"""
Staging Tests.

Validates that purchases are written to the ledger before any money moves.
"""

import pytest
from pydantic import ValidationError
from sqlalchemy import select, func

from plan_ledger.app.core.exceptions import StagingError
from plan_ledger.app.domain.ledger.staging_manager import StagingManager
from plan_ledger.app.models.invoice import Invoice
from plan_ledger.app.models.payment import Payment
from plan_ledger.app.models.ledger_enums import (
    InvoiceSyncStatus, PlanStatus, LineItemType, PaymentMethod,
)
from plan_ledger.app.schemas.payment_plan import LineItemCreate
from plan_ledger.tests.factories import purchase_for


@pytest.mark.asyncio
async def test_stage_invoice_with_discount_line(db_session, member):
    invoice = await StagingManager.stage(db_session, purchase_for(member, 12000, discount=2000))

    assert invoice.id is not None
    assert invoice.total_amount == 12000
    assert invoice.discount_amount == 2000
    assert invoice.net_amount == 10000
    assert invoice.paid_amount == 0
    assert invoice.sync_status == InvoiceSyncStatus.STAGED
    assert invoice.plan_status == PlanStatus.ACTIVE
    assert invoice.external_id is None

    lines = invoice.line_items
    assert [line.line_item_type for line in lines] == [LineItemType.REGISTRATION, LineItemType.DISCOUNT]
    assert lines[1].line_amount == -2000
    assert sum(line.line_amount for line in lines) == invoice.net_amount


@pytest.mark.asyncio
async def test_stage_is_idempotent_per_source(db_session, member):
    first = await StagingManager.stage(db_session, purchase_for(member, 5000, source_id="reg-77"))
    second = await StagingManager.stage(db_session, purchase_for(member, 5000, source_id="reg-77"))

    assert first.id == second.id
    count = await db_session.execute(select(func.count(Invoice.id)))
    assert count.scalar() == 1


@pytest.mark.asyncio
async def test_restage_with_different_amounts_is_rejected(db_session, member):
    first = await StagingManager.stage(db_session, purchase_for(member, 5000, source_id="reg-77"))
    first_id = first.id

    with pytest.raises(StagingError) as exc_info:
        await StagingManager.stage(db_session, purchase_for(member, 5000, source_id="reg-77", discount=500))

    assert exc_info.value.details["invoice_id"] == first_id
    assert exc_info.value.details["requested_net_amount"] == 4500
    invoices = (await db_session.execute(select(Invoice))).scalars().all()
    assert [(i.id, i.net_amount) for i in invoices] == [(first_id, 5000)]


@pytest.mark.asyncio
async def test_discount_larger_than_total_is_rejected(db_session, member):
    with pytest.raises(StagingError):
        await StagingManager.stage(db_session, purchase_for(member, 1000, discount=1500))

    count = await db_session.execute(select(func.count(Invoice.id)))
    assert count.scalar() == 0


@pytest.mark.asyncio
async def test_unknown_purchaser_is_rejected(db_session):
    class Nobody:
        id = 4242

    with pytest.raises(StagingError):
        await StagingManager.stage(db_session, purchase_for(Nobody, 1000))


@pytest.mark.asyncio
async def test_free_purchase_gets_free_payment(db_session, member):
    invoice = await StagingManager.stage(db_session, purchase_for(member, 3000, discount=3000))

    assert invoice.net_amount == 0
    assert invoice.payment_id is not None
    assert invoice.plan_status == PlanStatus.COMPLETED
    assert invoice.sync_status == InvoiceSyncStatus.PENDING

    payment = await db_session.get(Payment, invoice.payment_id)
    assert payment.amount == 0
    assert payment.payment_method == PaymentMethod.FREE
    assert payment.gateway_transaction_ref is None


@pytest.mark.asyncio
async def test_record_external_payment_is_idempotent(db_session, member):
    first = await StagingManager.record_external_payment(db_session, member.id, 2500, "pi_abc")
    second = await StagingManager.record_external_payment(db_session, member.id, 2500, "pi_abc")
    await db_session.commit()

    assert first.id == second.id
    assert first.payment_method == PaymentMethod.GATEWAY


def test_discount_is_not_a_line_item():
    with pytest.raises(ValidationError):
        LineItemCreate(line_item_type=LineItemType.DISCOUNT, description="Sibling discount", unit_amount=500)
