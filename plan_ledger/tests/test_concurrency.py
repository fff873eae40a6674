"""
Concurrency Tests.

Validates that overlapping runs never charge the same installment twice.
"""

import pytest
from datetime import datetime, timedelta
from sqlalchemy import update

from plan_ledger.app.core.exceptions import GatewayError, InstallmentClaimConflictError
from plan_ledger.app.domain.ledger import ledger_store
from plan_ledger.app.domain.ledger.installment_processor import installment_idempotency_key
from plan_ledger.app.models.invoice import Invoice
from plan_ledger.app.models.ledger_enums import ChargeStatus, InstallmentStatus, PlanStatus
from plan_ledger.app.services.payment_gateway import ChargeResult
from plan_ledger.tests.factories import PLAN_START

RUN_AT = datetime(2026, 1, 1, 10, 0)


@pytest.mark.asyncio
async def test_stale_claim_loses(db_session, session_factory, member, make_plan):
    """Two runs that selected the same row: only the first claim matches."""
    invoice = await make_plan(member)
    installment = (await ledger_store.list_installments(db_session, invoice.id))[0]
    key = installment_idempotency_key(installment.id, 1)

    async with session_factory() as run_a, session_factory() as run_b:
        won_b = await ledger_store.claim_installment(run_b, installment.id, 0, RUN_AT, key, 3)
        await run_b.commit()
        won_a = await ledger_store.claim_installment(run_a, installment.id, 0, RUN_AT, key, 3)
        await run_a.commit()

    assert won_b is True
    assert won_a is False
    installment = await ledger_store.get_installment(db_session, installment.id)
    assert installment.status == InstallmentStatus.PROCESSING
    assert installment.attempt_count == 1


@pytest.mark.asyncio
async def test_overlapping_run_finds_nothing_to_charge(db_session, session_factory, member, make_plan, services, gateway):
    invoice = await make_plan(member)
    overlapping = {}

    async def second_run_during_charge():
        async with session_factory() as other:
            overlapping["result"] = await services.processor.process_due(other, as_of=PLAN_START, now=RUN_AT)
            try:
                await services.payoff.payoff(other, invoice.id, now=RUN_AT)
            except InstallmentClaimConflictError as e:
                overlapping["payoff_error"] = e

    gateway.on_charge = second_run_during_charge

    result = await services.processor.process_due(db_session, as_of=PLAN_START, now=RUN_AT)

    assert result.processed == 1
    assert overlapping["result"].found == 0
    assert "payoff_error" in overlapping
    assert len(gateway.charges) == 1


@pytest.mark.asyncio
async def test_processor_skips_row_claimed_elsewhere(db_session, session_factory, member, make_plan, services, gateway):
    invoice = await make_plan(member)
    candidates = await ledger_store.select_due_installments(db_session, PLAN_START, RUN_AT, 3, 24)
    assert len(candidates) == 1

    # Another worker claims the row after this run selected it
    async with session_factory() as other:
        key = installment_idempotency_key(candidates[0].id, 1)
        assert await ledger_store.claim_installment(other, candidates[0].id, 0, RUN_AT, key, 3)
        await other.commit()

    result = await services.processor.process_installment(db_session, candidates[0].id, now=RUN_AT)

    assert result.skipped == 1
    assert gateway.charges == []


@pytest.mark.asyncio
async def test_plan_cancelled_during_declined_charge_is_not_charged_again(
    db_session, session_factory, member, make_plan, services, gateway
):
    invoice = await make_plan(member)
    invoice_id = invoice.id

    async def cancel_during_charge():
        async with session_factory() as other:
            await services.payoff.cancel(other, invoice_id, "Member withdrew")

    gateway.on_charge = cancel_during_charge
    gateway.outcomes.append(ChargeResult(status=ChargeStatus.FAILED, failure_message="Your card was declined."))

    await services.processor.process_due(db_session, as_of=PLAN_START, now=RUN_AT)

    installments = await ledger_store.list_installments(db_session, invoice_id)
    assert [i.status for i in installments] == [InstallmentStatus.FAILED] * 4
    assert all(i.failure_reason == "Payment plan cancelled: Member withdrew" for i in installments)

    gateway.on_charge = None
    result = await services.processor.process_due(
        db_session, as_of=PLAN_START + timedelta(days=90), now=RUN_AT + timedelta(days=90)
    )
    assert result.found == 0
    assert len(gateway.charges) == 1


@pytest.mark.asyncio
async def test_plan_cancelled_during_unconfirmed_charge_is_recovered_as_failed(
    db_session, session_factory, member, make_plan, services, gateway
):
    invoice = await make_plan(member)
    invoice_id = invoice.id

    async def cancel_during_charge():
        async with session_factory() as other:
            await services.payoff.cancel(other, invoice_id, "Member withdrew")

    gateway.on_charge = cancel_during_charge
    gateway.outcomes.append(GatewayError("read timeout"))

    await services.processor.process_due(db_session, as_of=PLAN_START, now=RUN_AT)

    first = (await ledger_store.list_installments(db_session, invoice_id))[0]
    assert first.status == InstallmentStatus.FAILED
    assert first.in_flight_idempotency_key is not None

    # The gateway has no record of the timed-out charge
    result = await services.processor.recover_stuck(db_session, now=RUN_AT + timedelta(hours=1))

    assert result.released == 1
    first = (await ledger_store.list_installments(db_session, invoice_id))[0]
    assert first.status == InstallmentStatus.FAILED
    assert first.in_flight_idempotency_key is None
    assert first.failure_reason == "Payment plan cancelled: Member withdrew"
    assert len(gateway.charges) == 1


@pytest.mark.asyncio
async def test_installment_of_inactive_plan_is_never_claimed(db_session, member, make_plan):
    invoice = await make_plan(member)
    installment = (await ledger_store.list_installments(db_session, invoice.id))[0]
    installment_id = installment.id
    await db_session.execute(
        update(Invoice).where(Invoice.id == invoice.id).values(plan_status=PlanStatus.CANCELLED)
    )
    await db_session.commit()

    key = installment_idempotency_key(installment_id, 1)
    assert await ledger_store.claim_installment(db_session, installment_id, 0, RUN_AT, key, 3) is False
    await db_session.commit()

    installment = await ledger_store.get_installment(db_session, installment_id)
    assert installment.status == InstallmentStatus.PLANNED
    assert installment.attempt_count == 0
