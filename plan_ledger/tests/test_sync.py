"""
Reconciliation Sync Tests.

Validates ordering (invoice before its payments), the transient/rejected
split and the circuit breaker in front of the accounting system.
"""

import time
import pytest
from datetime import datetime

from plan_ledger.app.core.exceptions import AccountingTransientError, AccountingRejectedError
from plan_ledger.app.core.reliability import CircuitBreaker, CircuitOpenError
from plan_ledger.app.domain.ledger import ledger_store
from plan_ledger.app.domain.ledger.reconciliation_sync import ReconciliationSync
from plan_ledger.app.domain.ledger.staging_manager import StagingManager
from plan_ledger.app.models.dlq import DLQTask
from plan_ledger.app.models.ledger_enums import InstallmentStatus, InvoiceSyncStatus, PlanStatus
from plan_ledger.app.services.dead_letters import list_dead_letters
from plan_ledger.tests.factories import purchase_for, PLAN_START

RUN_AT = datetime(2026, 1, 1, 10, 0)
SYNC_AT = datetime(2026, 1, 2, 2, 0)


async def plan_with_first_payment(db_session, member, make_plan, services):
    invoice = await make_plan(member)
    await services.processor.process_due(db_session, as_of=PLAN_START, now=RUN_AT)
    first = (await ledger_store.list_installments(db_session, invoice.id))[0]
    return invoice, first


@pytest.mark.asyncio
async def test_invoice_synced_before_its_payment(db_session, member, make_plan, services, accounting):
    invoice, first = await plan_with_first_payment(db_session, member, make_plan, services)

    result = await services.sync.sync_pending(db_session, now=SYNC_AT)

    assert result.synced == 2
    assert result.failed == 0
    assert accounting.entries[0]["contact_ref"] == f"contact-{member.id}"
    assert accounting.entries[0]["reference"] == "registration-reg-1001"
    assert accounting.entries[0]["line_items"][0].line_amount == 10000

    assert accounting.payments[0]["external_invoice_id"] == "inv-ext-1"
    assert accounting.payments[0]["amount"] == 2500
    assert accounting.payments[0]["reference"] == "Installment 1 of 4 for registration-reg-1001"
    assert accounting.payments[0]["paid_on"] == RUN_AT.date()

    invoice = await ledger_store.get_invoice(db_session, invoice.id)
    assert invoice.sync_status == InvoiceSyncStatus.SYNCED
    assert invoice.external_id == "inv-ext-1"
    assert invoice.invoice_number == "INV-0001"
    assert invoice.last_synced_at == SYNC_AT

    first = await ledger_store.get_installment(db_session, first.id)
    assert first.status == InstallmentStatus.SYNCED
    assert first.external_id == "pay-ext-1"


@pytest.mark.asyncio
async def test_transient_failure_keeps_records_pending(db_session, member, make_plan, services, accounting):
    invoice, first = await plan_with_first_payment(db_session, member, make_plan, services)
    accounting.errors["create_ledger_entry"].append(AccountingTransientError("HTTP 503"))

    result = await services.sync.sync_pending(db_session, now=SYNC_AT)

    assert result.synced == 0
    assert result.failed == 0
    assert result.retained == 2
    assert accounting.calls["record_payment"] == 0

    invoice = await ledger_store.get_invoice(db_session, invoice.id)
    assert invoice.sync_status == InvoiceSyncStatus.PENDING
    assert invoice.sync_attempts == 1
    assert invoice.sync_error == "HTTP 503"
    first = await ledger_store.get_installment(db_session, first.id)
    assert first.status == InstallmentStatus.PENDING

    # Next run goes through
    result = await services.sync.sync_pending(db_session, now=SYNC_AT)
    assert result.synced == 2


@pytest.mark.asyncio
async def test_rejected_invoice_fails_until_reset(db_session, member, make_plan, services, accounting):
    invoice, first = await plan_with_first_payment(db_session, member, make_plan, services)
    accounting.errors["create_ledger_entry"].append(AccountingRejectedError("Account code '200' is not a valid code"))

    result = await services.sync.sync_pending(db_session, now=SYNC_AT)

    assert result.failed == 1
    assert result.retained == 1
    invoice = await ledger_store.get_invoice(db_session, invoice.id)
    assert invoice.sync_status == InvoiceSyncStatus.FAILED
    assert "not a valid code" in invoice.sync_error

    dead_letters = await list_dead_letters(db_session, task_name=DLQTask.ACCOUNTING_SYNC)
    assert dead_letters[0].payload == {"invoice_id": invoice.id}

    # Failed records are not retried automatically
    result = await services.sync.sync_pending(db_session, now=SYNC_AT)
    assert accounting.calls["create_ledger_entry"] == 1

    reset = await services.sync.reset_failed(db_session, invoice_ids=[invoice.id], actor="ops")
    assert reset == (1, 0)

    result = await services.sync.sync_pending(db_session, now=SYNC_AT)
    assert result.synced == 2
    first = await ledger_store.get_installment(db_session, first.id)
    assert first.status == InstallmentStatus.SYNCED


@pytest.mark.asyncio
async def test_rejected_payment_can_be_reset(db_session, member, make_plan, services, accounting):
    invoice, first = await plan_with_first_payment(db_session, member, make_plan, services)
    accounting.errors["record_payment"].append(AccountingRejectedError("Payment amount exceeds amount due"))

    result = await services.sync.sync_pending(db_session, now=SYNC_AT)

    assert result.synced == 1
    assert result.failed == 1
    first = await ledger_store.get_installment(db_session, first.id)
    assert first.status == InstallmentStatus.FAILED
    assert first.payment_id is not None
    assert first.sync_error == "Payment amount exceeds amount due"

    # A rejected payment is still money received; cancelling the plan leaves it alone
    await services.payoff.cancel(db_session, invoice.id, "Member withdrew")
    first = await ledger_store.get_installment(db_session, first.id)
    assert first.failure_reason is None

    assert await services.sync.reset_failed(db_session, installment_ids=[first.id]) == (0, 1)
    result = await services.sync.sync_pending(db_session, now=SYNC_AT)
    assert result.synced == 1
    first = await ledger_store.get_installment(db_session, first.id)
    assert first.status == InstallmentStatus.SYNCED


@pytest.mark.asyncio
async def test_rejected_payment_still_counts_as_paid(db_session, member, make_plan, services, accounting, gateway):
    invoice, first = await plan_with_first_payment(db_session, member, make_plan, services)
    accounting.errors["record_payment"].append(AccountingRejectedError("Payment amount exceeds amount due"))
    await services.sync.sync_pending(db_session, now=SYNC_AT)
    first = await ledger_store.get_installment(db_session, first.id)
    assert first.status == InstallmentStatus.FAILED

    invoice = await ledger_store.recompute_invoice_totals(db_session, invoice.id)
    assert invoice.paid_amount == 2500

    payment = await services.payoff.payoff(db_session, invoice.id, now=SYNC_AT)

    assert payment.amount == 7500
    assert sum(charge["amount"] for charge in gateway.charges) == 10000
    invoice = await ledger_store.get_invoice(db_session, invoice.id)
    assert invoice.paid_amount == invoice.net_amount
    assert invoice.plan_status == PlanStatus.COMPLETED

    summary = (await services.payoff.get_user_payment_plans(db_session, member.id))[0]
    assert summary.installments_paid == 4
    assert summary.remaining_balance == 0


@pytest.mark.asyncio
async def test_existing_external_id_is_not_resubmitted(db_session, member, make_plan, services, accounting):
    invoice, _ = await plan_with_first_payment(db_session, member, make_plan, services)
    invoice.external_id = "inv-created-earlier"
    invoice.invoice_number = "INV-0042"
    await db_session.commit()

    result = await services.sync.sync_pending(db_session, now=SYNC_AT)

    assert result.synced == 2
    assert accounting.calls["create_ledger_entry"] == 0
    assert accounting.payments[0]["external_invoice_id"] == "inv-created-earlier"
    invoice = await ledger_store.get_invoice(db_session, invoice.id)
    assert invoice.sync_status == InvoiceSyncStatus.SYNCED
    assert invoice.invoice_number == "INV-0042"


@pytest.mark.asyncio
async def test_free_purchase_syncs_invoice_only(db_session, member, services, accounting):
    invoice = await StagingManager.stage(db_session, purchase_for(member, 3000, discount=3000))

    result = await services.sync.sync_pending(db_session, now=SYNC_AT)

    assert result.synced == 1
    assert [line.line_amount for line in accounting.entries[0]["line_items"]] == [3000, -3000]
    assert accounting.payments == []
    invoice = await ledger_store.get_invoice(db_session, invoice.id)
    assert invoice.sync_status == InvoiceSyncStatus.SYNCED


@pytest.mark.asyncio
async def test_open_circuit_defers_remaining_records(db_session, member, accounting):
    for n in range(3):
        await StagingManager.stage(db_session, purchase_for(member, 1000, source_id=f"reg-{n}", discount=1000))
    accounting.errors["resolve_contact"].extend([AccountingTransientError("HTTP 429")] * 2)
    breaker = CircuitBreaker("accounting", failure_threshold=2, reset_timeout=60,
                             counted_exceptions=(AccountingTransientError,))
    sync = ReconciliationSync(accounting, breaker)

    result = await sync.sync_pending(db_session, now=SYNC_AT)

    assert result.retained == 3
    assert result.failed == 0
    assert accounting.calls["resolve_contact"] == 2
    assert breaker.state == "OPEN"
    assert "OPEN" in result.errors[-1]


@pytest.mark.asyncio
async def test_rejections_do_not_trip_the_breaker():
    breaker = CircuitBreaker("accounting", failure_threshold=1, counted_exceptions=(AccountingTransientError,))

    async def rejected():
        raise AccountingRejectedError("Contact name already exists")

    with pytest.raises(AccountingRejectedError):
        await breaker.call(rejected)

    assert breaker.state == "CLOSED"
    assert breaker.failures == 0


@pytest.mark.asyncio
async def test_circuit_breaker_half_opens_after_timeout():
    breaker = CircuitBreaker("accounting", failure_threshold=2, reset_timeout=30,
                             counted_exceptions=(AccountingTransientError,))

    async def failing():
        raise AccountingTransientError("HTTP 503")

    async def succeeding():
        return "ok"

    for _ in range(2):
        with pytest.raises(AccountingTransientError):
            await breaker.call(failing)
    with pytest.raises(CircuitOpenError):
        await breaker.call(succeeding)

    breaker.last_failure_time = time.time() - 31
    assert await breaker.call(succeeding) == "ok"
    assert breaker.state == "CLOSED"
    assert breaker.failures == 0
