"""
API Endpoint Tests.

Job triggers and operator endpoints over the ASGI app.
"""

import pytest
from datetime import datetime

from plan_ledger.app.domain.ledger import ledger_store
from plan_ledger.app.models.dlq import DLQTask
from plan_ledger.app.models.ledger_enums import InstallmentStatus, InvoiceSyncStatus
from plan_ledger.app.services.dead_letters import record_dead_letter
from plan_ledger.tests.factories import PLAN_START

RUN_AT = datetime(2026, 1, 1, 10, 0)


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["version"] == "v1"


@pytest.mark.asyncio
async def test_cron_requires_secret(client, secrets):
    response = await client.post("/v1/cron/payment-plans")
    assert response.status_code == 401
    assert response.json()["error_code"] == "ERR_AUTH_001"

    response = await client.post("/v1/cron/payment-plans", headers={"Authorization": "Bearer wrong"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_admin_secret_does_not_open_cron(client, secrets):
    response = await client.post("/v1/cron/accounting-sync", headers=secrets["admin"])
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_cron_payment_plans_charges_due_installment(client, secrets, db_session, member, make_plan, gateway):
    today = datetime.utcnow().date()
    invoice = await make_plan(member, start_date=today)

    response = await client.post("/v1/cron/payment-plans", headers=secrets["cron"])

    assert response.status_code == 200
    body = response.json()
    assert body["recovery"]["found"] == 0
    assert body["processing"]["found"] == 1
    assert body["processing"]["processed"] == 1
    assert len(gateway.charges) == 1

    first = (await ledger_store.list_installments(db_session, invoice.id))[0]
    assert first.status == InstallmentStatus.PENDING


@pytest.mark.asyncio
async def test_cron_accounting_sync(client, secrets, db_session, member, make_plan, services, accounting):
    invoice = await make_plan(member)
    await services.processor.process_due(db_session, as_of=PLAN_START, now=RUN_AT)

    response = await client.post("/v1/cron/accounting-sync", headers=secrets["cron"])

    assert response.status_code == 200
    assert response.json()["synced"] == 2
    assert accounting.payments[0]["amount"] == 2500
    invoice = await ledger_store.get_invoice(db_session, invoice.id)
    assert invoice.sync_status == InvoiceSyncStatus.SYNCED


@pytest.mark.asyncio
async def test_get_unknown_plan_is_not_found(client, secrets):
    response = await client.get("/v1/admin/payment-plans/999", headers=secrets["admin"])

    assert response.status_code == 404
    assert response.json()["error_code"] == "ERR_NOT_FOUND_001"


@pytest.mark.asyncio
async def test_get_plan_lists_installments(client, secrets, member, make_plan):
    invoice = await make_plan(member)

    response = await client.get(f"/v1/admin/payment-plans/{invoice.id}", headers=secrets["admin"])

    assert response.status_code == 200
    body = response.json()
    assert body["is_payment_plan"] is True
    assert [i["amount"] for i in body["installments"]] == [2500, 2500, 2500, 2500]


@pytest.mark.asyncio
async def test_payoff_endpoint(client, secrets, db_session, member, make_plan, gateway):
    invoice = await make_plan(member)

    response = await client.post(f"/v1/admin/payment-plans/{invoice.id}/payoff", headers=secrets["admin"])

    assert response.status_code == 200
    assert response.json()["amount"] == 10000
    assert gateway.charges[0]["amount"] == 10000

    # Nothing left to pay
    response = await client.post(f"/v1/admin/payment-plans/{invoice.id}/payoff", headers=secrets["admin"])
    assert response.status_code == 400
    assert response.json()["error_code"] == "ERR_PAYMENT_002"


@pytest.mark.asyncio
async def test_cancel_endpoint(client, secrets, member, make_plan):
    invoice = await make_plan(member)

    response = await client.post(
        f"/v1/admin/payment-plans/{invoice.id}/cancel",
        json={"reason": "Member withdrew"},
        headers=secrets["admin"],
    )

    assert response.status_code == 200
    body = response.json()
    assert body["plan_status"] == "cancelled"
    assert all(i["status"] == "failed" for i in body["installments"])


@pytest.mark.asyncio
async def test_cancel_requires_reason(client, secrets, member, make_plan):
    invoice = await make_plan(member)

    response = await client.post(
        f"/v1/admin/payment-plans/{invoice.id}/cancel", json={"reason": ""}, headers=secrets["admin"]
    )

    assert response.status_code == 422
    assert response.json()["error_code"] == "ERR_VALIDATION"


@pytest.mark.asyncio
async def test_outstanding_balance_endpoint(client, secrets, member, make_plan):
    await make_plan(member)

    response = await client.get(f"/v1/admin/payment-plans/users/{member.id}/outstanding", headers=secrets["admin"])

    assert response.status_code == 200
    assert response.json() == {"user_id": member.id, "outstanding_balance": 10000}


@pytest.mark.asyncio
async def test_sync_reset_endpoint(client, secrets, db_session, member, make_plan, services):
    invoice = await make_plan(member)
    await services.processor.process_due(db_session, as_of=PLAN_START, now=RUN_AT)
    await ledger_store.record_invoice_sync_error(db_session, invoice.id, "Rejected", terminal=True, now=RUN_AT)
    await db_session.commit()

    response = await client.post(
        "/v1/admin/payment-plans/accounting-sync/reset",
        json={"invoice_ids": [invoice.id]},
        headers=secrets["admin"],
    )

    assert response.status_code == 200
    assert response.json() == {"invoices_reset": 1, "installments_reset": 0}
    invoice = await ledger_store.get_invoice(db_session, invoice.id)
    assert invoice.sync_status == InvoiceSyncStatus.PENDING


@pytest.mark.asyncio
async def test_dead_letter_review(client, secrets, db_session):
    entry = await record_dead_letter(
        db_session, DLQTask.INSTALLMENT_CHARGE, "Retries exhausted", {"installment_id": 7}
    )
    await db_session.commit()

    response = await client.get("/v1/admin/ops/dlq", headers=secrets["admin"])
    assert response.status_code == 200
    assert [item["id"] for item in response.json()] == [entry.id]
    assert response.json()[0]["payload"] == {"installment_id": 7}

    response = await client.post(
        f"/v1/admin/ops/dlq/{entry.id}/resolve", json={"status": "ARCHIVED"}, headers=secrets["admin"]
    )
    assert response.status_code == 200
    assert response.json()["status"] == "ARCHIVED"
    assert response.json()["resolved_by"] == "ops@example.com"

    response = await client.get("/v1/admin/ops/dlq", headers=secrets["admin"])
    assert response.json() == []
