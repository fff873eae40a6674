"""
Centralized Test Configuration.
"""

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from plan_ledger.app.main import app
from plan_ledger.app.db.session import get_db, Base
from plan_ledger.app.core.config import settings
from plan_ledger.app.core.dependencies import build_services, get_services
from plan_ledger.app.core.exceptions import AccountingTransientError
from plan_ledger.app.core.reliability import CircuitBreaker
from plan_ledger.app.domain.ledger import ledger_store
from plan_ledger.app.domain.ledger.installment_scheduler import InstallmentScheduler
from plan_ledger.app.domain.ledger.staging_manager import StagingManager
from plan_ledger.app.models.user import User
from plan_ledger.app.models.ledger_enums import ChargeStatus
from plan_ledger.app.services.accounting_client import LedgerEntryResult
from plan_ledger.app.services.payment_gateway import ChargeResult
from plan_ledger.tests.factories import purchase_for, PLAN_START

# Setup In-Memory Test Database
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Event handler to enable foreign keys for SQLite
from sqlalchemy import event
from sqlalchemy.pool import Pool

@event.listens_for(Pool, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable foreign key constraints for SQLite."""
    if 'sqlite' in str(type(dbapi_conn)):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
)


# Fake external systems

class FakeGateway:
    """
    Scripted payment gateway.
    Each charge pops the next queued outcome (ChargeResult or exception);
    with nothing queued the charge succeeds.
    """

    def __init__(self):
        self.outcomes = []
        self.charges = []
        self.found = {}
        self.lookups = []
        self.on_charge = None

    async def charge(self, amount, payment_method_ref, customer_ref, idempotency_key, metadata=None):
        self.charges.append({
            "amount": amount,
            "payment_method_ref": payment_method_ref,
            "customer_ref": customer_ref,
            "idempotency_key": idempotency_key,
            "metadata": metadata or {},
        })
        if self.on_charge is not None:
            await self.on_charge()
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is None:
            outcome = ChargeResult(status=ChargeStatus.SUCCEEDED, transaction_ref=f"pi_{idempotency_key}")
        self.found[idempotency_key] = outcome
        return outcome

    async def find_charge(self, idempotency_key):
        self.lookups.append(idempotency_key)
        outcome = self.found.get(idempotency_key)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeAccounting:
    """Records what would have been sent; errors are queued per method name."""

    def __init__(self):
        self.errors = {"resolve_contact": [], "create_ledger_entry": [], "record_payment": []}
        self.calls = {"resolve_contact": 0, "create_ledger_entry": 0, "record_payment": 0}
        self.entries = []
        self.payments = []

    def _maybe_fail(self, method):
        self.calls[method] += 1
        if self.errors[method]:
            raise self.errors[method].pop(0)

    async def resolve_contact(self, user):
        self._maybe_fail("resolve_contact")
        return user.accounting_contact_id or f"contact-{user.id}"

    async def create_ledger_entry(self, contact_ref, line_items, reference):
        self._maybe_fail("create_ledger_entry")
        self.entries.append({"contact_ref": contact_ref, "line_items": line_items, "reference": reference})
        number = len(self.entries)
        return LedgerEntryResult(external_id=f"inv-ext-{number}", status="AUTHORISED", number=f"INV-{number:04d}")

    async def record_payment(self, external_invoice_id, amount, reference, paid_on=None):
        self._maybe_fail("record_payment")
        self.payments.append({
            "external_invoice_id": external_invoice_id,
            "amount": amount,
            "reference": reference,
            "paid_on": paid_on,
        })
        return LedgerEntryResult(external_id=f"pay-ext-{len(self.payments)}", status="AUTHORISED")


class FakeNotifier:
    def __init__(self):
        self.sent = []
        self.fail = False

    async def notify(self, event_type, recipient, template_data):
        if self.fail:
            raise RuntimeError("SMTP relay unavailable")
        self.sent.append((event_type, recipient, template_data))

    def events(self, event_type):
        return [data for sent_type, _, data in self.sent if sent_type == event_type]


@pytest.fixture(autouse=True)
async def setup_database():
    """Create tables before each test function and drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def session_factory():
    """For tests that need a second, independent session."""
    return TestingSessionLocal


# Shared session for fixture data creation
@pytest.fixture
async def db_session():
    async with TestingSessionLocal() as session:
        yield session


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def accounting():
    return FakeAccounting()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def circuit_breaker():
    return CircuitBreaker(
        "accounting",
        failure_threshold=5,
        reset_timeout=60,
        counted_exceptions=(AccountingTransientError,),
    )


@pytest.fixture
def services(gateway, accounting, notifier, circuit_breaker):
    return build_services(
        session_factory=TestingSessionLocal,
        gateway=gateway,
        accounting=accounting,
        notifier=notifier,
        circuit_breaker=circuit_breaker,
    )


@pytest.fixture
def secrets(monkeypatch):
    monkeypatch.setattr(settings, "cron_secret", "cron-test-secret")
    monkeypatch.setattr(settings, "admin_secret", "admin-test-secret")
    return {
        "cron": {"Authorization": "Bearer cron-test-secret"},
        "admin": {"Authorization": "Bearer admin-test-secret", "X-Actor": "ops@example.com"},
    }


@pytest.fixture
async def client(services):
    """Async client for testing."""
    async def override_get_db():
        async with TestingSessionLocal() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_services] = lambda: services
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides = {}


@pytest.fixture
async def member(db_session):
    """Member with a completed payment method setup."""
    user = User(
        email="member@example.com",
        first_name="Alex",
        last_name="Rivera",
        gateway_customer_id="cus_test",
        gateway_payment_method_id="pm_card_visa",
        payment_method_status="succeeded",
    )
    db_session.add(user)
    await db_session.commit()
    return user


@pytest.fixture
async def member_without_method(db_session):
    user = User(email="nocard@example.com", first_name="Sam")
    db_session.add(user)
    await db_session.commit()
    return user


@pytest.fixture
def make_plan(db_session):
    """Stage a purchase and schedule it; returns the fresh invoice."""
    async def _make_plan(user, amount=10000, count=4, start_date=PLAN_START, source_id="reg-1001"):
        invoice = await StagingManager.stage(db_session, purchase_for(user, amount, source_id))
        await InstallmentScheduler.schedule(db_session, invoice.id, count, start_date=start_date)
        return await ledger_store.get_invoice(db_session, invoice.id)
    return _make_plan
