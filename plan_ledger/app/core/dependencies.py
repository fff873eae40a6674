"""
FastAPI dependencies.

Job triggers are guarded by shared bearer secrets (CRON_SECRET for the
scheduler, ADMIN_SECRET for operators). The domain services and their
external collaborators are built once and injected.
"""

import hmac
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Optional

from fastapi import Depends, Header
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from plan_ledger.app.core.config import settings
from plan_ledger.app.core.exceptions import AuthenticationError
from plan_ledger.app.core.reliability import CircuitBreaker, build_accounting_circuit_breaker
from plan_ledger.app.db.session import AsyncSessionLocal
from plan_ledger.app.domain.ledger.installment_processor import InstallmentProcessor
from plan_ledger.app.domain.ledger.payoff_handler import PayoffHandler
from plan_ledger.app.domain.ledger.reconciliation_sync import ReconciliationSync
from plan_ledger.app.services.accounting_client import AccountingClient, HttpAccountingClient
from plan_ledger.app.services.notification_service import Notifier, StagedEmailNotifier
from plan_ledger.app.services.payment_gateway import PaymentGateway, HttpPaymentGateway

# HTTP Bearer security scheme; missing headers are reported as 401 by us
security = HTTPBearer(auto_error=False)


def _check_secret(credentials: Optional[HTTPAuthorizationCredentials], expected: Optional[str]) -> None:
    if not expected:
        raise AuthenticationError("Trigger secret is not configured")
    if credentials is None or not hmac.compare_digest(credentials.credentials.encode(), expected.encode()):
        raise AuthenticationError("Invalid or missing bearer secret")


async def require_cron_secret(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> None:
    _check_secret(credentials, settings.cron_secret)


async def require_admin_secret(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    x_actor: Optional[str] = Header(None)
) -> str:
    """Returns the actor recorded in the audit trail."""
    _check_secret(credentials, settings.admin_secret)
    return x_actor or "admin"


@dataclass
class LedgerServices:
    gateway: PaymentGateway
    accounting: AccountingClient
    notifier: Notifier
    circuit_breaker: CircuitBreaker
    processor: InstallmentProcessor
    payoff: PayoffHandler
    sync: ReconciliationSync


def build_services(
    session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
    gateway: Optional[PaymentGateway] = None,
    accounting: Optional[AccountingClient] = None,
    notifier: Optional[Notifier] = None,
    circuit_breaker: Optional[CircuitBreaker] = None
) -> LedgerServices:
    gateway = gateway or HttpPaymentGateway()
    accounting = accounting or HttpAccountingClient()
    notifier = notifier or StagedEmailNotifier(session_factory)
    circuit_breaker = circuit_breaker or build_accounting_circuit_breaker()
    return LedgerServices(
        gateway=gateway,
        accounting=accounting,
        notifier=notifier,
        circuit_breaker=circuit_breaker,
        processor=InstallmentProcessor(gateway, notifier),
        payoff=PayoffHandler(gateway, notifier),
        sync=ReconciliationSync(accounting, circuit_breaker),
    )


@lru_cache
def get_services() -> LedgerServices:
    return build_services()
