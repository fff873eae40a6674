"""
Accounting system client.

HttpAccountingClient speaks the Xero Accounting REST API: invoices are
created AUTHORISED against a contact, payments are applied to them.
Amounts cross this boundary in minor units and are converted here.

Errors are split in two:
- AccountingTransientError: rate limits, 5xx, network, auth, contact
  conflicts. A later sync run may succeed.
- AccountingRejectedError: validation failures on the record itself.
"""

import logging
from datetime import date
from decimal import Decimal
from typing import Optional, List, Dict, Any, Protocol

import httpx
from pydantic import BaseModel

from plan_ledger.app.core.config import settings
from plan_ledger.app.core.exceptions import AccountingTransientError, AccountingRejectedError
from plan_ledger.app.models.user import User

logger = logging.getLogger("plan_ledger.accounting")


class LedgerLineItem(BaseModel):
    description: str
    quantity: int = 1
    unit_amount: int
    line_amount: int
    account_code: Optional[str] = None
    item_code: Optional[str] = None


class LedgerEntryResult(BaseModel):
    external_id: str
    status: Optional[str] = None
    number: Optional[str] = None


class AccountingClient(Protocol):
    async def resolve_contact(self, user: User) -> str:
        ...

    async def create_ledger_entry(
        self,
        contact_ref: str,
        line_items: List[LedgerLineItem],
        reference: str
    ) -> LedgerEntryResult:
        ...

    async def record_payment(
        self,
        external_invoice_id: str,
        amount: int,
        reference: str,
        paid_on: Optional[date] = None
    ) -> LedgerEntryResult:
        ...


def to_major_units(amount: int) -> float:
    return float(Decimal(amount) / 100)


# Conditions a retry can fix even though they arrive as 4xx
_TRANSIENT_STATUS_CODES = {401, 403, 409, 423, 429}


def _validation_messages(body: Dict[str, Any]) -> List[str]:
    messages = []
    for element in body.get("Elements", []):
        for error in element.get("ValidationErrors", []):
            messages.append(error.get("Message", ""))
    if not messages and body.get("Message"):
        messages.append(body["Message"])
    return messages


class HttpAccountingClient:
    """Xero-style accounting client over httpx."""

    def __init__(
        self,
        access_token: str = None,
        tenant_id: str = None,
        base_url: str = None,
        bank_account_code: str = None,
        timeout: float = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.access_token = access_token if access_token is not None else settings.accounting_access_token
        self.tenant_id = tenant_id if tenant_id is not None else settings.accounting_tenant_id
        self.base_url = base_url or settings.accounting_base_url
        self.bank_account_code = bank_account_code or settings.accounting_bank_account_code
        self.timeout = timeout or settings.accounting_timeout_seconds
        self._client = client

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Accept": "application/json",
        }
        if self.tenant_id:
            headers["Xero-tenant-id"] = self.tenant_id
        return headers

    async def _send(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            if self._client is not None:
                response = await self._client.request(method, path, headers=self._headers(), **kwargs)
            else:
                async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout) as client:
                    response = await client.request(method, path, headers=self._headers(), **kwargs)
        except httpx.HTTPError as e:
            raise AccountingTransientError(f"Accounting request failed: {e}") from e

        if response.status_code in (200, 201):
            return response.json()

        if response.status_code in _TRANSIENT_STATUS_CODES or response.status_code >= 500:
            raise AccountingTransientError(
                f"Accounting system returned HTTP {response.status_code} for {method} {path}"
            )

        try:
            messages = _validation_messages(response.json())
        except ValueError:
            messages = [response.text]
        raise AccountingRejectedError(
            "; ".join(m for m in messages if m) or f"HTTP {response.status_code}"
        )

    async def resolve_contact(self, user: User) -> str:
        if user.accounting_contact_id:
            return user.accounting_contact_id

        body = await self._send(
            "GET",
            "/Contacts",
            params={"where": f'EmailAddress=="{user.email}"'},
        )
        contacts = body.get("Contacts", [])
        if contacts:
            return contacts[0]["ContactID"]

        body = await self._send(
            "POST",
            "/Contacts",
            json={"Contacts": [{
                "Name": f"{user.full_name} ({user.email})",
                "FirstName": user.first_name,
                "LastName": user.last_name,
                "EmailAddress": user.email,
            }]},
        )
        contact_id = body["Contacts"][0]["ContactID"]
        logger.info("Created accounting contact", extra={"user_id": user.id, "contact_id": contact_id})
        return contact_id

    async def create_ledger_entry(
        self,
        contact_ref: str,
        line_items: List[LedgerLineItem],
        reference: str
    ) -> LedgerEntryResult:
        payload = {"Invoices": [{
            "Type": "ACCREC",
            "Contact": {"ContactID": contact_ref},
            "Reference": reference,
            "Status": "AUTHORISED",
            "LineAmountTypes": "Inclusive",
            "CurrencyCode": settings.currency.upper(),
            "DueDate": date.today().isoformat(),
            "LineItems": [
                {
                    "Description": item.description,
                    "Quantity": item.quantity,
                    "UnitAmount": to_major_units(item.unit_amount),
                    "LineAmount": to_major_units(item.line_amount),
                    "AccountCode": item.account_code,
                    "ItemCode": item.item_code,
                }
                for item in line_items
            ],
        }]}
        body = await self._send("POST", "/Invoices", json=payload)
        invoice = body["Invoices"][0]
        return LedgerEntryResult(
            external_id=invoice["InvoiceID"],
            status=invoice.get("Status"),
            number=invoice.get("InvoiceNumber"),
        )

    async def record_payment(
        self,
        external_invoice_id: str,
        amount: int,
        reference: str,
        paid_on: Optional[date] = None
    ) -> LedgerEntryResult:
        payload = {"Payments": [{
            "Invoice": {"InvoiceID": external_invoice_id},
            "Account": {"Code": self.bank_account_code},
            "Amount": to_major_units(amount),
            "Date": (paid_on or date.today()).isoformat(),
            "Reference": reference,
        }]}
        body = await self._send("PUT", "/Payments", json=payload)
        payment = body["Payments"][0]
        return LedgerEntryResult(external_id=payment["PaymentID"], status=payment.get("Status"))
