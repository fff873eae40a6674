"""
Payment gateway client.

The engine only needs two calls: charge a saved payment method, and look an
earlier charge up by its idempotency key. HttpPaymentGateway speaks the
Stripe PaymentIntents REST API.
"""

import logging
from typing import Optional, Dict, Any, Protocol

import httpx
from pydantic import BaseModel

from plan_ledger.app.core.config import settings
from plan_ledger.app.core.exceptions import GatewayError
from plan_ledger.app.models.ledger_enums import ChargeStatus

logger = logging.getLogger("plan_ledger.gateway")


class ChargeResult(BaseModel):
    status: ChargeStatus
    transaction_ref: Optional[str] = None
    failure_message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == ChargeStatus.SUCCEEDED


class PaymentGateway(Protocol):
    async def charge(
        self,
        amount: int,
        payment_method_ref: str,
        customer_ref: Optional[str],
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> ChargeResult:
        ...

    async def find_charge(self, idempotency_key: str) -> Optional[ChargeResult]:
        ...


# PaymentIntent statuses that mean the customer has to step in
_ACTION_STATUSES = {"requires_action", "requires_confirmation"}


def _result_from_intent(intent: Dict[str, Any]) -> ChargeResult:
    status = intent.get("status")
    if status == "succeeded":
        return ChargeResult(status=ChargeStatus.SUCCEEDED, transaction_ref=intent.get("id"))

    error = intent.get("last_payment_error") or {}
    if status in _ACTION_STATUSES:
        return ChargeResult(
            status=ChargeStatus.REQUIRES_ACTION,
            transaction_ref=intent.get("id"),
            failure_message=error.get("message") or "Payment requires additional authentication",
        )
    return ChargeResult(
        status=ChargeStatus.FAILED,
        transaction_ref=intent.get("id"),
        failure_message=error.get("message") or f"Payment {status or 'failed'}",
    )


class HttpPaymentGateway:
    """
    Stripe-style gateway over httpx.

    Every charge carries the idempotency key both as the Idempotency-Key
    header and as metadata, so find_charge can search for it later.
    """

    def __init__(
        self,
        api_key: str = None,
        base_url: str = None,
        currency: str = None,
        timeout: float = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.api_key = api_key if api_key is not None else settings.gateway_api_key
        self.base_url = base_url or settings.gateway_base_url
        self.currency = currency or settings.currency
        self.timeout = timeout or settings.gateway_timeout_seconds
        self._client = client

    def _new_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            headers={"Authorization": f"Bearer {self.api_key}"},
        )

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            if self._client is not None:
                return await self._client.request(method, path, **kwargs)
            async with self._new_client() as client:
                return await client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise GatewayError(f"Gateway request failed: {e}") from e

    async def charge(
        self,
        amount: int,
        payment_method_ref: str,
        customer_ref: Optional[str],
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> ChargeResult:
        data = {
            "amount": str(amount),
            "currency": self.currency,
            "payment_method": payment_method_ref,
            "confirm": "true",
            "off_session": "true",
            "metadata[idempotency_key]": idempotency_key,
        }
        if customer_ref:
            data["customer"] = customer_ref
        for key, value in (metadata or {}).items():
            data[f"metadata[{key}]"] = str(value)

        response = await self._request(
            "POST",
            "/v1/payment_intents",
            data=data,
            headers={"Idempotency-Key": idempotency_key},
        )

        if response.status_code == 200:
            return _result_from_intent(response.json())

        if response.status_code == 402:
            # Card errors: the intent exists but was declined
            error = response.json().get("error", {})
            intent = error.get("payment_intent") or {}
            if error.get("code") == "authentication_required" or intent.get("status") in _ACTION_STATUSES:
                status = ChargeStatus.REQUIRES_ACTION
            else:
                status = ChargeStatus.FAILED
            logger.info(
                "Charge declined",
                extra={"idempotency_key": idempotency_key, "decline_code": error.get("decline_code")}
            )
            return ChargeResult(
                status=status,
                transaction_ref=intent.get("id"),
                failure_message=error.get("message") or "Card declined",
            )

        raise GatewayError(
            f"Gateway returned HTTP {response.status_code} for charge {idempotency_key}"
        )

    async def find_charge(self, idempotency_key: str) -> Optional[ChargeResult]:
        response = await self._request(
            "GET",
            "/v1/payment_intents/search",
            params={"query": f"metadata['idempotency_key']:'{idempotency_key}'"},
        )
        if response.status_code != 200:
            raise GatewayError(
                f"Gateway returned HTTP {response.status_code} searching for {idempotency_key}"
            )

        intents = response.json().get("data", [])
        if not intents:
            return None
        # A succeeded intent wins over declined retries under the same key
        for intent in intents:
            if intent.get("status") == "succeeded":
                return _result_from_intent(intent)
        return _result_from_intent(intents[0])
