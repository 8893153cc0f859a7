"""
Payment gateway adapter for off-session subscription billing.

Talks to the Stripe REST API directly over httpx (form-encoded, bearer
auth). Only opaque references are stored on our side: a Stripe customer
id and a payment method id. Card data never touches this service.

Three operations:
- prepare_payment_method: get-or-create the customer and open a SetupIntent
  so the frontend can collect a card for future off-session use.
- attach_payment_method: attach a collected card and make it the default.
- charge_off_session: one PaymentIntent, confirmed immediately, no retries.
"""
from __future__ import annotations

import logging
from typing import Any, Optional, Protocol

import httpx

from config.settings import settings
from src.models.subscription import ChargeResult, SetupResult
from src.services.errors import IDEMPOTENCY_CONFLICT, GatewayError, PaymentMethodMissingError

logger = logging.getLogger(__name__)


class BillingUser(Protocol):
    id: str
    email: Optional[str]
    phone: Optional[str]

    @property
    def full_name(self) -> Optional[str]: ...


class BillingGateway(Protocol):
    async def prepare_payment_method(
        self, user: BillingUser, existing_customer_id: Optional[str] = None,
    ) -> SetupResult: ...

    async def attach_payment_method(
        self, user: BillingUser, payment_method_id: str, existing_customer_id: Optional[str] = None,
    ) -> str: ...

    async def charge_off_session(
        self,
        customer_id: Optional[str],
        payment_method_id: Optional[str],
        amount_cents: int,
        metadata: dict[str, str],
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> ChargeResult: ...


# ── Helpers ───────────────────────────────────────────────────────────────────

def _metadata_fields(metadata: dict[str, Any]) -> dict[str, str]:
    return {f"metadata[{k}]": str(v) for k, v in metadata.items() if v is not None}


def _error_from_response(resp: httpx.Response) -> GatewayError:
    """Turn a Stripe error body into a GatewayError.

    Card errors carry a ``decline_code`` (insufficient_funds, lost_card ...)
    that is more specific than the generic ``card_declined`` code.
    """
    try:
        error = resp.json().get("error", {}) or {}
    except ValueError:
        error = {}
    if error.get("type") == IDEMPOTENCY_CONFLICT:
        code = IDEMPOTENCY_CONFLICT
    else:
        code = error.get("decline_code") or error.get("code") or error.get("type") or f"http_{resp.status_code}"
    message = error.get("message") or f"Stripe request failed with status {resp.status_code}"
    return GatewayError(code, message)


# ── Stripe ────────────────────────────────────────────────────────────────────

class StripeGateway:
    def __init__(
        self,
        secret_key: Optional[str] = None,
        api_base: Optional[str] = None,
        currency: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.secret_key = secret_key if secret_key is not None else settings.STRIPE_SECRET_KEY
        self.api_base = (api_base or settings.STRIPE_API_BASE).rstrip("/")
        self.currency = (currency or settings.BILLING_CURRENCY).lower()
        self.timeout = timeout if timeout is not None else settings.GATEWAY_TIMEOUT_SECONDS
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.api_base,
            timeout=self.timeout,
            transport=self._transport,
            headers={"Authorization": f"Bearer {self.secret_key}"},
        )

    async def _request(
        self,
        method: str,
        path: str,
        data: Optional[dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> dict:
        if not self.secret_key:
            raise GatewayError("not_configured", "Stripe is not configured")

        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        try:
            async with self._client() as client:
                resp = await client.request(method, path, data=data, headers=headers)
        except httpx.TimeoutException as e:
            logger.warning(f"Stripe {method} {path} timed out: {e!r}")
            raise GatewayError("timeout", "Payment gateway timed out") from e
        except httpx.HTTPError as e:
            logger.warning(f"Stripe {method} {path} failed: {e!r}")
            raise GatewayError("network_error", "Could not reach payment gateway") from e

        if resp.status_code >= 400:
            error = _error_from_response(resp)
            logger.info(f"Stripe {method} {path} -> {resp.status_code} {error.code}")
            raise error
        return resp.json()

    # ── Customers / payment methods ──────────────────────────────────────────

    async def _get_or_create_customer(self, user: BillingUser, existing_customer_id: Optional[str]) -> str:
        if existing_customer_id:
            try:
                customer = await self._request("GET", f"/customers/{existing_customer_id}")
                if not customer.get("deleted"):
                    return customer["id"]
            except GatewayError as e:
                if e.code != "resource_missing":
                    raise
            logger.info(f"Stripe customer {existing_customer_id} gone, creating a new one for user {user.id}")

        data = {"metadata[userId]": user.id}
        if user.email:
            data["email"] = user.email
        if user.full_name:
            data["name"] = user.full_name
        if user.phone:
            data["phone"] = user.phone
        customer = await self._request("POST", "/customers", data=data)
        logger.info(f"Created Stripe customer {customer['id']} for user {user.id}")
        return customer["id"]

    async def prepare_payment_method(
        self, user: BillingUser, existing_customer_id: Optional[str] = None,
    ) -> SetupResult:
        customer_id = await self._get_or_create_customer(user, existing_customer_id)
        intent = await self._request("POST", "/setup_intents", data={
            "customer": customer_id,
            "payment_method_types[]": "card",
            "usage": "off_session",
            "metadata[userId]": user.id,
        })
        return SetupResult(customer_id=customer_id, client_secret=intent["client_secret"])

    async def attach_payment_method(
        self, user: BillingUser, payment_method_id: str, existing_customer_id: Optional[str] = None,
    ) -> str:
        customer_id = await self._get_or_create_customer(user, existing_customer_id)
        await self._request("POST", f"/payment_methods/{payment_method_id}/attach", data={
            "customer": customer_id,
        })
        await self._request("POST", f"/customers/{customer_id}", data={
            "invoice_settings[default_payment_method]": payment_method_id,
        })
        return customer_id

    # ── Charges ──────────────────────────────────────────────────────────────

    async def charge_off_session(
        self,
        customer_id: Optional[str],
        payment_method_id: Optional[str],
        amount_cents: int,
        metadata: dict[str, str],
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> ChargeResult:
        if not customer_id or not payment_method_id:
            raise PaymentMethodMissingError()

        data = {
            "amount": str(amount_cents),
            "currency": self.currency,
            "customer": customer_id,
            "payment_method": payment_method_id,
            "off_session": "true",
            "confirm": "true",
            **_metadata_fields(metadata),
        }
        if description:
            data["description"] = description

        intent = await self._request("POST", "/payment_intents", data=data, idempotency_key=idempotency_key)

        status = intent.get("status")
        if status != "succeeded":
            raise GatewayError(status or "unknown", f"Payment {status or 'not completed'}")

        return ChargeResult(transaction_id=intent["id"], amount_cents=int(intent.get("amount", amount_cents)))
