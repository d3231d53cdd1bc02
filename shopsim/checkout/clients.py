"""HTTP clients for the collaborators the checkout flow calls.

Every call returns a :data:`StepOutcome`; transport and HTTP errors are turned
into :class:`Failure` values here and never raised. Clients never retry.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable
from urllib.parse import quote

import httpx

from shopsim.checkout.models import (
    TIMEOUT,
    CartItem,
    Failure,
    Order,
    ShippingAddress,
    StepOutcome,
    Success,
    to_money,
)
from shopsim.core.canonical import to_canonical_obj
from shopsim.core.config import Settings, get_settings
from shopsim.core.observability import propagator

_STATUS_REASONS = {
    402: "payment_declined",
    404: "not_found",
}


class ServiceClient:
    collaborator: str = "base"

    def __init__(self, base_url: str, timeout: float, *, transport: httpx.BaseTransport | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    @classmethod
    def from_settings(cls, settings: Settings | None = None, *, transport: httpx.BaseTransport | None = None):
        base_url, timeout = (settings or get_settings()).endpoint(cls.collaborator)
        return cls(base_url, timeout, transport=transport)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        propagator.inject(headers)
        return headers

    def _request(
        self,
        method: str,
        path: str,
        *,
        timeout: float | None = None,
        json_body: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> StepOutcome:
        timeout = self.timeout if timeout is None else timeout
        url = f"{self.base_url}{path}"
        body = to_canonical_obj(json_body) if json_body is not None else None
        try:
            with httpx.Client(timeout=timeout, transport=self.transport) as client:
                response = client.request(method, url, headers=self._headers(), json=body, params=params)
        except httpx.TimeoutException:
            return Failure(TIMEOUT, retryable=True, message=f"{self.collaborator} {method} {path} timed out after {timeout:.3f}s")
        except httpx.TransportError as exc:
            return Failure("unavailable", retryable=True, message=f"{self.collaborator} unreachable: {exc}")
        except (httpx.DecodingError, httpx.TooManyRedirects) as exc:
            return Failure("bad_response", message=f"{self.collaborator} {method} {path} unreadable: {exc}")
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            return Failure("unavailable", message=f"{self.collaborator} {method} {path} failed: {exc!r}")

        if response.status_code >= 400:
            return self._http_failure(response)

        try:
            payload = response.json()
        except ValueError:
            return Failure("bad_response", message=f"{self.collaborator} returned a non-JSON body")
        if not isinstance(payload, dict):
            return Failure("bad_response", message=f"{self.collaborator} returned {type(payload).__name__}, expected object")
        return Success(payload)

    def _http_failure(self, response: httpx.Response) -> Failure:
        detail = ""
        try:
            payload = response.json()
            if isinstance(payload, dict):
                detail = str(payload.get("detail", ""))
        except ValueError:
            detail = response.text[:200]

        status = response.status_code
        if status in _STATUS_REASONS:
            reason, retryable = _STATUS_REASONS[status], False
        elif status >= 500:
            reason, retryable = "unavailable", True
        else:
            reason, retryable = "rejected", False
        message = f"{self.collaborator} answered {status}" + (f": {detail}" if detail else "")
        return Failure(reason, retryable=retryable, message=message)

    def _then(self, outcome: StepOutcome, parse: Callable[[dict[str, Any]], dict[str, Any]]) -> StepOutcome:
        if isinstance(outcome, Failure):
            return outcome
        try:
            return Success(parse(outcome.payload))
        except (KeyError, TypeError, ValueError, ArithmeticError) as exc:
            return Failure("bad_response", message=f"{self.collaborator} payload unreadable: {exc!r}")

    def health(self, *, timeout: float | None = None) -> StepOutcome:
        return self._request("GET", "/health", timeout=timeout)


def _items_payload(items: list[CartItem]) -> list[dict[str, Any]]:
    return [{"product_id": item.product_id, "quantity": item.quantity} for item in items]


class CatalogClient(ServiceClient):
    collaborator = "catalog"

    def get_price(self, product_id: str, currency: str, *, timeout: float | None = None) -> StepOutcome:
        outcome = self._request(
            "GET",
            f"/products/{quote(product_id, safe='')}",
            timeout=timeout,
            params={"currency": currency},
        )
        return self._then(
            outcome,
            lambda p: {"product_id": str(p["product_id"]), "price": to_money(p["price"]), "currency": str(p["currency"])},
        )


class ShippingClient(ServiceClient):
    collaborator = "shipping"

    def quote(
        self,
        address: ShippingAddress,
        items: list[CartItem],
        currency: str,
        *,
        timeout: float | None = None,
    ) -> StepOutcome:
        outcome = self._request(
            "POST",
            "/quote",
            timeout=timeout,
            json_body={"address": address.model_dump(), "items": _items_payload(items), "currency": currency},
        )
        return self._then(outcome, lambda p: {"cost": to_money(p["cost"]), "currency": str(p["currency"])})

    def ship(
        self,
        order_id: str,
        address: ShippingAddress,
        items: list[CartItem],
        *,
        timeout: float | None = None,
    ) -> StepOutcome:
        outcome = self._request(
            "POST",
            "/ship",
            timeout=timeout,
            json_body={"order_id": order_id, "address": address.model_dump(), "items": _items_payload(items)},
        )
        return self._then(outcome, lambda p: {"tracking_id": str(p["tracking_id"])})


class CurrencyClient(ServiceClient):
    collaborator = "currency"

    def convert(self, amount: Decimal, from_currency: str, to_currency: str, *, timeout: float | None = None) -> StepOutcome:
        outcome = self._request(
            "POST",
            "/convert",
            timeout=timeout,
            json_body={"amount": amount, "from_currency": from_currency, "to_currency": to_currency},
        )
        return self._then(outcome, lambda p: {"amount": to_money(p["amount"]), "currency": str(p["currency"])})


class PaymentClient(ServiceClient):
    collaborator = "payment"

    def charge(
        self,
        order_id: str,
        amount: Decimal,
        currency: str,
        token: str,
        *,
        timeout: float | None = None,
    ) -> StepOutcome:
        outcome = self._request(
            "POST",
            "/charge",
            timeout=timeout,
            json_body={"order_id": order_id, "amount": amount, "currency": currency, "token": token},
        )
        return self._then(outcome, lambda p: {"transaction_id": str(p["transaction_id"])})

    def reverse(self, transaction_id: str, *, timeout: float | None = None) -> StepOutcome:
        outcome = self._request("POST", "/reverse", timeout=timeout, json_body={"transaction_id": transaction_id})
        return self._then(outcome, lambda p: {"reversed": bool(p["reversed"])})


class FraudDetectionClient(ServiceClient):
    collaborator = "fraud_detection"

    def check(
        self,
        order_id: str,
        user_id: str,
        amount: Decimal,
        currency: str,
        *,
        timeout: float | None = None,
    ) -> StepOutcome:
        outcome = self._request(
            "POST",
            "/check",
            timeout=timeout,
            json_body={"order_id": order_id, "user_id": user_id, "amount": amount, "currency": currency},
        )
        return self._then(
            outcome,
            lambda p: {"flagged": bool(p["flagged"]), "reasons": [str(r) for r in p.get("reasons", [])]},
        )


class EmailClient(ServiceClient):
    collaborator = "email"

    def send(self, email: str, order: Order, *, timeout: float | None = None) -> StepOutcome:
        outcome = self._request(
            "POST",
            "/send",
            timeout=timeout,
            json_body={"email": email, "order": order.model_dump()},
        )
        return self._then(outcome, lambda p: {"accepted": bool(p["accepted"])})


class AccountingClient(ServiceClient):
    collaborator = "accounting"

    def publish(self, event: dict[str, Any], *, timeout: float | None = None) -> StepOutcome:
        outcome = self._request("POST", "/events", timeout=timeout, json_body=event)
        return self._then(outcome, lambda p: {"event_id": str(p["event_id"]), "event_hash": str(p["event_hash"])})


class CartClient(ServiceClient):
    collaborator = "cart"

    def get_cart(self, user_id: str, *, timeout: float | None = None) -> StepOutcome:
        outcome = self._request("GET", f"/carts/{quote(user_id, safe='')}", timeout=timeout)
        return self._then(
            outcome,
            lambda p: {"user_id": str(p["user_id"]), "items": [CartItem(**item) for item in p["items"]]},
        )

    def empty_cart(self, user_id: str, *, timeout: float | None = None) -> StepOutcome:
        outcome = self._request("DELETE", f"/carts/{quote(user_id, safe='')}", timeout=timeout)
        return self._then(outcome, lambda p: {"user_id": str(p["user_id"]), "emptied": bool(p["emptied"])})


@dataclass
class CheckoutClients:
    catalog: CatalogClient
    shipping: ShippingClient
    currency: CurrencyClient
    payment: PaymentClient
    fraud_detection: FraudDetectionClient
    email: EmailClient
    accounting: AccountingClient
    cart: CartClient

    @classmethod
    def from_settings(cls, settings: Settings | None = None, *, transport: httpx.BaseTransport | None = None) -> "CheckoutClients":
        settings = settings or get_settings()
        return cls(
            catalog=CatalogClient.from_settings(settings, transport=transport),
            shipping=ShippingClient.from_settings(settings, transport=transport),
            currency=CurrencyClient.from_settings(settings, transport=transport),
            payment=PaymentClient.from_settings(settings, transport=transport),
            fraud_detection=FraudDetectionClient.from_settings(settings, transport=transport),
            email=EmailClient.from_settings(settings, transport=transport),
            accounting=AccountingClient.from_settings(settings, transport=transport),
            cart=CartClient.from_settings(settings, transport=transport),
        )
