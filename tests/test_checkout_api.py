from __future__ import annotations

from decimal import Decimal

import pytest

from shopsim.api.routes_checkout import get_orchestrator
from shopsim.checkout import Order, OrderStatus
from shopsim.main import app

VALID_BODY = {
    "user_id": "u-1",
    "items": [{"product_id": "A", "quantity": 2}],
    "address": {
        "street_address": "1 Main St",
        "city": "Springfield",
        "state": "IL",
        "country": "US",
        "zip_code": "62701",
    },
    "payment_token": "tok_visa",
    "currency": "USD",
}


class FixedOrchestrator:
    def __init__(self, order: Order):
        self.order = order
        self.calls = []

    def checkout(self, request, deadline=None):
        self.calls.append((request, deadline))
        return self.order


def _order(status: OrderStatus, reason: str | None = None, total: str = "0.00") -> Order:
    return Order(
        order_id="ord-0000000000000001",
        status=status,
        reason=reason,
        user_id="u-1",
        currency="USD",
        total=Decimal(total),
        settlement_total=Decimal(total),
        settlement_currency="USD",
    )


def _use(order: Order) -> FixedOrchestrator:
    fake = FixedOrchestrator(order)
    app.dependency_overrides[get_orchestrator] = lambda: fake
    return fake


@pytest.mark.parametrize(
    "status,reason,expected",
    [
        (OrderStatus.COMPLETED, None, 200),
        (OrderStatus.COMPLETED_WITH_WARNINGS, None, 200),
        (OrderStatus.PAYMENT_FAILED, "payment_declined", 402),
        (OrderStatus.REJECTED, "fraud_flagged", 409),
        (OrderStatus.REJECTED, "catalog_miss", 409),
        (OrderStatus.REJECTED, "deadline_exceeded", 504),
    ],
)
def test_status_codes_follow_order_status(client, status, reason, expected):
    _use(_order(status, reason))

    res = client.post("/api/checkout", json=VALID_BODY)

    assert res.status_code == expected
    body = res.json()
    assert body["status"] == status.value
    assert body["reason"] == reason


def test_completed_order_body_keeps_money_exact(client):
    _use(_order(OrderStatus.COMPLETED, total="25.00"))

    res = client.post("/api/checkout", json=VALID_BODY)

    assert res.status_code == 200
    body = res.json()
    assert body["total"] == "25.00"
    assert body["order_id"] == "ord-0000000000000001"
    assert body["warnings"] == []


@pytest.mark.parametrize(
    "mutate",
    [
        lambda body: body.update(items=[]),
        lambda body: body.update(items=[{"product_id": "A", "quantity": 0}]),
        lambda body: body.update(items=[{"product_id": "A", "quantity": "2"}]),
        lambda body: body.update(currency="usd"),
        lambda body: body.pop("payment_token"),
        lambda body: body.pop("address"),
    ],
    ids=["empty-cart", "zero-quantity", "string-quantity", "lowercase-currency", "no-token", "no-address"],
)
def test_malformed_requests_are_rejected_before_any_step(client, mutate):
    fake = _use(_order(OrderStatus.COMPLETED))
    body = {**VALID_BODY, "items": [dict(item) for item in VALID_BODY["items"]]}
    mutate(body)

    res = client.post("/api/checkout", json=body)

    assert res.status_code == 400
    assert res.json()["error"] == "invalid_checkout_request"
    assert fake.calls == []


def test_unparseable_body_is_rejected(client):
    fake = _use(_order(OrderStatus.COMPLETED))

    res = client.post("/api/checkout", content=b"{not json", headers={"content-type": "application/json"})

    assert res.status_code == 400
    assert fake.calls == []


def test_request_timeout_header_shortens_the_deadline(client):
    fake = _use(_order(OrderStatus.COMPLETED))

    client.post("/api/checkout", json=VALID_BODY, headers={"X-Request-Timeout-Ms": "250"})
    client.post("/api/checkout", json=VALID_BODY, headers={"X-Request-Timeout-Ms": "600000"})

    short, capped = (deadline.remaining() for _, deadline in fake.calls)
    assert short <= 0.25
    assert 0.25 < capped <= 10.0


def test_healthz(client):
    res = client.get("/healthz")

    assert res.status_code == 200
    assert res.json() == {"status": "ok"}
