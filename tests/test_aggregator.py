from __future__ import annotations

from datetime import datetime
from decimal import Decimal

import pytest

from shopsim.checkout import OrderContext, OrderStatus, aggregate, derive_status
from shopsim.checkout.models import DEADLINE_EXCEEDED, Failure, FailureKind, LineItem, Success
from shopsim.core.canonical import CanonicalError, canonical_json


@pytest.fixture()
def ctx(make_request) -> OrderContext:
    context = OrderContext.start(make_request(), settlement_currency="USD")
    context.line_items = [LineItem(product_id="A", quantity=2, unit_price=Decimal("10.00"), line_total=Decimal("20.00"))]
    context.subtotal = Decimal("20.00")
    context.shipping_cost = Decimal("5.00")
    context.record("catalog", "catalog", Success({"prices": {"A": Decimal("10.00")}}), tolerable=False)
    context.record("quote", "shipping", Success({"cost": Decimal("5.00")}), tolerable=True)
    return context


def _complete(ctx: OrderContext) -> None:
    ctx.settlement_total = ctx.total
    ctx.record("conversion", "currency", Success({"amount": ctx.total}), tolerable=True)
    ctx.record("payment", "payment", Success({"transaction_id": "txn-9"}), tolerable=False)
    ctx.record("fraud", "fraud_detection", Success({"flagged": False}), tolerable=True)
    ctx.record("shipment", "shipping", Success({"tracking_id": "trk-9"}), tolerable=True, deadline_fatal=False)


def test_aggregate_is_deterministic(ctx):
    _complete(ctx)

    first = aggregate(ctx)
    second = aggregate(ctx)

    assert first == second
    assert first.canonical_json() == second.canonical_json()
    assert b'"total":"25.00"' in first.canonical_json()


def test_completed_order_fields(ctx):
    _complete(ctx)

    order = aggregate(ctx)

    assert order.status is OrderStatus.COMPLETED
    assert order.total == Decimal("25.00")
    assert order.transaction_id == "txn-9"
    assert order.tracking_id == "trk-9"
    assert order.order_id == ctx.order_id


def test_payment_failure_outranks_everything(ctx):
    ctx.record("payment", "payment", Failure("payment_declined"), tolerable=False)
    ctx.record("fraud", "fraud_detection", Success({"flagged": True}), tolerable=True)

    assert derive_status(ctx) == (OrderStatus.PAYMENT_FAILED, "payment_declined")


def test_fraud_flag_outranks_catalog_and_warnings(ctx):
    ctx.outcomes.pop("catalog")
    ctx.record("catalog", "catalog", Failure("catalog_miss"), tolerable=False)
    ctx.record("payment", "payment", Success({"transaction_id": "txn-9"}), tolerable=False)
    ctx.record("fraud", "fraud_detection", Success({"flagged": True}), tolerable=True)
    ctx.record("shipment", "shipping", Failure("unavailable", retryable=True), tolerable=True, deadline_fatal=False)

    assert derive_status(ctx) == (OrderStatus.REJECTED, "fraud_flagged")


def test_deadline_before_shipment_rejects(ctx):
    ctx.record("payment", "payment", Success({"transaction_id": "txn-9"}), tolerable=False)
    ctx.record("fraud", "fraud_detection", Failure(DEADLINE_EXCEEDED, retryable=True), tolerable=True)

    order = aggregate(ctx)

    assert ctx.failures[-1].kind is FailureKind.DEADLINE_EXCEEDED
    assert order.status is OrderStatus.REJECTED
    assert order.reason == DEADLINE_EXCEEDED
    assert order.total == Decimal("0.00")
    assert order.warnings == ()


def test_deadline_on_shipment_is_only_a_warning(ctx):
    _complete_until_shipment(ctx)
    ctx.record("shipment", "shipping", Failure(DEADLINE_EXCEEDED, retryable=True), tolerable=True, deadline_fatal=False)

    order = aggregate(ctx)

    assert order.status is OrderStatus.COMPLETED_WITH_WARNINGS
    assert order.warnings[0].reason == DEADLINE_EXCEEDED
    assert order.warnings[0].retryable is True


def _complete_until_shipment(ctx: OrderContext) -> None:
    ctx.settlement_total = ctx.total
    ctx.record("conversion", "currency", Success({"amount": ctx.total}), tolerable=True)
    ctx.record("payment", "payment", Success({"transaction_id": "txn-9"}), tolerable=False)
    ctx.record("fraud", "fraud_detection", Success({"flagged": False}), tolerable=True)


def test_a_step_is_recorded_once(ctx):
    with pytest.raises(ValueError):
        ctx.record("quote", "shipping", Failure("timeout", retryable=True), tolerable=True)


def test_canonical_json_accepts_only_order_payload_types():
    assert canonical_json({"b": Decimal("1.50"), "a": [OrderStatus.COMPLETED, None]}) == b'{"a":["Completed",null],"b":"1.50"}'

    for unsupported in (1.5, datetime(2024, 1, 1), {"amount": 0.1}):
        with pytest.raises(CanonicalError):
            canonical_json(unsupported)
