from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError
from typing import Any, Callable

import httpx
from opentelemetry import metrics, trace
from opentelemetry.trace import Span, Status, StatusCode

from shopsim.checkout.aggregator import aggregate
from shopsim.checkout.background import BackgroundDispatcher
from shopsim.checkout.clients import CheckoutClients
from shopsim.checkout.deadline import Deadline
from shopsim.checkout.models import (
    DEADLINE_EXCEEDED,
    TIMEOUT,
    ZERO,
    CheckoutRequest,
    Failure,
    FailureKind,
    LineItem,
    Order,
    OrderContext,
    OrderStatus,
    StepOutcome,
    Success,
    to_money,
)
from shopsim.core.canonical import sha256_hex
from shopsim.core.config import Settings, get_settings
from shopsim.core.observability import ObservabilityHandle, bind_context

logger = logging.getLogger(__name__)

StepCall = Callable[[float], StepOutcome]

# Steps 2-5; anything not started when the deadline passes is recorded as skipped.
SEQUENTIAL_STEPS = (
    ("conversion", "currency"),
    ("payment", "payment"),
    ("fraud", "fraud_detection"),
    ("shipment", "shipping"),
)

_EVENT_TYPES = {
    OrderStatus.COMPLETED: "OrderCompleted",
    OrderStatus.COMPLETED_WITH_WARNINGS: "OrderCompleted",
    OrderStatus.PAYMENT_FAILED: "OrderPaymentFailed",
    OrderStatus.REJECTED: "OrderRejected",
}


def accounting_event(order: Order) -> dict[str, Any]:
    return {
        "event_id": f"evt-{order.order_id}",
        "event_type": _EVENT_TYPES[order.status],
        "order_id": order.order_id,
        "user_id": order.user_id,
        "status": order.status.value,
        "reason": order.reason,
        "total": order.total,
        "currency": order.currency,
        "settlement_total": order.settlement_total,
        "settlement_currency": order.settlement_currency,
        "transaction_id": order.transaction_id,
        "warning_count": len(order.warnings),
        "order_hash": sha256_hex(order),
    }


class CheckoutOrchestrator:
    """Drives one checkout through pricing, conversion, payment, fraud and shipment.

    Fatal failures (catalog miss, payment failure, fraud flag, deadline) stop
    the sequence; tolerable ones become warnings. Nothing is retried. Email,
    accounting, cart emptying and payment reversal are handed to the
    background dispatcher and never delay the returned order.
    """

    def __init__(
        self,
        clients: CheckoutClients,
        dispatcher: BackgroundDispatcher,
        settings: Settings | None = None,
        observability: ObservabilityHandle | None = None,
    ):
        self.clients = clients
        self.dispatcher = dispatcher
        self.settings = settings or get_settings()
        if observability is not None:
            self.tracer = observability.tracer
            meter = observability.meter
        else:
            self.tracer = trace.get_tracer(__name__)
            meter = metrics.get_meter(__name__)
        self._orders = meter.create_counter("checkout.orders", unit="1", description="Checkouts by final order status")
        self._duration = meter.create_histogram("checkout.duration", unit="s", description="Checkout latency")

    def checkout(self, request: CheckoutRequest, deadline: Deadline | None = None) -> Order:
        deadline = deadline or Deadline.after(self.settings.checkout_deadline_seconds)
        ctx = OrderContext.start(request, self.settings.settlement_currency)
        started = time.monotonic()

        attributes = {
            "app.order.id": ctx.order_id,
            "app.user.id": request.user_id,
            "app.order.items.count": len(request.items),
            "app.currency": request.currency,
        }
        with self.tracer.start_as_current_span("checkout", attributes=attributes) as span:
            self._run_steps(ctx, deadline)
            order = aggregate(ctx)

            span.set_attribute("checkout.order_status", order.status.value)
            span.set_attribute("checkout.warning_count", len(order.warnings))
            if order.reason:
                span.set_attribute("checkout.order_reason", order.reason)
            if not order.is_completed:
                span.set_status(Status(StatusCode.ERROR, order.reason or order.status.value))

            self._dispatch_follow_ups(ctx, order)

        elapsed = time.monotonic() - started
        self._orders.add(1, {"status": order.status.value})
        self._duration.record(elapsed, {"status": order.status.value})
        logger.info(
            "checkout finished: order_id=%s status=%s reason=%s total=%s %s warnings=%d duration_ms=%d",
            order.order_id,
            order.status.value,
            order.reason,
            order.total,
            order.currency,
            len(order.warnings),
            int(elapsed * 1000),
        )
        return order

    def _run_steps(self, ctx: OrderContext, deadline: Deadline) -> None:
        proceed = self._resolve_prices(ctx, deadline)
        if proceed:
            proceed = self._convert_total(ctx, deadline)
        if proceed:
            proceed = self._charge(ctx, deadline)
        if proceed:
            proceed = self._check_fraud(ctx, deadline)
        if proceed:
            self._dispatch_shipment(ctx, deadline)

        if any(f.kind is FailureKind.DEADLINE_EXCEEDED for f in ctx.failures):
            for step, collaborator in SEQUENTIAL_STEPS:
                if ctx.outcome(step) is None:
                    skipped = Failure(DEADLINE_EXCEEDED, retryable=True, message=f"{step} skipped: checkout deadline exceeded")
                    self._record(ctx, step, collaborator, skipped, tolerable=step == "shipment")

    def _record(self, ctx: OrderContext, step: str, collaborator: str, outcome: StepOutcome, **kwargs: bool) -> StepOutcome:
        ctx.record(step, collaborator, outcome, **kwargs)
        if isinstance(outcome, Failure):
            logger.warning(
                "checkout step failed: order_id=%s step=%s collaborator=%s reason=%s retryable=%s message=%s",
                ctx.order_id,
                step,
                collaborator,
                outcome.reason,
                outcome.retryable,
                outcome.message,
            )
        return outcome

    def _call(
        self,
        step: str,
        collaborator: str,
        timeout: float,
        deadline: Deadline,
        call: StepCall,
        attributes: dict[str, Any] | None = None,
    ) -> StepOutcome:
        if deadline.expired():
            return Failure(DEADLINE_EXCEEDED, retryable=True, message=f"{step} skipped: checkout deadline exceeded")

        span_attributes = {"peer.service": collaborator, **(attributes or {})}
        with self.tracer.start_as_current_span(f"checkout.{step}", attributes=span_attributes) as span:
            outcome = call(deadline.clamp(timeout))
            if isinstance(outcome, Failure) and outcome.reason == TIMEOUT and deadline.expired():
                outcome = Failure(DEADLINE_EXCEEDED, retryable=True, message=outcome.message)
            self._annotate(span, outcome)
        return outcome

    @staticmethod
    def _annotate(span: Span, outcome: StepOutcome) -> None:
        span.set_attribute("checkout.step.ok", outcome.ok)
        if isinstance(outcome, Failure):
            span.set_attribute("checkout.step.failure_reason", outcome.reason)
            span.set_attribute("checkout.step.retryable", outcome.retryable)
            span.set_status(Status(StatusCode.ERROR, outcome.message or outcome.reason))

    @staticmethod
    def _join(future: Future, deadline: Deadline) -> StepOutcome:
        try:
            return future.result(timeout=deadline.remaining())
        except TimeoutError:
            future.cancel()
            return Failure(DEADLINE_EXCEEDED, retryable=True, message="cancelled: checkout deadline exceeded")

    # Step 1: catalog prices and shipping quote, fanned out and joined.
    def _resolve_prices(self, ctx: OrderContext, deadline: Deadline) -> bool:
        request = ctx.request
        catalog, shipping = self.clients.catalog, self.clients.shipping
        product_ids = list(dict.fromkeys(item.product_id for item in request.items))

        def price_call(product_id: str) -> StepCall:
            return lambda timeout: catalog.get_price(product_id, request.currency, timeout=timeout)

        def quote_call(timeout: float) -> StepOutcome:
            return shipping.quote(request.address, request.items, request.currency, timeout=timeout)

        pool = ThreadPoolExecutor(max_workers=len(product_ids) + 1, thread_name_prefix="checkout-fanout")
        try:
            price_futures = {
                product_id: pool.submit(
                    bind_context(self._call),
                    "catalog",
                    "catalog",
                    catalog.timeout,
                    deadline,
                    price_call(product_id),
                    {"app.product.id": product_id},
                )
                for product_id in product_ids
            }
            quote_future = pool.submit(bind_context(self._call), "quote", "shipping", shipping.timeout, deadline, quote_call)

            prices = {product_id: self._join(future, deadline) for product_id, future in price_futures.items()}
            quote = self._join(quote_future, deadline)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        catalog_outcome = self._combine_prices(prices)
        self._record(ctx, "catalog", "catalog", catalog_outcome, tolerable=False)
        self._record(ctx, "quote", "shipping", quote, tolerable=True)
        if isinstance(catalog_outcome, Failure):
            return False

        unit_prices = catalog_outcome.payload["prices"]
        ctx.line_items = [
            LineItem(
                product_id=item.product_id,
                quantity=item.quantity,
                unit_price=unit_prices[item.product_id],
                line_total=to_money(unit_prices[item.product_id] * item.quantity),
            )
            for item in request.items
        ]
        ctx.subtotal = sum((line.line_total for line in ctx.line_items), ZERO)

        if isinstance(quote, Success):
            ctx.shipping_cost = quote.payload["cost"]
            return True
        if quote.reason == DEADLINE_EXCEEDED:
            return False
        ctx.shipping_cost = to_money(self.settings.placeholder_shipping_cost)
        return True

    @staticmethod
    def _combine_prices(prices: dict[str, StepOutcome]) -> StepOutcome:
        failures = [(product_id, o) for product_id, o in prices.items() if isinstance(o, Failure)]
        if not failures:
            return Success({"prices": {product_id: o.payload["price"] for product_id, o in prices.items()}})

        for product_id, failure in failures:
            if failure.reason == "not_found":
                return Failure("catalog_miss", message=f"product {product_id} not found in catalog")

        product_id, failure = failures[0]
        if failure.reason == DEADLINE_EXCEEDED:
            return failure
        return Failure(
            "catalog_unavailable",
            retryable=failure.retryable,
            message=f"price lookup for {product_id} failed: {failure.reason} {failure.message}".strip(),
        )

    # Step 2
    def _convert_total(self, ctx: OrderContext, deadline: Deadline) -> bool:
        request = ctx.request
        if request.currency == ctx.settlement_currency:
            ctx.settlement_total = ctx.total
            self._record(ctx, "conversion", "currency", Success({"amount": ctx.total, "currency": request.currency}), tolerable=True)
            return True

        currency = self.clients.currency
        outcome = self._call(
            "conversion",
            "currency",
            currency.timeout,
            deadline,
            lambda timeout: currency.convert(ctx.total, request.currency, ctx.settlement_currency, timeout=timeout),
        )
        self._record(ctx, "conversion", "currency", outcome, tolerable=True)
        if isinstance(outcome, Success):
            ctx.settlement_total = outcome.payload["amount"]
            return True
        return outcome.reason != DEADLINE_EXCEEDED

    # Step 3
    def _charge(self, ctx: OrderContext, deadline: Deadline) -> bool:
        request = ctx.request
        payment = self.clients.payment
        amount, currency = ctx.charge_amount()
        outcome = self._call(
            "payment",
            "payment",
            payment.timeout,
            deadline,
            lambda timeout: payment.charge(ctx.order_id, amount, currency, request.payment_token, timeout=timeout),
            {"app.payment.amount": str(amount), "app.payment.currency": currency},
        )
        self._record(ctx, "payment", "payment", outcome, tolerable=False)
        return isinstance(outcome, Success)

    # Step 4
    def _check_fraud(self, ctx: OrderContext, deadline: Deadline) -> bool:
        request = ctx.request
        fraud = self.clients.fraud_detection
        amount, currency = ctx.charge_amount()
        outcome = self._call(
            "fraud",
            "fraud_detection",
            fraud.timeout,
            deadline,
            lambda timeout: fraud.check(ctx.order_id, request.user_id, amount, currency, timeout=timeout),
        )
        self._record(ctx, "fraud", "fraud_detection", outcome, tolerable=True)

        if isinstance(outcome, Success) and outcome.payload.get("flagged"):
            logger.warning(
                "order flagged by fraud detection: order_id=%s reasons=%s",
                ctx.order_id,
                outcome.payload.get("reasons"),
            )
            self._reverse_payment(ctx)
            return False
        if isinstance(outcome, Failure) and outcome.reason == DEADLINE_EXCEEDED:
            self._reverse_payment(ctx)
            return False
        return True

    # Step 5
    def _dispatch_shipment(self, ctx: OrderContext, deadline: Deadline) -> None:
        request = ctx.request
        shipping = self.clients.shipping
        outcome = self._call(
            "shipment",
            "shipping",
            shipping.timeout,
            deadline,
            lambda timeout: shipping.ship(ctx.order_id, request.address, request.items, timeout=timeout),
        )
        self._record(ctx, "shipment", "shipping", outcome, tolerable=True, deadline_fatal=False)

    def _background(self, step: str, collaborator: str, timeout: float, call: StepCall) -> Callable[[], StepOutcome]:
        def run() -> StepOutcome:
            with self.tracer.start_as_current_span(f"checkout.{step}", attributes={"peer.service": collaborator}) as span:
                outcome = call(timeout)
                self._annotate(span, outcome)
            return outcome

        return run

    def _submit(self, order_id: str, step: str, collaborator: str, timeout: float, call: StepCall) -> None:
        # Outcomes reach only logs and spans; the order context is final once aggregated.
        self.dispatcher.submit(f"{step}:{order_id}", self._background(step, collaborator, timeout, call))

    def _reverse_payment(self, ctx: OrderContext) -> None:
        charge = ctx.outcome("payment")
        if not isinstance(charge, Success):
            return
        transaction_id = charge.payload["transaction_id"]
        payment = self.clients.payment
        logger.warning("reversing charge: order_id=%s transaction_id=%s", ctx.order_id, transaction_id)
        self._submit(
            ctx.order_id,
            "reversal",
            "payment",
            self.settings.reversal_timeout_seconds,
            lambda timeout: payment.reverse(transaction_id, timeout=timeout),
        )

    # Steps 6-7 (and cart emptying): fire-and-forget.
    def _dispatch_follow_ups(self, ctx: OrderContext, order: Order) -> None:
        request = ctx.request
        clients = self.clients

        if order.is_completed and request.email:
            email = request.email
            self._submit(ctx.order_id, "email", "email", clients.email.timeout, lambda timeout: clients.email.send(email, order, timeout=timeout))

        event = accounting_event(order)
        self._submit(
            ctx.order_id,
            "accounting",
            "accounting",
            clients.accounting.timeout,
            lambda timeout: clients.accounting.publish(event, timeout=timeout),
        )

        if order.is_completed:
            self._submit(ctx.order_id, "cart", "cart", clients.cart.timeout, lambda timeout: clients.cart.empty_cart(request.user_id, timeout=timeout))


def build_orchestrator(
    settings: Settings | None = None,
    observability: ObservabilityHandle | None = None,
    dispatcher: BackgroundDispatcher | None = None,
    transport: httpx.BaseTransport | None = None,
) -> CheckoutOrchestrator:
    settings = settings or get_settings()
    return CheckoutOrchestrator(
        clients=CheckoutClients.from_settings(settings, transport=transport),
        dispatcher=dispatcher or BackgroundDispatcher(max_workers=settings.background_workers),
        settings=settings,
        observability=observability,
    )
