from __future__ import annotations

from shopsim.checkout.models import (
    DEADLINE_EXCEEDED,
    ZERO,
    Failure,
    FailureKind,
    Order,
    OrderContext,
    OrderStatus,
    OrderWarning,
    Success,
)

_STEP_NOTES = {
    "quote": "shipping quote unavailable; placeholder shipping cost applied",
    "conversion": "total not converted to settlement currency",
    "fraud": "fraud check not performed",
    "shipment": "shipment not dispatched; must be retried out of band",
}


def derive_status(ctx: OrderContext) -> tuple[OrderStatus, str | None]:
    """First match wins: payment, fraud, catalog, deadline, warnings."""
    payment = ctx.outcome("payment")
    if isinstance(payment, Failure) and payment.reason != DEADLINE_EXCEEDED:
        return OrderStatus.PAYMENT_FAILED, payment.reason

    fraud = ctx.outcome("fraud")
    if isinstance(fraud, Success) and fraud.payload.get("flagged"):
        return OrderStatus.REJECTED, "fraud_flagged"

    catalog = ctx.outcome("catalog")
    if isinstance(catalog, Failure) and catalog.reason != DEADLINE_EXCEEDED:
        return OrderStatus.REJECTED, catalog.reason

    if any(f.kind is FailureKind.DEADLINE_EXCEEDED for f in ctx.failures):
        return OrderStatus.REJECTED, DEADLINE_EXCEEDED

    if any(f.kind is FailureKind.TOLERABLE for f in ctx.failures):
        return OrderStatus.COMPLETED_WITH_WARNINGS, None
    return OrderStatus.COMPLETED, None


def _payload_value(ctx: OrderContext, step: str, key: str) -> str | None:
    outcome = ctx.outcome(step)
    if isinstance(outcome, Success):
        value = outcome.payload.get(key)
        return str(value) if value is not None else None
    return None


def aggregate(ctx: OrderContext) -> Order:
    status, reason = derive_status(ctx)
    completed = status in (OrderStatus.COMPLETED, OrderStatus.COMPLETED_WITH_WARNINGS)

    warnings = tuple(
        OrderWarning(
            step=f.step,
            collaborator=f.collaborator,
            reason=f.reason,
            retryable=f.retryable,
            message="; ".join(part for part in (_STEP_NOTES.get(f.step), f.message) if part),
        )
        for f in ctx.failures
        if f.kind is FailureKind.TOLERABLE
    )

    conversion = ctx.outcome("conversion")
    converted = completed and isinstance(conversion, Success) and ctx.settlement_total is not None

    return Order(
        order_id=ctx.order_id,
        status=status,
        reason=reason,
        user_id=ctx.request.user_id,
        currency=ctx.request.currency,
        items=tuple(ctx.line_items),
        subtotal=ctx.subtotal or ZERO,
        shipping_cost=ctx.shipping_cost or ZERO,
        total=ctx.total if completed else ZERO,
        settlement_total=(ctx.settlement_total if converted else ctx.total) if completed else ZERO,
        settlement_currency=ctx.settlement_currency if converted else ctx.request.currency,
        converted=converted,
        transaction_id=_payload_value(ctx, "payment", "transaction_id"),
        tracking_id=_payload_value(ctx, "shipment", "tracking_id"),
        warnings=warnings,
    )
