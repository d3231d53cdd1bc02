from __future__ import annotations

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse

from shopsim.checkout import CheckoutOrchestrator, CheckoutRequest, Deadline, Order, OrderStatus
from shopsim.checkout.models import DEADLINE_EXCEEDED
from shopsim.core.config import Settings, get_settings

router = APIRouter(tags=["checkout"])

STATUS_CODES = {
    OrderStatus.COMPLETED: 200,
    OrderStatus.COMPLETED_WITH_WARNINGS: 200,
    OrderStatus.PAYMENT_FAILED: 402,
    OrderStatus.REJECTED: 409,
}


def get_orchestrator(request: Request) -> CheckoutOrchestrator:
    return request.app.state.orchestrator


def http_status_for(order: Order) -> int:
    if order.status is OrderStatus.REJECTED and order.reason == DEADLINE_EXCEEDED:
        return 504
    return STATUS_CODES[order.status]


@router.post("/api/checkout")
def place_order(
    payload: CheckoutRequest,
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_settings),
    request_timeout_ms: str | None = Header(default=None, alias="X-Request-Timeout-Ms"),
):
    # The server span opened by the tracing middleware is current here.
    deadline = Deadline.from_header(request_timeout_ms, settings.checkout_deadline_seconds)
    order = orchestrator.checkout(payload, deadline=deadline)
    return JSONResponse(status_code=http_status_for(order), content=order.model_dump(mode="json"))
