from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from shopsim.api.tracing import install_tracing
from shopsim.core.config import get_settings
from shopsim.services.failure import FailurePolicy, policy_from_rate

logger = logging.getLogger(__name__)

DECLINED_TOKENS = {"tok_decline", "tok_insufficient_funds"}


class ChargeRequest(BaseModel):
    order_id: str = Field(min_length=1)
    amount: Decimal = Field(ge=0)
    currency: str = Field(pattern="^[A-Z]{3}$")
    token: str = Field(min_length=1)


class ReverseRequest(BaseModel):
    transaction_id: str = Field(min_length=1)


class ChargeBook:
    def __init__(self):
        self.lock = threading.Lock()
        self.charges: dict[str, dict] = {}

    def record(self, request: ChargeRequest) -> dict:
        with self.lock:
            transaction_id = f"txn-{uuid4().hex[:16]}"
            row = {
                "transaction_id": transaction_id,
                "order_id": request.order_id,
                "amount": format(request.amount, "f"),
                "currency": request.currency,
                "status": "captured",
                "captured_at": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            }
            self.charges[transaction_id] = row
            return dict(row)

    def reverse(self, transaction_id: str) -> dict | None:
        with self.lock:
            row = self.charges.get(transaction_id)
            if row is None:
                return None
            row["status"] = "reversed"
            return dict(row)


def create_app(failure_policy: FailurePolicy | None = None) -> FastAPI:
    settings = get_settings()
    policy = failure_policy or policy_from_rate(settings.payment_failure_rate, settings.payment_failure_seed)
    book = ChargeBook()
    app = FastAPI(title="Payment Service", version=settings.service_version)
    app.state.book = book
    app.state.failure_policy = policy
    install_tracing(app, "payment", settings)

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok", "service": "payment", "charges": len(book.charges)}

    @app.post("/charge")
    def charge(request: ChargeRequest) -> dict:
        if request.token in DECLINED_TOKENS:
            raise HTTPException(status_code=402, detail=f"card declined: {request.token}")
        if policy.should_fail():
            logger.info("simulated payment failure: order_id=%s", request.order_id)
            raise HTTPException(status_code=402, detail="payment processor declined the charge")
        row = book.record(request)
        logger.info("charged: order_id=%s transaction_id=%s amount=%s %s", request.order_id, row["transaction_id"], row["amount"], row["currency"])
        return row

    @app.post("/reverse")
    def reverse(request: ReverseRequest) -> dict:
        row = book.reverse(request.transaction_id)
        if row is None:
            raise HTTPException(status_code=404, detail=f"unknown transaction: {request.transaction_id}")
        return {"transaction_id": request.transaction_id, "reversed": True}

    return app


app = create_app()
