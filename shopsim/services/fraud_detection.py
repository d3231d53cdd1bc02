from __future__ import annotations

import logging
from decimal import Decimal

from fastapi import FastAPI
from pydantic import BaseModel, Field

from shopsim.api.tracing import install_tracing
from shopsim.core.config import get_settings

logger = logging.getLogger(__name__)


class CheckRequest(BaseModel):
    order_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    amount: Decimal = Field(ge=0)
    currency: str


settings = get_settings()
app = FastAPI(title="Fraud Detection Service", version=settings.service_version)
install_tracing(app, "fraud-detection")


def evaluate(request: CheckRequest) -> list[str]:
    reasons: list[str] = []
    if request.amount > settings.fraud_max_order_total:
        reasons.append("amount_over_limit")
    if request.user_id in settings.fraud_blocked_users:
        reasons.append("blocked_user")
    return reasons


@app.get("/health")
def health() -> dict:
    return {"status": "ok", "service": "fraud-detection"}


@app.post("/check")
def check(request: CheckRequest) -> dict:
    reasons = evaluate(request)
    if reasons:
        logger.warning("order flagged: order_id=%s reasons=%s", request.order_id, ",".join(reasons))
    return {"order_id": request.order_id, "flagged": bool(reasons), "reasons": reasons}
