from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone

from fastapi import FastAPI
from pydantic import BaseModel, Field

from shopsim.api.tracing import install_tracing
from shopsim.core.config import get_settings

logger = logging.getLogger(__name__)


class SendRequest(BaseModel):
    email: str = Field(pattern=r"^[^@\s]+@[^@\s]+$")
    order: dict


app = FastAPI(title="Email Service", version=get_settings().service_version)
install_tracing(app, "email")
outbox: list[dict] = []
_outbox_lock = threading.Lock()


@app.get("/health")
def health() -> dict:
    return {"status": "ok", "service": "email", "sent": len(outbox)}


@app.post("/send")
def send_confirmation(request: SendRequest) -> dict:
    order_id = str(request.order.get("order_id", ""))
    message = {
        "to": request.email,
        "subject": f"Your order {order_id} is confirmed",
        "order_id": order_id,
        "sent_at": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
    }
    with _outbox_lock:
        outbox.append(message)
    logger.info("order confirmation sent: order_id=%s", order_id)
    return {"accepted": True, "order_id": order_id}
