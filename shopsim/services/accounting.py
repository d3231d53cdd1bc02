from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import Depends, FastAPI
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from shopsim.core.canonical import sha256_hex
from shopsim.api.tracing import install_tracing
from shopsim.core.config import get_settings
from shopsim.persistence.db import get_session, init_db
from shopsim.persistence.models import AccountingEntryModel

logger = logging.getLogger(__name__)


class OrderEvent(BaseModel):
    event_id: str = Field(min_length=1)
    event_type: str = Field(pattern="^(OrderCompleted|OrderRejected|OrderPaymentFailed)$")
    order_id: str = Field(min_length=1)
    user_id: str
    status: str
    reason: str | None = None
    total: str
    currency: str
    settlement_total: str | None = None
    settlement_currency: str | None = None
    transaction_id: str | None = None
    warning_count: int = 0
    order_hash: str | None = None


def _entry_dict(row: AccountingEntryModel) -> dict[str, Any]:
    return {
        "seq_id": row.seq_id,
        "event_id": row.event_id,
        "event_type": row.event_type,
        "order_id": row.order_id,
        "status": row.status,
        "total": row.total,
        "currency": row.currency,
        "transaction_id": row.transaction_id,
        "event_hash": row.event_hash,
        "received_at": row.received_at.isoformat(),
    }


app = FastAPI(title="Accounting Service", version=get_settings().service_version)
install_tracing(app, "accounting")


@app.on_event("startup")
def on_startup() -> None:
    init_db()


@app.get("/health")
def health() -> dict:
    return {"status": "ok", "service": "accounting"}


@app.post("/events")
def record_event(event: OrderEvent, session: Session = Depends(get_session)) -> dict:
    existing = session.execute(
        select(AccountingEntryModel).where(AccountingEntryModel.event_id == event.event_id)
    ).scalar_one_or_none()
    if existing is not None:
        return {**_entry_dict(existing), "duplicate": True}

    payload = event.model_dump()
    row = AccountingEntryModel(
        event_id=event.event_id,
        event_type=event.event_type,
        order_id=event.order_id,
        status=event.status,
        total=event.total,
        currency=event.currency,
        transaction_id=event.transaction_id,
        payload=payload,
        event_hash=sha256_hex(payload),
        received_at=datetime.now(timezone.utc),
    )
    session.add(row)
    session.flush()
    logger.info("order event booked: order_id=%s type=%s total=%s %s", event.order_id, event.event_type, event.total, event.currency)
    return {**_entry_dict(row), "duplicate": False}


@app.get("/orders/{order_id}/events")
def order_events(order_id: str, session: Session = Depends(get_session)) -> dict:
    rows = session.execute(
        select(AccountingEntryModel)
        .where(AccountingEntryModel.order_id == order_id)
        .order_by(AccountingEntryModel.seq_id)
    ).scalars()
    return {"order_id": order_id, "events": [_entry_dict(row) for row in rows]}
