from __future__ import annotations

import logging
from decimal import Decimal
from uuid import uuid4

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from shopsim.api.tracing import install_tracing
from shopsim.core.config import get_settings
from shopsim.services.currency import UnsupportedCurrency, convert_amount

logger = logging.getLogger(__name__)

BASE_QUOTE_USD = Decimal("5.00")
PER_EXTRA_UNIT_USD = Decimal("1.00")


class Address(BaseModel):
    street_address: str
    city: str
    state: str = ""
    country: str
    zip_code: str


class Item(BaseModel):
    product_id: str
    quantity: int = Field(gt=0)


class QuoteRequest(BaseModel):
    address: Address
    items: list[Item] = Field(min_length=1)
    currency: str = "USD"


class ShipRequest(BaseModel):
    order_id: str = Field(min_length=1)
    address: Address
    items: list[Item] = Field(min_length=1)


def quote_usd(items: list[Item]) -> Decimal:
    units = sum(item.quantity for item in items)
    return BASE_QUOTE_USD + PER_EXTRA_UNIT_USD * max(0, units - 1)


app = FastAPI(title="Shipping Service", version=get_settings().service_version)
install_tracing(app, "shipping")
shipments: dict[str, dict] = {}


@app.get("/health")
def health() -> dict:
    return {"status": "ok", "service": "shipping", "shipments": len(shipments)}


@app.post("/quote")
def quote(request: QuoteRequest) -> dict:
    cost = quote_usd(request.items)
    if request.currency != "USD":
        try:
            cost = convert_amount(cost, "USD", request.currency)
        except UnsupportedCurrency as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"cost": format(cost, "f"), "currency": request.currency}


@app.post("/ship")
def ship(request: ShipRequest) -> dict:
    tracking_id = f"trk-{uuid4().hex[:12]}"
    shipments[tracking_id] = {
        "order_id": request.order_id,
        "country": request.address.country,
        "units": sum(item.quantity for item in request.items),
    }
    logger.info("shipment dispatched: order_id=%s tracking_id=%s", request.order_id, tracking_id)
    return {"tracking_id": tracking_id, "order_id": request.order_id}
