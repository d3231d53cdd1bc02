from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from shopsim.api.tracing import install_tracing
from shopsim.core.config import get_settings

# Units of each currency per one EUR.
EUR_RATES: dict[str, Decimal] = {
    "EUR": Decimal("1.0"),
    "USD": Decimal("1.1305"),
    "GBP": Decimal("0.85970"),
    "JPY": Decimal("126.40"),
    "CAD": Decimal("1.5128"),
    "CHF": Decimal("1.1360"),
    "INR": Decimal("79.9055"),
    "AUD": Decimal("1.6226"),
}


class UnsupportedCurrency(ValueError):
    pass


def convert_amount(amount: Decimal, from_currency: str, to_currency: str) -> Decimal:
    if from_currency not in EUR_RATES:
        raise UnsupportedCurrency(f"unsupported currency: {from_currency}")
    if to_currency not in EUR_RATES:
        raise UnsupportedCurrency(f"unsupported currency: {to_currency}")
    euros = amount / EUR_RATES[from_currency]
    return (euros * EUR_RATES[to_currency]).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


class ConvertRequest(BaseModel):
    amount: Decimal = Field(ge=0)
    from_currency: str
    to_currency: str


app = FastAPI(title="Currency Service", version=get_settings().service_version)
install_tracing(app, "currency")


@app.get("/health")
def health() -> dict:
    return {"status": "ok", "service": "currency"}


@app.get("/currencies")
def supported_currencies() -> dict:
    return {"currencies": sorted(EUR_RATES)}


@app.post("/convert")
def convert(request: ConvertRequest) -> dict:
    try:
        amount = convert_amount(request.amount, request.from_currency, request.to_currency)
    except UnsupportedCurrency as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"amount": format(amount, "f"), "currency": request.to_currency}
