from __future__ import annotations

from decimal import Decimal

from fastapi import FastAPI, HTTPException, Query

from shopsim.api.tracing import install_tracing
from shopsim.core.config import get_settings
from shopsim.services.currency import UnsupportedCurrency, convert_amount

# Prices in the catalog base currency.
PRODUCTS: dict[str, dict] = {
    "OLJCESPC7Z": {"name": "National Park Foundation Explorascope", "price": Decimal("101.96")},
    "66VCHSJNUP": {"name": "Starsense Explorer Refractor Telescope", "price": Decimal("349.95")},
    "1YMWWN1N4O": {"name": "Eclipsmart Travel Refractor Telescope", "price": Decimal("129.95")},
    "L9ECAV7KIM": {"name": "Lens Cleaning Kit", "price": Decimal("21.95")},
    "2ZYFJ3GM2N": {"name": "Roof Binoculars", "price": Decimal("209.95")},
    "0PUK6V6EV0": {"name": "Solar System Color Imager", "price": Decimal("175.00")},
    "LS4PSXUNUM": {"name": "Red Flashlight", "price": Decimal("57.80")},
    "9SIQT8TOJO": {"name": "Optical Tube Assembly", "price": Decimal("3599.00")},
    "6E92ZMYYFZ": {"name": "Solar Filter", "price": Decimal("62.95")},
    "HQTGWGPNH4": {"name": "The Comet Book", "price": Decimal("0.99")},
}

settings = get_settings()
app = FastAPI(title="Product Catalog Service", version=settings.service_version)
install_tracing(app, "product-catalog")


def _priced(product_id: str, currency: str) -> dict:
    product = PRODUCTS[product_id]
    base = settings.catalog_base_currency
    price = product["price"] if currency == base else convert_amount(product["price"], base, currency)
    return {"product_id": product_id, "name": product["name"], "price": format(price, "f"), "currency": currency}


@app.get("/health")
def health() -> dict:
    return {"status": "ok", "service": "product-catalog", "products": len(PRODUCTS)}


@app.get("/products")
def list_products(currency: str | None = Query(default=None)) -> dict:
    target = currency or settings.catalog_base_currency
    try:
        return {"products": [_priced(product_id, target) for product_id in sorted(PRODUCTS)]}
    except UnsupportedCurrency as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/products/{product_id}")
def get_product(product_id: str, currency: str | None = Query(default=None)) -> dict:
    if product_id not in PRODUCTS:
        raise HTTPException(status_code=404, detail=f"product not found: {product_id}")
    try:
        return _priced(product_id, currency or settings.catalog_base_currency)
    except UnsupportedCurrency as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
