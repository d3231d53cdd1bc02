from __future__ import annotations

import threading

from fastapi import FastAPI
from pydantic import BaseModel, Field

from shopsim.api.tracing import install_tracing
from shopsim.core.config import get_settings


class AddItemRequest(BaseModel):
    product_id: str = Field(min_length=1)
    quantity: int = Field(gt=0)


class CartStore:
    def __init__(self):
        self.lock = threading.Lock()
        self.carts: dict[str, dict[str, int]] = {}

    def add(self, user_id: str, product_id: str, quantity: int) -> list[dict]:
        with self.lock:
            cart = self.carts.setdefault(user_id, {})
            cart[product_id] = cart.get(product_id, 0) + quantity
            return self._items(cart)

    def get(self, user_id: str) -> list[dict]:
        with self.lock:
            return self._items(self.carts.get(user_id, {}))

    def empty(self, user_id: str) -> bool:
        with self.lock:
            return self.carts.pop(user_id, None) is not None

    @staticmethod
    def _items(cart: dict[str, int]) -> list[dict]:
        return [{"product_id": product_id, "quantity": quantity} for product_id, quantity in cart.items()]


store = CartStore()
app = FastAPI(title="Cart Service", version=get_settings().service_version)
install_tracing(app, "cart")


@app.get("/health")
def health() -> dict:
    return {"status": "ok", "service": "cart", "carts": len(store.carts)}


@app.get("/carts/{user_id}")
def get_cart(user_id: str) -> dict:
    return {"user_id": user_id, "items": store.get(user_id)}


@app.post("/carts/{user_id}/items")
def add_item(user_id: str, request: AddItemRequest) -> dict:
    return {"user_id": user_id, "items": store.add(user_id, request.product_id, request.quantity)}


@app.delete("/carts/{user_id}")
def empty_cart(user_id: str) -> dict:
    return {"user_id": user_id, "emptied": store.empty(user_id)}
