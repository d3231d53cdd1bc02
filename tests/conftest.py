from __future__ import annotations

import threading
from decimal import Decimal
from pathlib import Path
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import shopsim.persistence.db as db
from shopsim.checkout import BackgroundDispatcher, CheckoutClients, CheckoutOrchestrator, CheckoutRequest
from shopsim.checkout.models import Failure, Success
from shopsim.core.config import Settings, get_settings
from shopsim.persistence.models import Base

PRICES = {"A": Decimal("10.00"), "B": Decimal("3.50")}


class FakeCollaborator:
    """Stands in for a service client; records every call and replays canned outcomes."""

    def __init__(self, collaborator: str, timeout: float = 1.0, **responses):
        self.collaborator = collaborator
        self.timeout = timeout
        self.responses = responses
        self.calls: list[tuple[str, tuple, dict]] = []
        self._lock = threading.Lock()

    def __getattr__(self, name: str):
        responses = self.__dict__.get("responses", {})
        if name.startswith("_") or name not in responses:
            raise AttributeError(name)

        def method(*args, timeout=None, **kwargs):
            with self._lock:
                self.calls.append((name, args, kwargs))
            response = self.responses[name]
            return response(*args, **kwargs) if callable(response) else response

        return method

    def count(self, name: str) -> int:
        with self._lock:
            return sum(1 for call in self.calls if call[0] == name)


def _catalog_price(product_id: str, currency: str):
    if product_id not in PRICES:
        return Failure("not_found", message=f"catalog answered 404: product not found: {product_id}")
    return Success({"product_id": product_id, "price": PRICES[product_id], "currency": currency})


@pytest.fixture(scope="session")
def test_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    return tmp_path_factory.mktemp("db") / "accounting.sqlite"


@pytest.fixture(scope="session", autouse=True)
def configure_test_engine(test_db_path: Path):
    settings = get_settings()
    settings.otel_exporter = "none"

    engine = create_engine(
        f"sqlite+pysqlite:///{test_db_path}",
        future=True,
        connect_args={"check_same_thread": False},
    )
    TestSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)

    db.engine = engine
    db.SessionLocal = TestSessionLocal

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        settlement_currency="USD",
        placeholder_shipping_cost=Decimal("7.50"),
        checkout_deadline_seconds=5.0,
        reversal_timeout_seconds=0.5,
        background_workers=2,
    )


@pytest.fixture()
def collaborators() -> SimpleNamespace:
    return SimpleNamespace(
        catalog=FakeCollaborator("catalog", get_price=_catalog_price),
        shipping=FakeCollaborator(
            "shipping",
            quote=Success({"cost": Decimal("5.00"), "currency": "USD"}),
            ship=Success({"tracking_id": "trk-001"}),
        ),
        currency=FakeCollaborator(
            "currency",
            convert=lambda amount, from_currency, to_currency: Success(
                {"amount": (amount * 2).quantize(Decimal("0.01")), "currency": to_currency}
            ),
        ),
        payment=FakeCollaborator(
            "payment",
            charge=Success({"transaction_id": "txn-001"}),
            reverse=Success({"reversed": True}),
        ),
        fraud_detection=FakeCollaborator("fraud_detection", check=Success({"flagged": False, "reasons": []})),
        email=FakeCollaborator("email", send=Success({"accepted": True})),
        accounting=FakeCollaborator("accounting", publish=Success({"event_id": "evt-1", "event_hash": "0" * 64})),
        cart=FakeCollaborator("cart", empty_cart=Success({"user_id": "u-1", "emptied": True})),
    )


@pytest.fixture()
def dispatcher():
    pool = BackgroundDispatcher(max_workers=2)
    yield pool
    pool.shutdown(timeout=5.0)


@pytest.fixture()
def orchestrator(collaborators, dispatcher, settings) -> CheckoutOrchestrator:
    clients = CheckoutClients(**vars(collaborators))
    return CheckoutOrchestrator(clients=clients, dispatcher=dispatcher, settings=settings)


@pytest.fixture()
def make_request():
    def build(**overrides) -> CheckoutRequest:
        body = {
            "user_id": "u-1",
            "items": [{"product_id": "A", "quantity": 2}],
            "address": {
                "street_address": "1 Main St",
                "city": "Springfield",
                "state": "IL",
                "country": "US",
                "zip_code": "62701",
            },
            "payment_token": "tok_visa",
            "currency": "USD",
            "email": "buyer@example.com",
        }
        body.update(overrides)
        return CheckoutRequest.model_validate(body)

    return build


@pytest.fixture()
def client():
    from shopsim.main import app

    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
