from __future__ import annotations

from decimal import Decimal
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

COLLABORATORS = (
    "payment",
    "shipping",
    "catalog",
    "currency",
    "email",
    "cart",
    "accounting",
    "fraud_detection",
)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="SHOP_", extra="ignore")

    app_name: str = "Shop Checkout"
    env: str = "dev"
    service_version: str = "1.0.0"
    log_level: str = "INFO"
    api_host: str = "0.0.0.0"
    api_port: int = 8083

    payment_url: str = "http://localhost:8084"
    payment_timeout_seconds: float = 3.0
    shipping_url: str = "http://localhost:8085"
    shipping_timeout_seconds: float = 2.0
    catalog_url: str = "http://localhost:8086"
    catalog_timeout_seconds: float = 2.0
    currency_url: str = "http://localhost:8087"
    currency_timeout_seconds: float = 1.0
    email_url: str = "http://localhost:8088"
    email_timeout_seconds: float = 2.0
    cart_url: str = "http://localhost:8089"
    cart_timeout_seconds: float = 1.0
    accounting_url: str = "http://localhost:8091"
    accounting_timeout_seconds: float = 2.0
    fraud_detection_url: str = "http://localhost:8092"
    fraud_detection_timeout_seconds: float = 2.0

    checkout_deadline_seconds: float = 10.0
    reversal_timeout_seconds: float = 1.0
    placeholder_shipping_cost: Decimal = Decimal("0.00")
    settlement_currency: str = "USD"
    background_workers: int = Field(default=4, ge=1, le=64)

    # Stub collaborators
    payment_failure_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    payment_failure_seed: int | None = None
    fraud_max_order_total: Decimal = Decimal("5000.00")
    fraud_blocked_users: list[str] = Field(default_factory=list)
    catalog_base_currency: str = "USD"
    accounting_database_url: str = "sqlite+pysqlite:///./accounting.db"

    # Telemetry exporter: none | console | otlp
    otel_exporter: str = "none"
    otel_endpoint: str = "http://localhost:4317"
    deployment_environment: str = "demo"

    def model_post_init(self, __context) -> None:
        problems: list[str] = []
        for name in COLLABORATORS:
            if getattr(self, f"{name}_timeout_seconds") <= 0:
                problems.append(f"SHOP_{name.upper()}_TIMEOUT_SECONDS")
        if self.checkout_deadline_seconds <= 0:
            problems.append("SHOP_CHECKOUT_DEADLINE_SECONDS")
        if self.reversal_timeout_seconds <= 0:
            problems.append("SHOP_REVERSAL_TIMEOUT_SECONDS")
        if self.placeholder_shipping_cost < 0:
            problems.append("SHOP_PLACEHOLDER_SHIPPING_COST")
        if len(self.settlement_currency) != 3 or not self.settlement_currency.isupper():
            problems.append("SHOP_SETTLEMENT_CURRENCY")
        if self.otel_exporter not in {"none", "console", "otlp"}:
            problems.append("SHOP_OTEL_EXPORTER")

        if problems:
            raise ValueError("invalid settings; check env vars: " + ", ".join(sorted(problems)))

    def endpoint(self, collaborator: str) -> tuple[str, float]:
        if collaborator not in COLLABORATORS:
            raise KeyError(f"unknown collaborator: {collaborator}")
        return getattr(self, f"{collaborator}_url"), getattr(self, f"{collaborator}_timeout_seconds")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
