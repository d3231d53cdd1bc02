from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from shopsim.core.canonical import canonical_json

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")

DEADLINE_EXCEEDED = "deadline_exceeded"
TIMEOUT = "timeout"


def to_money(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


class CartItem(BaseModel):
    product_id: str = Field(min_length=1)
    quantity: int = Field(gt=0, strict=True)


class ShippingAddress(BaseModel):
    street_address: str = Field(min_length=1)
    city: str = Field(min_length=1)
    state: str = ""
    country: str = Field(min_length=1)
    zip_code: str = Field(min_length=1)


class CheckoutRequest(BaseModel):
    user_id: str = Field(min_length=1)
    items: list[CartItem] = Field(min_length=1)
    address: ShippingAddress
    payment_token: str = Field(min_length=1)
    currency: str = Field(pattern="^[A-Z]{3}$")
    email: str | None = None


class OrderStatus(str, Enum):
    COMPLETED = "Completed"
    COMPLETED_WITH_WARNINGS = "CompletedWithWarnings"
    PAYMENT_FAILED = "PaymentFailed"
    REJECTED = "Rejected"


class FailureKind(str, Enum):
    FATAL = "fatal"
    TOLERABLE = "tolerable"
    DEADLINE_EXCEEDED = "deadline_exceeded"


@dataclass(frozen=True)
class Success:
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Failure:
    reason: str
    retryable: bool = False
    message: str = ""

    @property
    def ok(self) -> bool:
        return False


StepOutcome = Union[Success, Failure]


@dataclass(frozen=True)
class StepFailure:
    kind: FailureKind
    step: str
    collaborator: str
    reason: str
    retryable: bool
    message: str


class LineItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal


class OrderWarning(BaseModel):
    model_config = ConfigDict(frozen=True)

    step: str
    collaborator: str
    reason: str
    retryable: bool
    message: str


class Order(BaseModel):
    model_config = ConfigDict(frozen=True)

    order_id: str
    status: OrderStatus
    reason: str | None = None
    user_id: str
    currency: str
    items: tuple[LineItem, ...] = ()
    subtotal: Decimal = ZERO
    shipping_cost: Decimal = ZERO
    total: Decimal = ZERO
    settlement_total: Decimal = ZERO
    settlement_currency: str
    converted: bool = False
    transaction_id: str | None = None
    tracking_id: str | None = None
    warnings: tuple[OrderWarning, ...] = ()

    @property
    def is_completed(self) -> bool:
        return self.status in (OrderStatus.COMPLETED, OrderStatus.COMPLETED_WITH_WARNINGS)

    def canonical_json(self) -> bytes:
        return canonical_json(self.model_dump())


@dataclass
class OrderContext:
    """Per-request accumulator; owned by a single checkout run."""

    request: CheckoutRequest
    order_id: str
    settlement_currency: str
    line_items: list[LineItem] = field(default_factory=list)
    subtotal: Decimal | None = None
    shipping_cost: Decimal | None = None
    settlement_total: Decimal | None = None
    outcomes: dict[str, StepOutcome] = field(default_factory=dict)
    failures: list[StepFailure] = field(default_factory=list)

    @classmethod
    def start(cls, request: CheckoutRequest, settlement_currency: str) -> "OrderContext":
        return cls(request=request, order_id=f"ord-{uuid4().hex[:16]}", settlement_currency=settlement_currency)

    @property
    def total(self) -> Decimal:
        return (self.subtotal or ZERO) + (self.shipping_cost or ZERO)

    def charge_amount(self) -> tuple[Decimal, str]:
        """Amount and currency to charge: the converted total, or the cart total if conversion failed."""
        if isinstance(self.outcomes.get("conversion"), Success) and self.settlement_total is not None:
            return self.settlement_total, self.settlement_currency
        return self.total, self.request.currency

    def outcome(self, step: str) -> StepOutcome | None:
        return self.outcomes.get(step)

    def record(
        self,
        step: str,
        collaborator: str,
        outcome: StepOutcome,
        *,
        tolerable: bool,
        deadline_fatal: bool = True,
    ) -> StepOutcome:
        if step in self.outcomes:
            raise ValueError(f"step already recorded: {step}")
        self.outcomes[step] = outcome
        if isinstance(outcome, Failure):
            if outcome.reason == DEADLINE_EXCEEDED and deadline_fatal:
                kind = FailureKind.DEADLINE_EXCEEDED
            elif tolerable:
                kind = FailureKind.TOLERABLE
            else:
                kind = FailureKind.FATAL
            self.failures.append(
                StepFailure(
                    kind=kind,
                    step=step,
                    collaborator=collaborator,
                    reason=outcome.reason,
                    retryable=outcome.retryable,
                    message=outcome.message,
                )
            )
        return outcome
