from shopsim.checkout.aggregator import aggregate, derive_status
from shopsim.checkout.background import BackgroundDispatcher
from shopsim.checkout.clients import CheckoutClients
from shopsim.checkout.deadline import Deadline
from shopsim.checkout.models import (
    CartItem,
    CheckoutRequest,
    Failure,
    FailureKind,
    Order,
    OrderContext,
    OrderStatus,
    ShippingAddress,
    StepOutcome,
    Success,
)
from shopsim.checkout.orchestrator import CheckoutOrchestrator, accounting_event, build_orchestrator

__all__ = [
    "BackgroundDispatcher",
    "CartItem",
    "CheckoutClients",
    "CheckoutOrchestrator",
    "CheckoutRequest",
    "Deadline",
    "Failure",
    "FailureKind",
    "Order",
    "OrderContext",
    "OrderStatus",
    "ShippingAddress",
    "StepOutcome",
    "Success",
    "accounting_event",
    "aggregate",
    "build_orchestrator",
    "derive_status",
]
