from __future__ import annotations

import logging
import os
import time

import pytest
from fastapi.testclient import TestClient
from opentelemetry.sdk.metrics.export import InMemoryMetricReader
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from shopsim.checkout import CheckoutClients, CheckoutOrchestrator, Deadline, OrderStatus
from shopsim.checkout.models import Failure
from shopsim.core.config import Settings
from shopsim.core.logging import TraceContextFilter
from shopsim.core.observability import init_observability
from shopsim.services import cart


@pytest.fixture()
def telemetry(settings):
    exporter = InMemorySpanExporter()
    reader = InMemoryMetricReader()
    handle = init_observability("checkout-test", settings, span_exporter=exporter, metric_reader=reader)
    yield handle, exporter, reader
    handle.shutdown()


@pytest.fixture()
def traced_orchestrator(collaborators, dispatcher, settings, telemetry):
    handle, _, _ = telemetry
    return CheckoutOrchestrator(
        clients=CheckoutClients(**vars(collaborators)),
        dispatcher=dispatcher,
        settings=settings,
        observability=handle,
    )


def test_checkout_spans_share_one_trace(traced_orchestrator, telemetry, make_request, dispatcher):
    _, exporter, _ = telemetry

    order = traced_orchestrator.checkout(make_request())
    assert dispatcher.drain(timeout=5.0)

    spans = exporter.get_finished_spans()
    names = {span.name for span in spans}
    assert {"checkout", "checkout.catalog", "checkout.quote", "checkout.payment", "checkout.fraud", "checkout.shipment"} <= names
    assert {"checkout.email", "checkout.accounting", "checkout.cart"} <= names

    root = next(span for span in spans if span.name == "checkout")
    assert root.attributes["checkout.order_status"] == order.status.value
    assert root.attributes["app.order.id"] == order.order_id
    assert {span.context.trace_id for span in spans} == {root.context.trace_id}
    assert root.resource.attributes["service.name"] == "checkout-test"


def test_failed_step_span_carries_failure(traced_orchestrator, telemetry, collaborators, make_request):
    _, exporter, _ = telemetry
    collaborators.payment.responses["charge"] = Failure("payment_declined", message="card declined")

    order = traced_orchestrator.checkout(make_request())

    assert order.status is OrderStatus.PAYMENT_FAILED
    payment_span = next(span for span in exporter.get_finished_spans() if span.name == "checkout.payment")
    assert payment_span.attributes["checkout.step.ok"] is False
    assert payment_span.attributes["checkout.step.failure_reason"] == "payment_declined"


def test_orders_are_counted_by_status(traced_orchestrator, telemetry, make_request):
    _, _, reader = telemetry

    traced_orchestrator.checkout(make_request())

    data = reader.get_metrics_data()
    points = [
        point
        for resource_metrics in data.resource_metrics
        for scope_metrics in resource_metrics.scope_metrics
        for metric in scope_metrics.metrics
        if metric.name == "checkout.orders"
        for point in metric.data.data_points
    ]
    assert [(point.attributes["status"], point.value) for point in points] == [("Completed", 1)]


def test_log_records_carry_trace_ids(telemetry):
    handle, _, _ = telemetry
    record = logging.LogRecord("shopsim", logging.INFO, __file__, 1, "hello", None, None)
    log_filter = TraceContextFilter()

    log_filter.filter(record)
    assert record.otel_trace_id == "0"

    with handle.tracer.start_as_current_span("work") as span:
        log_filter.filter(record)
        assert record.otel_trace_id == format(span.get_span_context().trace_id, "032x")


def test_deadline_from_header_is_capped():
    assert Deadline.from_header(None, 2.0).remaining() <= 2.0
    assert Deadline.from_header("500", 2.0).remaining() <= 0.5
    assert Deadline.from_header("garbage", 0.1).remaining() <= 0.1
    assert Deadline.from_header("-5", 0.1).remaining() > 0.0

    deadline = Deadline.after(0.05)
    assert deadline.clamp(3.0) <= 0.05
    time.sleep(0.06)
    assert deadline.expired()
    assert deadline.clamp(3.0) == 0.0


def test_settings_reject_invalid_values():
    with pytest.raises(ValueError) as excinfo:
        Settings(payment_timeout_seconds=0, settlement_currency="usd", otel_exporter="jaeger")

    message = str(excinfo.value)
    assert "SHOP_PAYMENT_TIMEOUT_SECONDS" in message
    assert "SHOP_SETTLEMENT_CURRENCY" in message
    assert "SHOP_OTEL_EXPORTER" in message


def test_settings_endpoint_lookup():
    settings = Settings(fraud_detection_url="http://fraud:9000", fraud_detection_timeout_seconds=0.3)

    assert settings.endpoint("fraud_detection") == ("http://fraud:9000", 0.3)
    with pytest.raises(KeyError):
        settings.endpoint("inventory")


class CollectingLogExporter:
    def __init__(self):
        self.records = []

    def export(self, batch):
        self.records.extend(batch)

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        return True

    def shutdown(self) -> None:
        pass


def test_log_records_are_exported_with_span_context(settings):
    exporter = CollectingLogExporter()
    handle = init_observability("checkout-logs", settings, log_exporter=exporter)
    try:
        assert handle.log_handler in logging.getLogger().handlers
        with handle.tracer.start_as_current_span("charge") as span:
            logging.getLogger("shopsim.test").warning("charge declined: order_id=%s", "ord-7")
            trace_id = span.get_span_context().trace_id
    finally:
        handle.shutdown()

    bodies = [item.log_record.body for item in exporter.records]
    assert "charge declined: order_id=ord-7" in bodies
    exported = next(item.log_record for item in exporter.records if item.log_record.body == "charge declined: order_id=ord-7")
    assert exported.trace_id == trace_id
    assert handle.log_handler not in logging.getLogger().handlers


def test_logs_stay_local_without_an_exporter(telemetry):
    handle, _, _ = telemetry

    assert handle.log_handler is None


@pytest.mark.skipif(not hasattr(os, "getloadavg"), reason="load average not available on this platform")
def test_host_load_average_gauges(telemetry):
    _, _, reader = telemetry

    data = reader.get_metrics_data()
    names = {
        metric.name
        for resource_metrics in data.resource_metrics
        for scope_metrics in resource_metrics.scope_metrics
        for metric in scope_metrics.metrics
    }
    assert {"system.cpu.load_average.1m", "system.cpu.load_average.5m", "system.cpu.load_average.15m"} <= names


def test_stub_services_own_their_telemetry():
    with TestClient(cart.app) as c:
        handle = cart.app.state.observability
        res = c.get("/health", headers={"traceparent": "00-0af7651916cd43dd8448eb211c80319c-b7ad6b7169203331-01"})
        assert res.status_code == 200
        assert handle.service_name == "cart"

    assert cart.app.state.observability is None
