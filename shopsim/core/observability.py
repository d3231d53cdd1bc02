"""Tracing, metrics and log export bootstrap shared by every shopsim service.

Each process builds one :class:`ObservabilityHandle` at its entry point and
passes it down; nothing here installs global providers. Trace context crosses
service boundaries through :data:`propagator` (W3C tracecontext + baggage).
"""

from __future__ import annotations

import logging
import os
import platform
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, TypeVar

from opentelemetry import context as otel_context
from opentelemetry.baggage.propagation import W3CBaggagePropagator
from opentelemetry.metrics import CallbackOptions, Meter, Observation
from opentelemetry.propagators.composite import CompositePropagator
from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor, SimpleLogRecordProcessor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import ConsoleMetricExporter, MetricReader, PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
    SpanExporter,
)
from opentelemetry.trace import Tracer
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

from shopsim.core.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

propagator = CompositePropagator([TraceContextTextMapPropagator(), W3CBaggagePropagator()])

LOAD_AVERAGE_WINDOWS = (("1m", 0), ("5m", 1), ("15m", 2))


@dataclass
class ObservabilityHandle:
    service_name: str
    tracer_provider: TracerProvider
    meter_provider: MeterProvider
    logger_provider: LoggerProvider
    tracer: Tracer
    meter: Meter
    log_handler: LoggingHandler | None = None
    _closed: bool = field(default=False, repr=False)

    def shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self.log_handler is not None:
            logging.getLogger().removeHandler(self.log_handler)
        self.tracer_provider.shutdown()
        self.meter_provider.shutdown()
        self.logger_provider.shutdown()
        logger.info("observability shut down: service=%s", self.service_name)


def _build_resource(service_name: str, settings: Settings) -> Resource:
    return Resource.create(
        {
            "service.name": service_name,
            "service.version": settings.service_version,
            "telemetry.sdk.language": "python",
            "host.name": f"{service_name}-host",
            "os.type": platform.system().lower(),
            "deployment.environment": settings.deployment_environment,
        }
    )


def _otlp_exporters(settings: Settings) -> tuple[SpanExporter, Any, Any]:
    from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter
    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter

    return (
        OTLPSpanExporter(endpoint=settings.otel_endpoint, insecure=True),
        OTLPMetricExporter(endpoint=settings.otel_endpoint, insecure=True),
        OTLPLogExporter(endpoint=settings.otel_endpoint, insecure=True),
    )


def _load_average(index: int) -> Callable[[CallbackOptions], Iterable[Observation]]:
    def observe(options: CallbackOptions) -> Iterable[Observation]:
        try:
            averages = os.getloadavg()
        except OSError:
            return []
        return [Observation(averages[index])]

    return observe


def register_host_metrics(meter_provider: MeterProvider) -> None:
    """CPU load averages as observable gauges, read at each collection."""
    if not hasattr(os, "getloadavg"):
        logger.info("host metrics unavailable on %s", platform.system())
        return
    meter = meter_provider.get_meter("host-metrics")
    for window, index in LOAD_AVERAGE_WINDOWS:
        meter.create_observable_gauge(
            f"system.cpu.load_average.{window}",
            callbacks=[_load_average(index)],
            unit="1",
            description=f"{window} CPU load average",
        )


def init_observability(
    service_name: str,
    settings: Settings,
    *,
    span_exporter: SpanExporter | None = None,
    metric_reader: MetricReader | None = None,
    log_exporter: Any = None,
) -> ObservabilityHandle:
    """Build tracer, meter and logger providers for one service.

    ``span_exporter``, ``metric_reader`` and ``log_exporter`` override the
    exporters selected by ``settings.otel_exporter``; spans and log records
    handed to them are flushed synchronously so tests can inspect them
    immediately. When logs are exported, a handler on the root logger forwards
    every record, stamped with the current span.
    """
    resource = _build_resource(service_name, settings)
    tracer_provider = TracerProvider(resource=resource)
    logger_provider = LoggerProvider(resource=resource)
    readers: list[MetricReader] = []
    export_logs = log_exporter is not None

    if span_exporter is not None:
        tracer_provider.add_span_processor(SimpleSpanProcessor(span_exporter))
    elif settings.otel_exporter == "console":
        tracer_provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
        readers.append(PeriodicExportingMetricReader(ConsoleMetricExporter(), export_interval_millis=5000))
    elif settings.otel_exporter == "otlp":
        trace_exporter, metric_exporter, otlp_log_exporter = _otlp_exporters(settings)
        tracer_provider.add_span_processor(BatchSpanProcessor(trace_exporter))
        readers.append(PeriodicExportingMetricReader(metric_exporter, export_interval_millis=5000))
        if log_exporter is None:
            logger_provider.add_log_record_processor(BatchLogRecordProcessor(otlp_log_exporter))
            export_logs = True

    if log_exporter is not None:
        logger_provider.add_log_record_processor(SimpleLogRecordProcessor(log_exporter))
    if metric_reader is not None:
        readers.append(metric_reader)

    meter_provider = MeterProvider(resource=resource, metric_readers=readers)
    register_host_metrics(meter_provider)

    log_handler = None
    if export_logs:
        log_handler = LoggingHandler(level=logging.NOTSET, logger_provider=logger_provider)
        logging.getLogger().addHandler(log_handler)

    logger.info("observability ready: service=%s exporter=%s logs=%s", service_name, settings.otel_exporter, export_logs)
    return ObservabilityHandle(
        service_name=service_name,
        tracer_provider=tracer_provider,
        meter_provider=meter_provider,
        logger_provider=logger_provider,
        tracer=tracer_provider.get_tracer(service_name),
        meter=meter_provider.get_meter(service_name),
        log_handler=log_handler,
    )


def bind_context(fn: Callable[..., T]) -> Callable[..., T]:
    """Wrap ``fn`` so it runs under the trace context current at wrap time.

    Used for work handed to another thread.
    """
    parent = otel_context.get_current()

    def run(*args: Any, **kwargs: Any) -> T:
        token = otel_context.attach(parent)
        try:
            return fn(*args, **kwargs)
        finally:
            otel_context.detach(token)

    return run
