from __future__ import annotations

import logging

from opentelemetry import trace

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] [trace_id=%(otel_trace_id)s span_id=%(otel_span_id)s] %(message)s"


class TraceContextFilter(logging.Filter):
    """Stamps records with the ids of the span that is current when they are emitted."""

    def filter(self, record: logging.LogRecord) -> bool:
        span_context = trace.get_current_span().get_span_context()
        if span_context.is_valid:
            record.otel_trace_id = format(span_context.trace_id, "032x")
            record.otel_span_id = format(span_context.span_id, "016x")
        else:
            record.otel_trace_id = "0"
            record.otel_span_id = "0"
        return True


def configure_logging(level: str | int = "INFO") -> None:
    root = logging.getLogger()
    if any(getattr(handler, "_shopsim", False) for handler in root.handlers):
        root.setLevel(level)
        return

    handler = logging.StreamHandler()
    handler._shopsim = True  # type: ignore[attr-defined]
    handler.addFilter(TraceContextFilter())
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(level)

    # Suppress noisy library loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
