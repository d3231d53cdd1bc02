from __future__ import annotations

from fastapi import FastAPI, Request
from opentelemetry.trace import SpanKind, Status, StatusCode

from shopsim.core.config import Settings, get_settings
from shopsim.core.observability import init_observability, propagator


def install_tracing(app: FastAPI, service_name: str, settings: Settings | None = None) -> None:
    """Give ``app`` its own telemetry providers and a server span per request.

    The span continues the caller's trace when the request carries W3C trace
    context headers. Requests served before startup pass through untraced.
    """

    @app.on_event("startup")
    def start_observability() -> None:
        if getattr(app.state, "observability", None) is None:
            app.state.observability = init_observability(service_name, settings or get_settings())

    @app.on_event("shutdown")
    def stop_observability() -> None:
        handle = getattr(app.state, "observability", None)
        if handle is not None:
            handle.shutdown()
            app.state.observability = None

    @app.middleware("http")
    async def trace_requests(request: Request, call_next):
        handle = getattr(request.app.state, "observability", None)
        if handle is None:
            return await call_next(request)

        parent = propagator.extract(dict(request.headers))
        attributes = {"http.request.method": request.method, "url.path": request.url.path}
        with handle.tracer.start_as_current_span(
            f"{request.method} {request.url.path}",
            context=parent,
            kind=SpanKind.SERVER,
            attributes=attributes,
        ) as span:
            response = await call_next(request)
            route = request.scope.get("route")
            if route is not None:
                span.update_name(f"{request.method} {route.path}")
                span.set_attribute("http.route", route.path)
            span.set_attribute("http.response.status_code", response.status_code)
            if response.status_code >= 500:
                span.set_status(Status(StatusCode.ERROR))
        return response
