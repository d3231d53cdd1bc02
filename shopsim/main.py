from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from shopsim.api.routes_checkout import router as checkout_router
from shopsim.api.tracing import install_tracing
from shopsim.checkout import BackgroundDispatcher, build_orchestrator
from shopsim.core.config import get_settings
from shopsim.core.logging import configure_logging
from shopsim.core.observability import init_observability

settings = get_settings()
configure_logging(settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.app_name)


@app.on_event("startup")
def on_startup() -> None:
    observability = init_observability("checkout", settings)
    dispatcher = BackgroundDispatcher(max_workers=settings.background_workers)
    app.state.observability = observability
    app.state.dispatcher = dispatcher
    app.state.orchestrator = build_orchestrator(settings, observability=observability, dispatcher=dispatcher)
    logger.info("checkout service ready: deadline=%ss settlement_currency=%s", settings.checkout_deadline_seconds, settings.settlement_currency)


@app.on_event("shutdown")
def on_shutdown() -> None:
    app.state.dispatcher.shutdown()


@app.exception_handler(RequestValidationError)
async def invalid_checkout_handler(_: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={
            "detail": jsonable_encoder(exc.errors()),
            "error": "invalid_checkout_request",
        },
    )


@app.get("/healthz")
def healthz() -> dict:
    return {"status": "ok"}


app.include_router(checkout_router)
# Registered last so its shutdown runs after the dispatcher has drained.
install_tracing(app, "checkout", settings)
