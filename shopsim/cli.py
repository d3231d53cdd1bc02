from __future__ import annotations

import argparse
import json
from pathlib import Path

from shopsim.checkout import BackgroundDispatcher, CheckoutRequest, Deadline, build_orchestrator
from shopsim.core.config import get_settings
from shopsim.core.logging import configure_logging
from shopsim.core.observability import init_observability

SERVICE_APPS = {
    "checkout": ("shopsim.main:app", "api_port"),
    "payment": ("shopsim.services.payment:app", "payment_url"),
    "shipping": ("shopsim.services.shipping:app", "shipping_url"),
    "product-catalog": ("shopsim.services.catalog:app", "catalog_url"),
    "currency": ("shopsim.services.currency:app", "currency_url"),
    "email": ("shopsim.services.email:app", "email_url"),
    "cart": ("shopsim.services.cart:app", "cart_url"),
    "accounting": ("shopsim.services.accounting:app", "accounting_url"),
    "fraud-detection": ("shopsim.services.fraud_detection:app", "fraud_detection_url"),
}


def default_port(service: str) -> int:
    settings = get_settings()
    _, attr = SERVICE_APPS[service]
    value = getattr(settings, attr)
    if isinstance(value, int):
        return value
    return int(str(value).rstrip("/").rsplit(":", 1)[-1])


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="shopsim checkout simulation CLI")
    top = parser.add_subparsers(dest="command", required=True)

    serve = top.add_parser("serve", help="Run one service over HTTP")
    serve.add_argument("service", choices=sorted(SERVICE_APPS))
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)

    checkout = top.add_parser("checkout", help="Run one checkout against the configured collaborators")
    checkout.add_argument("request_file", help="Path to a CheckoutRequest JSON document")
    checkout.add_argument("--timeout-ms", type=int, default=None, help="Deadline budget for this checkout")

    return parser


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    settings = get_settings()
    target, _ = SERVICE_APPS[args.service]
    uvicorn.run(
        target,
        host=args.host or settings.api_host,
        port=args.port or default_port(args.service),
        log_level=settings.log_level.lower(),
    )
    return 0


def _run_checkout(args: argparse.Namespace) -> int:
    settings = get_settings()
    request = CheckoutRequest.model_validate_json(Path(args.request_file).read_text(encoding="utf-8"))
    observability = init_observability("checkout-cli", settings)
    dispatcher = BackgroundDispatcher(max_workers=settings.background_workers)
    try:
        orchestrator = build_orchestrator(settings, observability=observability, dispatcher=dispatcher)
        timeout_header = str(args.timeout_ms) if args.timeout_ms else None
        order = orchestrator.checkout(request, deadline=Deadline.from_header(timeout_header, settings.checkout_deadline_seconds))
        print(json.dumps(order.model_dump(mode="json"), ensure_ascii=False, indent=2))
    finally:
        dispatcher.shutdown()
        observability.shutdown()
    return 0 if order.is_completed else 1


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    configure_logging(get_settings().log_level)

    if args.command == "serve":
        return _serve(args)
    if args.command == "checkout":
        return _run_checkout(args)

    parser.error("unsupported command")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
