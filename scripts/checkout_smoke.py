#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json

import requests

SAMPLE_REQUEST = {
    "user_id": "user-001",
    "email": "someone@example.com",
    "currency": "USD",
    "payment_token": "tok_visa",
    "address": {
        "street_address": "1600 Amphitheatre Parkway",
        "city": "Mountain View",
        "state": "CA",
        "country": "US",
        "zip_code": "94043",
    },
    "items": [
        {"product_id": "OLJCESPC7Z", "quantity": 1},
        {"product_id": "L9ECAV7KIM", "quantity": 2},
    ],
}


def main() -> None:
    parser = argparse.ArgumentParser(description="Send checkout requests to a running checkout service")
    parser.add_argument("--base-url", default="http://localhost:8083")
    parser.add_argument("--count", type=int, default=1)
    parser.add_argument("--currency", default=None, help="Override the sample request currency")
    parser.add_argument("--payment-token", default=None, help="e.g. tok_decline to force a payment failure")
    parser.add_argument("--timeout-ms", type=int, default=None)
    args = parser.parse_args()

    body = dict(SAMPLE_REQUEST)
    if args.currency:
        body["currency"] = args.currency
    if args.payment_token:
        body["payment_token"] = args.payment_token
    headers = {"X-Request-Timeout-Ms": str(args.timeout_ms)} if args.timeout_ms else {}

    for _ in range(args.count):
        resp = requests.post(f"{args.base_url}/api/checkout", json=body, headers=headers, timeout=60)
        data = resp.json()
        print(json.dumps({"http_status": resp.status_code, "order": data}, indent=2, ensure_ascii=False))


if __name__ == "__main__":
    main()
