"""Send a signed gateway webhook to a local payments service.

Useful to exercise the webhook path without exposing the service to the
gateway, e.g. after creating a sandbox payment by hand.
"""

import argparse
import json
import time
from uuid import uuid4

import httpx

from paysync.services.payments.signatures import sign_delivery


def main() -> None:
    """CLI entrypoint for signed webhook deliveries."""

    parser = argparse.ArgumentParser(description="POST a signed payment webhook.")
    parser.add_argument("--payments-url", default="http://localhost:8001")
    parser.add_argument("--secret", required=True, help="WEBHOOK_SECRET configured on the service")
    parser.add_argument("--payment-id", required=True, help="gateway payment id (data.id)")
    parser.add_argument("--action", default="payment.updated")
    parser.add_argument("--request-id", default=None)
    parser.add_argument("--bad-signature", action="store_true", help="send a signature that must be rejected")
    args = parser.parse_args()

    request_id = args.request_id or str(uuid4())
    ts = str(int(time.time() * 1000))
    signature = sign_delivery(args.secret, args.payment_id, request_id, ts)
    if args.bad_signature:
        signature = f"ts={ts},v1={'0' * 64}"

    resp = httpx.post(
        f"{args.payments_url}/webhooks/gateway",
        params={"data.id": args.payment_id, "type": "payment"},
        json={"action": args.action, "type": "payment", "data": {"id": args.payment_id}},
        headers={"x-signature": signature, "x-request-id": request_id},
        timeout=30.0,
    )
    print(f"status={resp.status_code}")
    try:
        print(json.dumps(resp.json(), indent=2))
    except ValueError:
        print(resp.text)


if __name__ == "__main__":
    main()
