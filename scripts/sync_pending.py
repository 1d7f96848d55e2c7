"""Trigger one reconciliation sweep over stale pending intents and print the result."""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for on-demand reconciliation."""

    parser = argparse.ArgumentParser(description="Run the payments reconciliation sweep now.")
    parser.add_argument("--payments-url", default="http://localhost:8001")
    parser.add_argument("--api-key", required=True)
    parser.add_argument("--older-than-seconds", type=int, default=None)
    parser.add_argument("--limit", type=int, default=None)
    args = parser.parse_args()

    params = {}
    if args.older_than_seconds is not None:
        params["older_than_seconds"] = args.older_than_seconds
    if args.limit is not None:
        params["limit"] = args.limit
    resp = httpx.post(
        f"{args.payments_url}/internal/reconciliation/run",
        params=params,
        headers={"x-api-key": args.api_key},
        timeout=120.0,
    )
    resp.raise_for_status()
    print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
