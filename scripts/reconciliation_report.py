"""Print captured payments still waiting for manual reconciliation."""

import argparse
import json
import sys

import httpx


def main() -> None:
    """CLI entrypoint; exits non-zero when anything is pending."""

    parser = argparse.ArgumentParser(description="List escalated payments from the checkout service.")
    parser.add_argument("--checkout-url", default="http://localhost:8000")
    parser.add_argument("--api-key", required=True)
    parser.add_argument("--limit", type=int, default=100)
    args = parser.parse_args()

    resp = httpx.get(
        f"{args.checkout_url}/internal/reconciliation",
        params={"limit": args.limit},
        headers={"X-API-Key": args.api_key},
        timeout=10.0,
    )
    resp.raise_for_status()
    report = resp.json()
    print(json.dumps(report, indent=2))
    if report["pending_count"]:
        sys.exit(1)


if __name__ == "__main__":
    main()
