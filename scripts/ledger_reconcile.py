"""Fetch and print the ledger projection drift report as JSON."""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for reconciliation checks; exits 1 when drift is found."""

    parser = argparse.ArgumentParser(description="Fetch ledger reconciliation report endpoint.")
    parser.add_argument("--ledger-url", default="http://localhost:8004")
    parser.add_argument("--api-key", default="dev-secret")
    parser.add_argument("--limit", type=int, default=1000)
    args = parser.parse_args()

    resp = httpx.get(
        f"{args.ledger_url}/reconciliation",
        params={"limit": args.limit},
        headers={"x-api-key": args.api_key},
        timeout=10.0,
    )
    resp.raise_for_status()
    report = resp.json()
    print(json.dumps(report, indent=2))
    if report["drifted_count"]:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
