"""Fire concurrent spend requests at one account to exercise authorization.

With a balance of N credits and `--amount` equal to N, exactly one request
should be approved and the rest answered with 402.
"""

import argparse
import asyncio
import statistics
import time
from uuid import uuid4

import httpx


async def send_one(client: httpx.AsyncClient, base_url: str, api_key: str, account_id: str, amount: int):
    """Send one spend request and return (status_code, latency_ms)."""

    started = time.perf_counter()
    try:
        resp = await client.post(
            f"{base_url}/accounts/{account_id}/spend",
            json={"amount": amount, "description": "burst", "idempotency_key": f"burst-{uuid4()}"},
            headers={"x-api-key": api_key, "x-trace-id": str(uuid4())},
        )
        return resp.status_code, (time.perf_counter() - started) * 1000
    except httpx.HTTPError:
        return 599, (time.perf_counter() - started) * 1000


async def run(count: int, concurrency: int, base_url: str, api_key: str, account_id: str, amount: int) -> None:
    sem = asyncio.Semaphore(concurrency)

    async with httpx.AsyncClient(timeout=10.0) as client:

        async def worker():
            async with sem:
                return await send_one(client, base_url, api_key, account_id, amount)

        results = await asyncio.gather(*(worker() for _ in range(count)))

    statuses: dict[int, int] = {}
    for code, _ in results:
        statuses[code] = statuses.get(code, 0) + 1
    lats = sorted(latency for _, latency in results)
    print("status_counts=", statuses)
    print(f"p50_ms={lats[len(lats) // 2]:.2f}")
    print(f"p99_ms={lats[max(0, int(len(lats) * 0.99) - 1)]:.2f}")
    print(f"avg_ms={statistics.mean(lats):.2f}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Concurrent spends against one account.")
    parser.add_argument("--base-url", default="http://localhost:8004")
    parser.add_argument("--api-key", default="dev-secret")
    parser.add_argument("--account-id", default="burst-account-1")
    parser.add_argument("--amount", type=int, default=100)
    parser.add_argument("--count", type=int, default=50)
    parser.add_argument("--concurrency", type=int, default=25)
    args = parser.parse_args()
    asyncio.run(run(args.count, args.concurrency, args.base_url, args.api_key, args.account_id, args.amount))
