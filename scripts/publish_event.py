"""Deliver a raw provider event to the billing service.

Either relays it through the `billing.events` Kafka topic or posts it to the
webhook endpoint with a freshly computed signature. Useful for manual replay
and duplicate-delivery testing.
"""

import argparse
import asyncio
import hashlib
import hmac
import json
import time
from pathlib import Path
from uuid import uuid4

import httpx
from aiokafka import AIOKafkaProducer


def sign(payload: str, secret: str, timestamp: int | None = None) -> str:
    """Build a `Stripe-Signature` header value for `payload`."""

    timestamp = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(secret.encode("utf-8"), f"{timestamp}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


async def publish(bootstrap_servers: str, topic: str, event: dict) -> None:
    """Wrap the provider event in an envelope and publish it."""

    obj = (event.get("data") or {}).get("object") or {}
    account_id = (obj.get("metadata") or {}).get("account_id") or "unknown"
    envelope = {
        "event_id": str(uuid4()),
        "event_type": "billing.provider_event",
        "aggregate_id": account_id,
        "payload": event,
    }
    producer = AIOKafkaProducer(bootstrap_servers=bootstrap_servers)
    await producer.start()
    try:
        await producer.send_and_wait(topic, json.dumps(envelope).encode("utf-8"), key=account_id.encode("utf-8"))
    finally:
        await producer.stop()


def post_webhook(billing_url: str, payload: str, secret: str) -> httpx.Response:
    headers = {"content-type": "application/json"}
    if secret:
        headers["stripe-signature"] = sign(payload, secret)
    return httpx.post(f"{billing_url}/webhooks/stripe", content=payload, headers=headers, timeout=10.0)


def main() -> None:
    """Parse CLI args and deliver one provider event."""

    parser = argparse.ArgumentParser(description="Deliver a raw provider event to the billing service.")
    parser.add_argument("--via", choices=("kafka", "webhook"), default="webhook")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--topic", default="billing.events")
    parser.add_argument("--billing-url", default="http://localhost:8005")
    parser.add_argument("--webhook-secret", default="")
    parser.add_argument("--json", dest="json_inline", default=None, help="Inline JSON payload")
    parser.add_argument("--file", dest="json_file", default=None, help="Path to JSON file")
    parser.add_argument("--repeat", type=int, default=1, help="Deliver the same event N times")
    args = parser.parse_args()

    if bool(args.json_inline) == bool(args.json_file):
        raise SystemExit("Provide exactly one of --json or --file")

    raw = args.json_inline if args.json_inline else Path(args.json_file).read_text()
    event = json.loads(raw)

    for _ in range(args.repeat):
        if args.via == "kafka":
            asyncio.run(publish(args.bootstrap_servers, args.topic, event))
            print(f"Published event_id={event.get('id')} to topic={args.topic}")
        else:
            resp = post_webhook(args.billing_url, raw, args.webhook_secret)
            print(resp.status_code, resp.text)


if __name__ == "__main__":
    main()
