"""Transactional outbox: enqueue inside the business transaction, publish later.

Rows are written in the same transaction as the ledger/subscription change they
describe and drained to Kafka by `OutboxPublisher`.
"""

import asyncio
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, or_, select, update

from cravledger.common.events import EventEnvelope, KafkaBus
from cravledger.common.logging import logger
from cravledger.common.metrics import outbox_oldest_pending_age_seconds, outbox_pending_total


def enqueue_event(db, outbox_model, topic: str, event: EventEnvelope, aggregate_type: str = "account") -> None:
    """Stage one envelope for publishing in the caller's transaction."""

    db.add(
        outbox_model(
            aggregate_type=aggregate_type,
            aggregate_id=event.aggregate_id,
            event_type=event.event_type,
            topic=topic,
            payload=event.model_dump(),
        )
    )


def claim_outbox_batch(db, outbox_model, limit: int = 100, processing_timeout_seconds: int = 30) -> list[dict]:
    """Atomically claim a batch of pending/stale rows for publishing."""

    table = outbox_model.__table__
    now = datetime.now(timezone.utc)
    stale_before = now - timedelta(seconds=processing_timeout_seconds)
    claim_ids = (
        select(table.c.id)
        .where(
            or_(
                table.c.status == "PENDING",
                (table.c.status == "PROCESSING") & (table.c.sent_at.is_not(None)) & (table.c.sent_at < stale_before),
            )
        )
        .order_by(table.c.created_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
        .cte("claim_ids")
    )
    rows = db.execute(
        update(table)
        .where(table.c.id.in_(select(claim_ids.c.id)))
        .values(status="PROCESSING", sent_at=now)
        .returning(table.c.id, table.c.topic, table.c.payload)
    ).all()
    return [{"id": row.id, "topic": row.topic, "payload": row.payload} for row in rows]


def _set_status(db, outbox_model, event_id: str, status: str, sent_at) -> None:
    table = outbox_model.__table__
    db.execute(
        update(table)
        .where(table.c.id == event_id, table.c.status == "PROCESSING")
        .values(status=status, sent_at=sent_at)
    )


def update_outbox_backlog_metrics(db, outbox_model, service_name: str) -> None:
    """Update service-level gauges for pending outbox depth and oldest age."""

    table = outbox_model.__table__
    pending_statuses = ("PENDING", "PROCESSING")
    pending_count = (
        db.execute(select(func.count()).select_from(table).where(table.c.status.in_(pending_statuses))).scalar_one()
    )
    oldest_pending = db.execute(
        select(func.min(table.c.created_at)).where(table.c.status.in_(pending_statuses))
    ).scalar_one()
    age_seconds = 0.0
    if oldest_pending is not None:
        if oldest_pending.tzinfo is None:
            oldest_pending = oldest_pending.replace(tzinfo=timezone.utc)
        age_seconds = max(0.0, (datetime.now(timezone.utc) - oldest_pending).total_seconds())
    outbox_pending_total.labels(service=service_name).set(float(pending_count))
    outbox_oldest_pending_age_seconds.labels(service=service_name).set(age_seconds)


class OutboxPublisher:
    """Drains one service's outbox table to Kafka."""

    def __init__(self, session_factory, outbox_model, service_name: str, kafka: KafkaBus | None = None) -> None:
        self.session_factory = session_factory
        self.outbox_model = outbox_model
        self.service_name = service_name
        self.kafka = kafka or KafkaBus()

    async def publish_once(self, limit: int = 100) -> int:
        """Claim, publish and settle one batch; returns rows published."""

        with self.session_factory() as db:
            rows = claim_outbox_batch(db, self.outbox_model, limit=limit)
            update_outbox_backlog_metrics(db, self.outbox_model, self.service_name)
            db.commit()
        published = 0
        for row in rows:
            try:
                await self.kafka.publish(row["topic"], EventEnvelope(**row["payload"]))
            except Exception as exc:
                logger.exception("outbox publish failed id=%s error=%s", row["id"], exc)
                with self.session_factory() as db:
                    _set_status(db, self.outbox_model, row["id"], "PENDING", None)
                    db.commit()
                continue
            with self.session_factory() as db:
                _set_status(db, self.outbox_model, row["id"], "SENT", datetime.now(timezone.utc))
                update_outbox_backlog_metrics(db, self.outbox_model, self.service_name)
                db.commit()
            published += 1
        return published

    async def run_forever(self, interval_seconds: float = 0.5) -> None:
        while True:
            await self.publish_once()
            await asyncio.sleep(interval_seconds)

    async def close(self) -> None:
        await self.kafka.close()
