"""indexes for the outbox claim and refund running totals

The publisher only scans rows still waiting to go out, so the claim index is
partial. Refunds sum prior entries by `source_event_id` prefix
(`refund:<charge>:`), which needs a pattern-ops index outside the C locale.

Revision ID: 0003_reconcile_hot_paths
Revises: 0002_ledger_immutability
Create Date: 2026-10-18
"""

import sqlalchemy as sa
from alembic import op


revision = "0003_reconcile_hot_paths"
down_revision = "0002_ledger_immutability"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_index(
        "ix_outbox_events_unsent_created_at",
        "outbox_events",
        ["created_at"],
        postgresql_where=sa.text("status IN ('PENDING', 'PROCESSING')"),
    )
    op.create_index(
        "ix_ledger_entries_source_event_prefix",
        "ledger_entries",
        ["account_id", "source_event_id"],
        postgresql_ops={"source_event_id": "text_pattern_ops"},
        postgresql_where=sa.text("source_event_id IS NOT NULL"),
    )


def downgrade() -> None:
    op.drop_index("ix_ledger_entries_source_event_prefix", table_name="ledger_entries")
    op.drop_index("ix_outbox_events_unsent_created_at", table_name="outbox_events")
