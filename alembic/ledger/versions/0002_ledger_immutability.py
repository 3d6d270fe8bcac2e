"""make ledger entries write-once

Entries are corrected by appending (refund, chargeback, adjustment), never by
editing, so the database refuses row edits, deletes and table truncation.
`seq` numbering starts at 1 for every account.

Revision ID: 0002_ledger_immutability
Revises: 0001_ledger
Create Date: 2026-10-18
"""

from alembic import op


revision = "0002_ledger_immutability"
down_revision = "0001_ledger"
branch_labels = None
depends_on = None

GUARD_FUNCTION = "ledger_entries_write_once"


def upgrade() -> None:
    op.create_check_constraint("ck_ledger_entries_seq_positive", "ledger_entries", "seq >= 1")
    op.execute(
        f"""
        CREATE OR REPLACE FUNCTION {GUARD_FUNCTION}()
        RETURNS trigger
        LANGUAGE plpgsql
        AS $$
        BEGIN
            IF TG_LEVEL = 'ROW' THEN
                RAISE EXCEPTION 'ledger entry % (account %) is write-once; % refused',
                    OLD.entry_id, OLD.account_id, TG_OP;
            END IF;
            RAISE EXCEPTION 'ledger_entries is write-once; % refused', TG_OP;
        END;
        $$;
        """
    )
    op.execute(
        f"""
        CREATE TRIGGER trg_ledger_entries_no_edit
        BEFORE UPDATE OR DELETE ON ledger_entries
        FOR EACH ROW EXECUTE FUNCTION {GUARD_FUNCTION}();
        """
    )
    op.execute(
        f"""
        CREATE TRIGGER trg_ledger_entries_no_truncate
        BEFORE TRUNCATE ON ledger_entries
        FOR EACH STATEMENT EXECUTE FUNCTION {GUARD_FUNCTION}();
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_ledger_entries_no_truncate ON ledger_entries;")
    op.execute("DROP TRIGGER IF EXISTS trg_ledger_entries_no_edit ON ledger_entries;")
    op.execute(f"DROP FUNCTION IF EXISTS {GUARD_FUNCTION}();")
    op.drop_constraint("ck_ledger_entries_seq_positive", "ledger_entries", type_="check")
