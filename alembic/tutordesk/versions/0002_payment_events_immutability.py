"""make payment events append-only

Revision ID: 0002_payment_events_immutability
Revises: 0001_tutordesk
Create Date: 2026-10-19
"""

from alembic import op


revision = "0002_payment_events_immutability"
down_revision = "0001_tutordesk"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        CREATE OR REPLACE FUNCTION prevent_payment_event_mutation()
        RETURNS trigger
        LANGUAGE plpgsql
        AS $$
        BEGIN
            RAISE EXCEPTION 'payment_events is append-only; % is not allowed', TG_OP;
        END;
        $$;
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_payment_events_immutable
        BEFORE UPDATE OR DELETE ON payment_events
        FOR EACH ROW
        EXECUTE FUNCTION prevent_payment_event_mutation();
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_payment_events_immutable ON payment_events;")
    op.execute("DROP FUNCTION IF EXISTS prevent_payment_event_mutation();")
