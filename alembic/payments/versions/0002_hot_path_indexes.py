"""add outbox and reconciliation sweep indexes

Revision ID: 0002_payments_hot_path_indexes
Revises: 0001_payments
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


revision = "0002_payments_hot_path_indexes"
down_revision = "0001_payments"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_index(
        "ix_outbox_events_status_created_at",
        "outbox_events",
        ["status", "created_at"],
    )
    # Sweep scans pending intents with a known external id, oldest first.
    op.create_index(
        "ix_payment_intents_pending_created_at",
        "payment_intents",
        ["created_at"],
        postgresql_where=sa.text("status = 'pending' AND external_id IS NOT NULL"),
    )


def downgrade() -> None:
    op.drop_index("ix_payment_intents_pending_created_at", table_name="payment_intents")
    op.drop_index("ix_outbox_events_status_created_at", table_name="outbox_events")
