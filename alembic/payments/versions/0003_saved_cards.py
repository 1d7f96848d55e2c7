"""add saved cards and failed-webhook replay index

Revision ID: 0003_payments_saved_cards
Revises: 0002_payments_hot_path_indexes
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


revision = "0003_payments_saved_cards"
down_revision = "0002_payments_hot_path_indexes"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "saved_cards",
        sa.Column("card_id", sa.String(), nullable=False),
        sa.Column("payer_id", sa.String(), nullable=False),
        sa.Column("gateway_customer_id", sa.String(), nullable=False),
        sa.Column("gateway_card_id", sa.String(), nullable=False),
        sa.Column("last_four", sa.String(), nullable=False, server_default=""),
        sa.Column("brand", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("card_id"),
    )
    op.create_index("ix_saved_cards_payer_id", "saved_cards", ["payer_id"])
    # Sweep replays failed deliveries, oldest first.
    op.create_index(
        "ix_webhook_events_failed_received_at",
        "webhook_events",
        ["received_at"],
        postgresql_where=sa.text("is_processed = false AND processing_error IS NOT NULL"),
    )


def downgrade() -> None:
    op.drop_index("ix_webhook_events_failed_received_at", table_name="webhook_events")
    op.drop_index("ix_saved_cards_payer_id", table_name="saved_cards")
    op.drop_table("saved_cards")
