"""Payments database models.

This DB is the source of truth for payment intents, their audit attempts,
status timeline, inbound webhook deliveries, saved cards and service-local outbox/inbox
records. `orders` is the boundary view of the upstream order system.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from paysync.common.db import Base, JsonDocument


ORDER_AWAITING_PAYMENT = "awaiting_payment"
ORDER_PAID = "paid"


class Order(Base):
    """The thing being paid for; priced server-side."""

    __tablename__ = "orders"

    order_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    payer_id: Mapped[str] = mapped_column(String, index=True)
    counterpart_id: Mapped[str | None] = mapped_column(String, nullable=True)
    payer_email: Mapped[str | None] = mapped_column(String, nullable=True)
    description: Mapped[str | None] = mapped_column(String, nullable=True)
    price_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String, index=True, default=ORDER_AWAITING_PAYMENT)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class PaymentIntent(Base):
    """One attempt to collect money for one order."""

    __tablename__ = "payment_intents"
    __table_args__ = (
        # At most one live intent per order; the loser of a concurrent create hits this.
        Index(
            "uq_payment_intents_order_pending",
            "order_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
        CheckConstraint("amount_cents > 0", name="ck_payment_intents_amount_positive"),
    )

    intent_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.order_id"), index=True)
    payer_id: Mapped[str] = mapped_column(String, index=True)
    amount_cents: Mapped[int] = mapped_column(Integer)
    method: Mapped[str] = mapped_column(String)
    external_id: Mapped[str | None] = mapped_column(String, nullable=True, unique=True, index=True)
    status: Mapped[str] = mapped_column(String, index=True, default="pending")
    status_detail: Mapped[str | None] = mapped_column(String, nullable=True)
    pix_qr_code: Mapped[str | None] = mapped_column(Text, nullable=True)
    pix_qr_code_base64: Mapped[str | None] = mapped_column(Text, nullable=True)
    pix_copy_paste: Mapped[str | None] = mapped_column(Text, nullable=True)
    checkout_url: Mapped[str | None] = mapped_column(String, nullable=True)
    payload_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    state_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    @property
    def is_pending(self) -> bool:
        return self.status == "pending"

    @property
    def is_live(self) -> bool:
        """Pending and carrying a usable method payload."""

        return self.is_pending and self.payload_complete


class PaymentAttempt(Base):
    """Append-only audit row for one outbound creation call."""

    __tablename__ = "payment_attempts"

    attempt_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    intent_id: Mapped[str] = mapped_column(String, index=True)
    order_id: Mapped[str] = mapped_column(String, index=True)
    payer_id: Mapped[str] = mapped_column(String)
    correlation_id: Mapped[str] = mapped_column(String, unique=True, index=True)
    method: Mapped[str] = mapped_column(String)
    amount_cents: Mapped[int] = mapped_column(Integer)
    external_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    request_url: Mapped[str | None] = mapped_column(String, nullable=True)
    request_payload: Mapped[dict | None] = mapped_column(JsonDocument, nullable=True)
    response_payload: Mapped[str | None] = mapped_column(Text, nullable=True)
    response_status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_status_detail: Mapped[str | None] = mapped_column(String, nullable=True)
    is_success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class IntentTimeline(Base):
    """Immutable audit trail of every intent status change."""

    __tablename__ = "intent_timeline"

    timeline_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    intent_id: Mapped[str] = mapped_column(String, index=True)
    from_state: Mapped[str | None] = mapped_column(String, nullable=True)
    to_state: Mapped[str] = mapped_column(String)
    reason: Mapped[str] = mapped_column(String)
    source: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class WebhookEvent(Base):
    """One inbound gateway notification, kept for dedup and forensics."""

    __tablename__ = "webhook_events"

    event_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    external_id: Mapped[str] = mapped_column(String, index=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    action: Mapped[str | None] = mapped_column(String, nullable=True)
    raw_payload: Mapped[str | None] = mapped_column(Text, nullable=True)
    query_string: Mapped[str | None] = mapped_column(String, nullable=True)
    source_ip: Mapped[str | None] = mapped_column(String, nullable=True)
    is_processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    processing_result: Mapped[str | None] = mapped_column(String, nullable=True)
    processing_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class OutboxEvent(Base):
    """Events waiting to be published to Kafka by the payments service."""

    __tablename__ = "outbox_events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    aggregate_type: Mapped[str] = mapped_column(String)
    aggregate_id: Mapped[str] = mapped_column(String, index=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    topic: Mapped[str] = mapped_column(String)
    payload: Mapped[dict] = mapped_column(JsonDocument)
    status: Mapped[str] = mapped_column(String, default="PENDING", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class InboxEvent(Base):
    """Deduplication table for consumed Kafka events."""

    __tablename__ = "inbox_events"
    __table_args__ = (UniqueConstraint("event_id", "consumed_by_service", name="uq_inbox_consumer"),)

    event_id: Mapped[str] = mapped_column(String, primary_key=True)
    consumed_by_service: Mapped[str] = mapped_column(String, primary_key=True)
    consumed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class SavedCard(Base):
    """A payer's card stored with the gateway under their gateway customer."""

    __tablename__ = "saved_cards"

    card_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    payer_id: Mapped[str] = mapped_column(String, index=True)
    gateway_customer_id: Mapped[str] = mapped_column(String)
    gateway_card_id: Mapped[str] = mapped_column(String)
    last_four: Mapped[str] = mapped_column(String, default="")
    brand: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
