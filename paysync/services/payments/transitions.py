"""The single place where a payment intent reaches a terminal status.

Webhook processing, reconciliation sync and synchronous card creation all
funnel through `apply_outcome`. The write is a conditional update on
`(intent_id, status='pending', state_version)`, so of two concurrent callers
that both observed `pending` exactly one wins; the other becomes a no-op.
Side effects (order cascade, notifications) are written in the same
transaction as the winning update and only by the winner.
"""

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import update

from paysync.common.events import NOTIFICATIONS_TOPIC, EventEnvelope
from paysync.common.logging import logger, trace_id_ctx
from paysync.common.metrics import (
    intent_transition_noops_total,
    intent_transitions_total,
    payment_e2e_seconds,
)
from paysync.common.outbox import enqueue_outbox_event
from paysync.common.state_machine import APPROVED, PENDING, REJECTED, TERMINAL_STATES, validate_transition
from paysync.services.payments.models import (
    ORDER_AWAITING_PAYMENT,
    ORDER_PAID,
    IntentTimeline,
    Order,
    OutboxEvent,
    PaymentIntent,
)


def format_amount(amount_cents: int) -> str:
    return f"{(Decimal(amount_cents) / 100):.2f}"


def enqueue_notification(db, user_id: str, order_id: str, title: str, message: str, kind: str) -> None:
    """Stage a notification request; delivery happens after commit, out of band."""

    event = EventEnvelope(
        event_type=NOTIFICATIONS_TOPIC,
        aggregate_id=order_id,
        trace_id=trace_id_ctx.get(),
        payload={
            "user_id": user_id,
            "order_id": order_id,
            "title": title,
            "message": message,
            "kind": kind,
        },
    )
    enqueue_outbox_event(db, OutboxEvent, NOTIFICATIONS_TOPIC, event, aggregate_type="notification")


def mark_order_paid(db, order_id: str) -> bool:
    result = db.execute(
        update(Order)
        .where(Order.order_id == order_id, Order.status == ORDER_AWAITING_PAYMENT)
        .values(status=ORDER_PAID, updated_at=datetime.now(timezone.utc))
    )
    if result.rowcount != 1:
        logger.warning("order not awaiting payment, leaving status unchanged order_id=%s", order_id)
        return False
    return True


def _observe_terminal_e2e(intent: PaymentIntent, terminal_state: str, service_name: str) -> None:
    if intent.created_at is None:
        return
    created_at = intent.created_at
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    elapsed = max(0.0, (datetime.now(timezone.utc) - created_at).total_seconds())
    payment_e2e_seconds.labels(service=service_name, terminal_state=terminal_state).observe(elapsed)


def apply_outcome(
    db,
    intent: PaymentIntent,
    outcome: str | None,
    reason: str,
    source: str,
    service_name: str = "payments",
) -> bool:
    """Move a pending intent to `outcome` and commit; return True if this call applied it.

    `intent` must be attached to `db`. Non-terminal outcomes and already
    terminal intents are no-ops.
    """

    if outcome not in TERMINAL_STATES or intent.status != PENDING:
        intent_transition_noops_total.labels(service=service_name, source=source).inc()
        return False

    validate_transition(intent.status, outcome)
    from_status = intent.status
    current_version = intent.state_version
    now = datetime.now(timezone.utc)
    values = {"status": outcome, "state_version": current_version + 1, "updated_at": now}
    if outcome == APPROVED:
        values["paid_at"] = now

    result = db.execute(
        update(PaymentIntent)
        .where(
            PaymentIntent.intent_id == intent.intent_id,
            PaymentIntent.status == PENDING,
            PaymentIntent.state_version == current_version,
        )
        .values(**values)
    )
    if result.rowcount != 1:
        db.rollback()
        logger.info(
            "transition already applied by a concurrent caller intent_id=%s outcome=%s source=%s",
            intent.intent_id,
            outcome,
            source,
        )
        intent_transition_noops_total.labels(service=service_name, source=source).inc()
        return False

    intent.status = outcome
    intent.state_version = current_version + 1
    intent.updated_at = now
    if outcome == APPROVED:
        intent.paid_at = now
    db.add(
        IntentTimeline(
            intent_id=intent.intent_id,
            from_state=from_status,
            to_state=outcome,
            reason=reason,
            source=source,
        )
    )

    amount = format_amount(intent.amount_cents)
    if outcome == APPROVED:
        mark_order_paid(db, intent.order_id)
        enqueue_notification(
            db,
            intent.payer_id,
            intent.order_id,
            "Payment confirmed",
            "Your payment was confirmed. Your order is being processed.",
            kind="payment_approved",
        )
        order = db.get(Order, intent.order_id)
        if order is not None and order.counterpart_id:
            enqueue_notification(
                db,
                order.counterpart_id,
                intent.order_id,
                "Payment received",
                f"The payer completed the payment for this order. Amount: {amount}.",
                kind="payment_received",
            )
    elif outcome == REJECTED:
        enqueue_notification(
            db,
            intent.payer_id,
            intent.order_id,
            "Payment not approved",
            "Your payment was not approved. Try another card or payment method.",
            kind="payment_rejected",
        )
    db.commit()

    logger.info(
        "intent transitioned intent_id=%s order_id=%s %s->%s source=%s reason=%s",
        intent.intent_id,
        intent.order_id,
        from_status,
        outcome,
        source,
        reason,
    )
    intent_transitions_total.labels(service=service_name, outcome=outcome, source=source).inc()
    _observe_terminal_e2e(intent, outcome, service_name)
    return True
