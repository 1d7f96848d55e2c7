"""Webhook parsing, authentication, dedup and reconciliation through the processor."""

import json

import pytest
from sqlalchemy import select

from conftest import WEBHOOK_SECRET, load_intents, load_order, outbox_payloads
from paysync.common.events import NOTIFICATIONS_TOPIC, WEBHOOK_JOBS_TOPIC, EventEnvelope
from paysync.services.gateway.contract import CheckoutRedirectMethod, GatewayError, PixMethod
from paysync.services.payments.errors import MalformedWebhookError, WebhookAuthenticationError
from paysync.services.payments.models import OutboxEvent, PaymentIntent, WebhookEvent
from paysync.services.payments.signatures import sign_delivery
from paysync.services.payments.webhooks import WebhookProcessor, parse_notification


def _body(external_id, action: str = "payment.updated") -> bytes:
    return json.dumps({"action": action, "type": "payment", "data": {"id": external_id}}).encode()


async def _deliver(processor, external_id: str, request_id: str = "req-1", secret: str = WEBHOOK_SECRET):
    return await processor.receive(
        _body(external_id),
        {},
        sign_delivery(secret, external_id, request_id, "1700000000"),
        request_id,
    )


def _webhook_rows(session_factory) -> list[WebhookEvent]:
    with session_factory() as db:
        return list(db.execute(select(WebhookEvent)).scalars())


def test_parse_current_shape():
    note = parse_notification(_body(123456), {})
    assert note.external_id == "123456"
    assert note.action == "payment.updated"
    assert note.is_payment_event


def test_parse_legacy_shapes():
    legacy = parse_notification(json.dumps({"id": 777, "topic": "payment"}).encode(), {})
    assert (legacy.external_id, legacy.kind, legacy.is_payment_event) == ("777", "payment", True)

    resource = parse_notification(
        json.dumps({"resource": "https://api.mercadopago.com/v1/payments/888", "topic": "payment"}).encode(), {}
    )
    assert resource.external_id == "888"

    query_only = parse_notification(b"", {"data.id": "999", "type": "payment"})
    assert query_only.external_id == "999"
    assert query_only.is_payment_event

    bare = parse_notification(b"", {"id": "555"})
    assert bare.external_id == "555"
    assert bare.is_payment_event


def test_query_id_wins_over_body_id():
    note = parse_notification(_body("body-id"), {"data.id": "query-id"})
    assert note.external_id == "query-id"


def test_non_payment_topics_are_not_payment_events():
    assert not parse_notification(json.dumps({"action": "merchant_order.updated"}).encode(), {}).is_payment_event
    assert not parse_notification(json.dumps({"topic": "merchant_order", "id": 1}).encode(), {}).is_payment_event


def test_malformed_body_raises():
    with pytest.raises(MalformedWebhookError):
        parse_notification(b"{not json", {})
    with pytest.raises(MalformedWebhookError):
        parse_notification(b"[1, 2]", {})


@pytest.mark.asyncio
async def test_pix_approved_by_webhook(manager, processor, gateway, session_factory, make_order):
    order_id = make_order()
    intent = await manager.create_intent(order_id, "payer-1", PixMethod())
    gateway.statuses[intent.external_id] = "approved"

    ack = await _deliver(processor, intent.external_id)

    assert ack.status == "applied"
    [stored] = load_intents(session_factory, order_id)
    assert stored.status == "approved"
    assert stored.paid_at is not None
    assert load_order(session_factory, order_id).status == "paid"
    [row] = _webhook_rows(session_factory)
    assert row.is_processed
    assert row.processing_result == "applied"
    assert row.request_id == "req-1"


@pytest.mark.asyncio
async def test_duplicate_delivery_applies_once(manager, processor, gateway, session_factory, make_order):
    order_id = make_order()
    intent = await manager.create_intent(order_id, "payer-1", PixMethod())
    gateway.statuses[intent.external_id] = "approved"

    first = await _deliver(processor, intent.external_id, request_id="req-1")
    again = await _deliver(processor, intent.external_id, request_id="req-1")
    redelivered = await _deliver(processor, intent.external_id, request_id="req-2")

    assert first.status == "applied"
    assert again.duplicate
    assert redelivered.status == "already_terminal"
    kinds = sorted(n["kind"] for n in outbox_payloads(session_factory, NOTIFICATIONS_TOPIC))
    assert kinds == ["payment_approved", "payment_created", "payment_received"]
    assert len(_webhook_rows(session_factory)) == 2


@pytest.mark.asyncio
async def test_rejected_status_by_webhook(manager, processor, gateway, session_factory, make_order):
    order_id = make_order()
    intent = await manager.create_intent(order_id, "payer-1", PixMethod())
    gateway.statuses[intent.external_id] = "cancelled"

    ack = await _deliver(processor, intent.external_id)

    assert ack.status == "applied"
    assert load_intents(session_factory, order_id)[0].status == "rejected"
    assert load_order(session_factory, order_id).status == "awaiting_payment"


@pytest.mark.asyncio
async def test_non_terminal_gateway_status_is_no_change(manager, processor, gateway, session_factory, make_order):
    order_id = make_order()
    intent = await manager.create_intent(order_id, "payer-1", PixMethod())
    gateway.statuses[intent.external_id] = "in_process"

    ack = await _deliver(processor, intent.external_id)

    assert ack.status == "no_change"
    assert load_intents(session_factory, order_id)[0].status == "pending"


@pytest.mark.asyncio
async def test_bad_signature_rejected_without_side_effects(manager, processor, gateway, session_factory, make_order):
    order_id = make_order()
    intent = await manager.create_intent(order_id, "payer-1", PixMethod())
    gateway.statuses[intent.external_id] = "approved"
    calls_before = len(gateway.calls)

    with pytest.raises(WebhookAuthenticationError):
        await _deliver(processor, intent.external_id, secret="wrong-secret")
    with pytest.raises(WebhookAuthenticationError):
        await processor.receive(_body(intent.external_id), {}, None, "req-x")

    assert _webhook_rows(session_factory) == []
    assert len(gateway.calls) == calls_before
    assert load_intents(session_factory, order_id)[0].status == "pending"


@pytest.mark.asyncio
async def test_missing_secret_rejects_everything(session_factory, reconciler):
    processor = WebhookProcessor(session_factory, reconciler, webhook_secret="", inline_processing=True)

    with pytest.raises(WebhookAuthenticationError):
        await processor.receive(_body("123"), {}, sign_delivery("", "123", "req-1", "1"), "req-1")


@pytest.mark.asyncio
async def test_ignored_and_malformed_deliveries(processor, session_factory):
    ack = await processor.receive(json.dumps({"action": "merchant_order.updated"}).encode(), {}, None, None)
    assert ack.status == "ignored"

    with pytest.raises(MalformedWebhookError):
        await processor.receive(json.dumps({"action": "payment.updated", "data": {}}).encode(), {}, None, None)
    with pytest.raises(MalformedWebhookError):
        await processor.receive(b"{oops", {}, None, None)

    assert _webhook_rows(session_factory) == []


@pytest.mark.asyncio
async def test_checkout_payment_recovered_by_cross_reference(manager, processor, gateway, session_factory, make_order):
    order_id = make_order()
    intent = await manager.create_intent(order_id, "payer-1", CheckoutRedirectMethod())
    assert intent.external_id is None
    gateway.order_refs["mp-777"] = order_id
    gateway.statuses["mp-777"] = "approved"

    ack = await _deliver(processor, "mp-777")

    assert ack.status == "applied"
    [stored] = load_intents(session_factory, order_id)
    assert stored.intent_id == intent.intent_id
    assert stored.external_id == "mp-777"
    assert stored.status == "approved"
    assert gateway.call_names()[-2:] == ["fetch_details", "fetch_status"]


@pytest.mark.asyncio
async def test_payment_of_superseded_intent_is_ignored(manager, processor, gateway, session_factory, make_order):
    order_id = make_order()
    current = await manager.create_intent(order_id, "payer-1", PixMethod())
    gateway.order_refs["old-payment"] = order_id
    gateway.statuses["old-payment"] = "approved"

    ack = await _deliver(processor, "old-payment")

    assert ack.status == "not_found"
    [stored] = load_intents(session_factory, order_id)
    assert stored.external_id == current.external_id
    assert stored.status == "pending"


@pytest.mark.asyncio
async def test_unknown_payment_without_order_reference(processor, gateway):
    ack = await _deliver(processor, "stranger")

    assert ack.status == "not_found"
    assert gateway.call_names() == ["fetch_details"]


@pytest.mark.asyncio
async def test_failed_processing_is_retried_on_redelivery(manager, processor, gateway, session_factory, make_order):
    order_id = make_order()
    intent = await manager.create_intent(order_id, "payer-1", PixMethod())
    gateway.statuses[intent.external_id] = "approved"
    gateway.fetch_error = GatewayError("gateway fetch_status failed with 503", http_status=503)

    with pytest.raises(GatewayError):
        await _deliver(processor, intent.external_id, request_id="req-9")
    [row] = _webhook_rows(session_factory)
    assert not row.is_processed
    assert "503" in row.processing_error

    gateway.fetch_error = None
    ack = await _deliver(processor, intent.external_id, request_id="req-9")

    assert ack.status == "applied"
    [row] = _webhook_rows(session_factory)
    assert row.is_processed
    assert row.processing_error is None


@pytest.mark.asyncio
async def test_deferred_processing_through_outbox_job(manager, reconciler, gateway, session_factory, make_order):
    processor = WebhookProcessor(session_factory, reconciler, webhook_secret=WEBHOOK_SECRET, inline_processing=False)
    order_id = make_order()
    intent = await manager.create_intent(order_id, "payer-1", PixMethod())
    gateway.statuses[intent.external_id] = "approved"

    ack = await _deliver(processor, intent.external_id)

    assert ack.status == "accepted"
    assert load_intents(session_factory, order_id)[0].status == "pending"
    with session_factory() as db:
        job = db.execute(select(OutboxEvent).where(OutboxEvent.topic == WEBHOOK_JOBS_TOPIC)).scalar_one()
        envelope = EventEnvelope(**job.payload)
    assert envelope.payload["external_id"] == intent.external_id

    await processor.handle_webhook_job(envelope)
    calls_after_first = len(gateway.calls)
    await processor.handle_webhook_job(envelope)

    assert len(gateway.calls) == calls_after_first
    with session_factory() as db:
        assert db.get(PaymentIntent, intent.intent_id).status == "approved"
    [row] = _webhook_rows(session_factory)
    assert row.processing_result == "applied"
