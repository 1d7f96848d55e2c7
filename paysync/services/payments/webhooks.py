"""Inbound gateway webhooks: parse, authenticate, deduplicate, reconcile.

Deliveries are acknowledged as soon as they are authenticated and stored. The
stored row and a `gateway.webhook.received` outbox job are committed together;
the payments service consumes the job and reconciles the payment. With inline
processing enabled the reconciliation runs inside the request instead. Rows whose
processing failed are replayed by the reconciliation sweep.
"""

import json
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from paysync.common.events import WEBHOOK_JOBS_TOPIC, EventEnvelope
from paysync.common.logging import logger, trace_id_ctx
from paysync.common.metrics import (
    duplicate_events_skipped_total,
    webhook_events_total,
    webhook_signature_failures_total,
)
from paysync.common.outbox import enqueue_outbox_event
from paysync.services.payments.errors import MalformedWebhookError, WebhookAuthenticationError
from paysync.services.payments.models import InboxEvent, OutboxEvent, WebhookEvent
from paysync.services.payments.reconciliation import ReconciliationService, record_webhook_result
from paysync.services.payments.schemas import WebhookAck
from paysync.services.payments.signatures import verify_signature


class WebhookNotification(BaseModel):
    """What the gateway told us, independent of the payload shape it used."""

    external_id: str | None = None
    action: str | None = None
    kind: str | None = None

    @property
    def is_payment_event(self) -> bool:
        if self.action:
            return self.action.lower().startswith("payment.")
        if self.kind:
            return self.kind.lower() == "payment"
        # Bare id-only deliveries are treated as payment updates.
        return True


def normalize_id(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def _resource_id(resource: Any) -> str | None:
    text = normalize_id(resource)
    if text is None:
        return None
    return normalize_id(text.rstrip("/").rsplit("/", 1)[-1])


def parse_notification(body: bytes, query: Mapping[str, str]) -> WebhookNotification:
    """Accept the current `{action, data: {id}}` shape and the legacy ones.

    Legacy deliveries use `{type, data: {id}}`, `{id, topic}`, `{resource, topic}`
    or only query parameters (`data.id` / `id` with `type` / `topic`). A query id
    wins over a body id because it is the one the gateway signs.
    """

    payload: dict[str, Any] = {}
    if body and body.strip():
        try:
            decoded = json.loads(body)
        except ValueError as exc:
            raise MalformedWebhookError("webhook body is not valid JSON") from exc
        if not isinstance(decoded, dict):
            raise MalformedWebhookError("webhook body must be a JSON object")
        payload = decoded

    body_id = None
    data = payload.get("data")
    if isinstance(data, dict):
        body_id = normalize_id(data.get("id"))
    if body_id is None:
        body_id = normalize_id(payload.get("id"))
    if body_id is None:
        body_id = _resource_id(payload.get("resource"))

    query_id = normalize_id(query.get("data.id")) or normalize_id(query.get("id"))
    kind = payload.get("type") or payload.get("topic") or query.get("type") or query.get("topic")
    return WebhookNotification(
        external_id=query_id or body_id,
        action=normalize_id(payload.get("action")),
        kind=normalize_id(kind),
    )


class WebhookProcessor:
    """Turns authenticated gateway deliveries into reconciliation runs."""

    def __init__(
        self,
        session_factory,
        reconciler: ReconciliationService,
        webhook_secret: str | None,
        inline_processing: bool = False,
        service_name: str = "payments",
    ) -> None:
        self.session_factory = session_factory
        self.reconciler = reconciler
        self.webhook_secret = webhook_secret
        self.inline_processing = inline_processing
        self.service_name = service_name

    def _count(self, outcome: str) -> None:
        webhook_events_total.labels(service=self.service_name, outcome=outcome).inc()

    async def receive(
        self,
        body: bytes,
        query: Mapping[str, str],
        x_signature: str | None,
        x_request_id: str | None,
        source_ip: str | None = None,
        query_string: str | None = None,
    ) -> WebhookAck:
        """Authenticate and store one delivery; nothing is written unless it is authentic."""

        notification = parse_notification(body, query)
        if not notification.is_payment_event:
            logger.info("ignoring non-payment webhook action=%s kind=%s", notification.action, notification.kind)
            self._count("ignored")
            return WebhookAck(status="ignored")
        if notification.external_id is None:
            self._count("malformed")
            raise MalformedWebhookError("missing payment id in query or body")

        if not verify_signature(self.webhook_secret, x_signature, x_request_id, notification.external_id):
            logger.warning(
                "webhook rejected: signature verification failed external_id=%s request_id=%s",
                notification.external_id,
                x_request_id,
            )
            webhook_signature_failures_total.labels(service=self.service_name).inc()
            self._count("unauthenticated")
            raise WebhookAuthenticationError("invalid webhook signature")

        event_id = self._store(notification, body, x_request_id, source_ip, query_string)
        if event_id is None:
            self._count("duplicate")
            return WebhookAck(status="duplicate", duplicate=True)

        self._count("accepted")
        if self.inline_processing:
            result = await self.process_event(event_id, notification.external_id)
            return WebhookAck(status=result)
        return WebhookAck(status="accepted")

    def _store(
        self,
        notification: WebhookNotification,
        body: bytes,
        x_request_id: str | None,
        source_ip: str | None,
        query_string: str | None,
    ) -> str | None:
        """Persist the delivery (and its job unless inline); None means duplicate.

        A delivery whose earlier processing failed is not a duplicate: its row is
        reused so the gateway's retry gets processed again.
        """

        with self.session_factory() as db:
            event = None
            if x_request_id:
                event = db.execute(
                    select(WebhookEvent).where(WebhookEvent.request_id == x_request_id)
                ).scalar_one_or_none()
                if event is not None and event.processing_error is None:
                    logger.info("duplicate webhook request_id=%s external_id=%s", x_request_id, event.external_id)
                    return None
            if event is None:
                event = WebhookEvent(
                    external_id=notification.external_id,
                    request_id=x_request_id,
                    action=notification.action or notification.kind,
                    raw_payload=body.decode("utf-8", errors="replace") if body else None,
                    query_string=query_string,
                    source_ip=source_ip,
                )
                db.add(event)
                db.flush()
            else:
                event.processing_error = None
            if not self.inline_processing:
                enqueue_outbox_event(
                    db,
                    OutboxEvent,
                    WEBHOOK_JOBS_TOPIC,
                    EventEnvelope(
                        event_type=WEBHOOK_JOBS_TOPIC,
                        aggregate_id=notification.external_id,
                        trace_id=trace_id_ctx.get(),
                        payload={"webhook_event_id": event.event_id, "external_id": notification.external_id},
                    ),
                    aggregate_type="webhook",
                )
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.info("duplicate webhook lost insert race request_id=%s", x_request_id)
                return None
            logger.info(
                "webhook stored event_id=%s external_id=%s request_id=%s",
                event.event_id,
                notification.external_id,
                x_request_id,
            )
            return event.event_id

    async def process(self, external_id: str, source: str = "webhook") -> str:
        return await self.reconciler.reconcile_external_id(external_id, source)

    async def process_event(self, event_id: str, external_id: str) -> str:
        """Reconcile one stored delivery and record the result on its row."""

        try:
            result = await self.process(external_id)
        except Exception as exc:
            record_webhook_result(self.session_factory, event_id, result=None, error=str(exc))
            raise
        record_webhook_result(self.session_factory, event_id, result=result, error=None)
        logger.info("webhook processed event_id=%s external_id=%s result=%s", event_id, external_id, result)
        return result

    def _inbox_seen(self, db, event_id: str) -> bool:
        existing = db.execute(
            select(InboxEvent).where(
                InboxEvent.event_id == event_id,
                InboxEvent.consumed_by_service == self.service_name,
            )
        ).scalar_one_or_none()
        return existing is not None

    async def handle_webhook_job(self, event: EventEnvelope) -> None:
        """Consume one `gateway.webhook.received` job, skipping redeliveries."""

        with self.session_factory() as db:
            if self._inbox_seen(db, event.event_id):
                logger.info("duplicate event skipped topic=%s event_id=%s", WEBHOOK_JOBS_TOPIC, event.event_id)
                duplicate_events_skipped_total.labels(service=self.service_name, topic=WEBHOOK_JOBS_TOPIC).inc()
                return

        await self.process_event(event.payload["webhook_event_id"], event.payload["external_id"])

        with self.session_factory() as db:
            db.add(InboxEvent(event_id=event.event_id, consumed_by_service=self.service_name))
            db.commit()
