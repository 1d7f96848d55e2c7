"""Notification consumer for payment lifecycle events.

Delivery is fire-and-forget: a failed push is logged and recorded on the log
row, never retried back into the payment path.
"""

import httpx
from sqlalchemy import select

from paysync.common.events import NOTIFICATIONS_TOPIC, EventEnvelope, consume_forever
from paysync.common.logging import logger
from paysync.common.metrics import duplicate_events_skipped_total, notifications_total
from paysync.services.notification.models import NotificationInboxEvent, NotificationLog


class NotificationService:
    """Stores notification requests and forwards them to the push endpoint."""

    def __init__(
        self,
        session_factory,
        push_url: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 5.0,
        service_name: str = "notification",
    ) -> None:
        self.session_factory = session_factory
        self.push_url = push_url
        self.http_client = http_client
        self.timeout_seconds = timeout_seconds
        self.service_name = service_name

    def _inbox_seen(self, db, event_id: str) -> bool:
        return (
            db.execute(
                select(NotificationInboxEvent).where(
                    NotificationInboxEvent.event_id == event_id,
                    NotificationInboxEvent.consumed_by_service == self.service_name,
                )
            ).scalar_one_or_none()
            is not None
        )

    def _mark_inbox(self, db, event_id: str) -> None:
        db.add(NotificationInboxEvent(event_id=event_id, consumed_by_service=self.service_name))

    async def _push(self, payload: dict) -> str | None:
        """POST the notification; return an error string instead of raising."""

        try:
            if self.http_client is not None:
                response = await self.http_client.post(self.push_url, json=payload, timeout=self.timeout_seconds)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.post(self.push_url, json=payload)
        except httpx.HTTPError as exc:
            return f"push transport error: {exc}"
        if response.status_code >= 400:
            return f"push endpoint returned {response.status_code}"
        return None

    async def handle_notification(self, event: EventEnvelope) -> None:
        """Log (and push, when configured) one notification, skipping duplicates."""

        with self.session_factory() as db:
            if self._inbox_seen(db, event.event_id):
                logger.info("duplicate event skipped topic=%s event_id=%s", event.event_type, event.event_id)
                duplicate_events_skipped_total.labels(
                    service=self.service_name,
                    topic=event.event_type,
                ).inc()
                return

        payload = event.payload
        error = None
        channel = "log"
        if self.push_url:
            channel = "push"
            error = await self._push(payload)
            if error:
                logger.warning(
                    "notification dropped user_id=%s order_id=%s error=%s",
                    payload.get("user_id"),
                    payload.get("order_id"),
                    error,
                )
        result = "failed" if error else "delivered"
        notifications_total.labels(service=self.service_name, result=result).inc()

        with self.session_factory() as db:
            db.add(
                NotificationLog(
                    user_id=payload.get("user_id") or "",
                    order_id=payload.get("order_id") or event.aggregate_id,
                    kind=payload.get("kind"),
                    title=payload.get("title") or "",
                    message=payload.get("message") or "",
                    channel=channel,
                    delivered=error is None,
                    error=error,
                )
            )
            self._mark_inbox(db, event.event_id)
            db.commit()
        logger.info(
            "notification %s user_id=%s kind=%s title=%s",
            result,
            payload.get("user_id"),
            payload.get("kind"),
            payload.get("title"),
        )

    def list_for_user(self, user_id: str, limit: int = 50) -> list[NotificationLog]:
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(NotificationLog)
                    .where(NotificationLog.user_id == user_id)
                    .order_by(NotificationLog.created_at.desc())
                    .limit(limit)
                ).scalars()
            )

    async def start_consumers(self) -> None:
        await consume_forever(NOTIFICATIONS_TOPIC, "notification-requests", self.handle_notification)
