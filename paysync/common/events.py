"""Kafka transport for events published from the service outboxes.

Two topics carry traffic: notification requests raised by payment transitions
and deferred webhook jobs raised by the webhook endpoint. Messages are
`EventEnvelope` JSON keyed by aggregate id, so the events of one order (or one
gateway payment) stay ordered on a single partition.

A handler failure is logged and its offset still commits. Webhook rows keep
their processing error and the reconciliation sweep replays them; a lost
notification only costs the payer a message.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.structs import ConsumerRecord
from pydantic import BaseModel, Field, ValidationError

from paysync.common.config import settings
from paysync.common.logging import bind_log_context, logger
from paysync.common.metrics import event_queue_delay_seconds


NOTIFICATIONS_TOPIC = "notifications.requested"
WEBHOOK_JOBS_TOPIC = "gateway.webhook.received"

POLL_TIMEOUT_MS = 500
POLL_MAX_RECORDS = 50
RESTART_DELAY_SECONDS = 2.0

EventHandler = Callable[["EventEnvelope"], Awaitable[None]]


class EventEnvelope(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    aggregate_id: str
    occurred_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    trace_id: str
    payload: dict[str, Any]

    def encode(self) -> bytes:
        return self.model_dump_json().encode("utf-8")

    @classmethod
    def decode(cls, raw: bytes) -> "EventEnvelope":
        return cls.model_validate_json(raw)

    def age_seconds(self, now: datetime | None = None) -> float:
        """Time since the event was raised; naive timestamps are read as UTC."""

        occurred = datetime.fromisoformat(self.occurred_at.replace("Z", "+00:00"))
        if occurred.tzinfo is None:
            occurred = occurred.replace(tzinfo=timezone.utc)
        now = now or datetime.now(timezone.utc)
        return max(0.0, (now - occurred).total_seconds())


class KafkaBus:
    """Producer side of the bus, started on first publish."""

    def __init__(self, bootstrap_servers: str | None = None, client_id: str | None = None) -> None:
        self.bootstrap_servers = bootstrap_servers or settings.kafka_bootstrap_servers
        self.client_id = client_id or settings.service_name
        self._producer: AIOKafkaProducer | None = None

    async def _started(self) -> AIOKafkaProducer:
        if self._producer is None:
            producer = AIOKafkaProducer(
                bootstrap_servers=self.bootstrap_servers,
                client_id=self.client_id,
                acks="all",
                enable_idempotence=True,
            )
            await producer.start()
            self._producer = producer
        return self._producer

    async def publish(self, topic: str, event: EventEnvelope) -> None:
        producer = await self._started()
        await producer.send_and_wait(topic, event.encode(), key=event.aggregate_id.encode("utf-8"))

    async def close(self) -> None:
        if self._producer is not None:
            await self._producer.stop()
            self._producer = None


async def dispatch_message(topic: str, group_id: str, message: ConsumerRecord, handler: EventHandler) -> None:
    """Decode one record and run `handler` on it inside the event's log context."""

    try:
        event = EventEnvelope.decode(message.value)
    except ValidationError as exc:
        logger.error("undecodable event topic=%s offset=%s error=%s", topic, message.offset, exc)
        return

    event_queue_delay_seconds.labels(service=settings.service_name, topic=topic).observe(event.age_seconds())
    with bind_log_context(trace_id=event.trace_id, order_id=event.payload.get("order_id")):
        logger.info(
            "event_received topic=%s group=%s event_type=%s event_id=%s aggregate_id=%s",
            topic,
            group_id,
            event.event_type,
            event.event_id,
            event.aggregate_id,
        )
        try:
            await handler(event)
        except Exception as exc:
            logger.exception(
                "event handler failed topic=%s group=%s offset=%s event_id=%s error=%s",
                topic,
                group_id,
                message.offset,
                event.event_id,
                exc,
            )


async def _drain(consumer: AIOKafkaConsumer, topic: str, group_id: str, handler: EventHandler) -> None:
    while True:
        batches = await consumer.getmany(timeout_ms=POLL_TIMEOUT_MS, max_records=POLL_MAX_RECORDS)
        for messages in batches.values():
            for message in messages:
                await dispatch_message(topic, group_id, message, handler)
        if batches:
            await consumer.commit()


async def consume_forever(topic: str, group_id: str, handler: EventHandler) -> None:
    """Feed every envelope on `topic` to `handler`, rebuilding the consumer after broker errors."""

    while True:
        consumer = AIOKafkaConsumer(
            topic,
            bootstrap_servers=settings.kafka_bootstrap_servers,
            group_id=group_id,
            client_id=settings.service_name,
            auto_offset_reset="earliest",
            enable_auto_commit=False,
        )
        try:
            await consumer.start()
            await _drain(consumer, topic, group_id, handler)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("consumer restarting topic=%s group=%s error=%s", topic, group_id, exc)
            await asyncio.sleep(RESTART_DELAY_SECONDS)
        finally:
            await consumer.stop()
