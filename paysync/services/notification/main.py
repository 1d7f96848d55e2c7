"""Notification service lifecycle and lightweight read endpoints."""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI

from paysync.common.db import SessionLocal
from paysync.common.config import settings
from paysync.common.logging import configure_logging
from paysync.common.tracing import instrument_app, setup_tracing
from paysync.common.metrics import metrics_response
from paysync.common.startup import log_startup_config
from paysync.services.notification.service import NotificationService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(settings)
service = NotificationService(SessionLocal, push_url=settings.push_webhook_url)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run consumer loop with FastAPI application lifecycle."""

    consumer_task = asyncio.create_task(service.start_consumers())
    yield
    consumer_task.cancel()


app = FastAPI(title="PaySync Notification Service", lifespan=lifespan)
instrument_app(app)


@app.get("/health")
def health():
    """Liveness check for the container orchestrator."""

    return {"ok": True}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/notifications/{user_id}")
def list_notifications(user_id: str, limit: int = 50):
    """Most recent notifications addressed to one user."""

    rows = service.list_for_user(user_id, limit=limit)
    return [
        {
            "id": row.id,
            "order_id": row.order_id,
            "kind": row.kind,
            "title": row.title,
            "message": row.message,
            "channel": row.channel,
            "delivered": row.delivered,
            "created_at": row.created_at,
        }
        for row in rows
    ]
