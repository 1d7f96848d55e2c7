"""HTTP surface for payment intents, gateway webhooks and reconciliation.

Background tasks started with the app: the outbox publisher, the consumer for
deferred webhook jobs and the periodic reconciliation sweep.
"""

import asyncio
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

import redis
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import PlainTextResponse

from paysync.common.config import settings
from paysync.common.db import SessionLocal
from paysync.common.events import WEBHOOK_JOBS_TOPIC, KafkaBus, consume_forever
from paysync.common.logging import configure_logging, logger, trace_id_ctx
from paysync.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from paysync.common.outbox import publish_outbox_forever
from paysync.common.ratelimit import TokenBucket
from paysync.common.startup import gateway_config_warnings, log_startup_config
from paysync.common.tracing import instrument_app, setup_tracing
from paysync.services.gateway.client import GatewayConfig, MercadoPagoGateway
from paysync.services.gateway.contract import GatewayError, GatewayTimeoutError
from paysync.services.payments.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    PaymentError,
    RateLimitedError,
    WebhookAuthenticationError,
)
from paysync.services.payments.models import OutboxEvent
from paysync.services.payments.reconciliation import ReconciliationService
from paysync.services.payments.schemas import (
    AddCardRequest,
    CheckoutResponse,
    CreatePaymentRequest,
    IntentResponse,
    SavedCardResponse,
    SweepResponse,
    WebhookAck,
)
from paysync.services.payments.service import IntentManager, intent_response, saved_card_response
from paysync.services.payments.webhooks import WebhookProcessor

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(settings, gateway_config_warnings(settings))
gateway = MercadoPagoGateway(GatewayConfig.from_settings(settings), service_name=settings.service_name)
rdb = redis.Redis.from_url(settings.redis_url, decode_responses=True)
manager = IntentManager(
    SessionLocal,
    gateway,
    rate_limiter=TokenBucket(rdb, settings.create_rate_limit_per_minute, prefix="tokenbucket:payments"),
    gateway_timeout=settings.gateway_timeout_seconds,
    default_payer_email=settings.default_payer_email,
    description_prefix=settings.payment_description_prefix,
    service_name=settings.service_name,
)
reconciler = ReconciliationService(
    SessionLocal,
    gateway,
    gateway_timeout=settings.gateway_timeout_seconds,
    service_name=settings.service_name,
)
webhooks = WebhookProcessor(
    SessionLocal,
    reconciler,
    webhook_secret=settings.webhook_secret,
    inline_processing=settings.webhook_inline_processing,
    service_name=settings.service_name,
)
kafka = KafkaBus()


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run outbox publisher, webhook-job consumer and sweep loop with app lifecycle."""

    tasks = [
        asyncio.create_task(publish_outbox_forever(SessionLocal, OutboxEvent, kafka, settings.service_name)),
        asyncio.create_task(
            reconciler.reconciliation_worker(
                settings.sweep_interval_seconds,
                settings.sync_window_seconds,
                settings.sweep_batch_size,
            )
        ),
    ]
    if not settings.webhook_inline_processing:
        tasks.append(
            asyncio.create_task(
                consume_forever(WEBHOOK_JOBS_TOPIC, "payments-webhook-jobs", webhooks.handle_webhook_job)
            )
        )
    yield
    for task in tasks:
        task.cancel()
    await kafka.close()
    await gateway.close()


app = FastAPI(title="PaySync Payments", lifespan=lifespan)
instrument_app(app)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Record request count and latency for every HTTP call."""

    start = perf_counter()
    route = request.url.path
    method = request.method
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        route_obj = request.scope.get("route")
        if route_obj is not None and getattr(route_obj, "path", None):
            route = route_obj.path
        return response
    finally:
        elapsed = max(0.0, perf_counter() - start)
        http_request_duration_seconds.labels(
            service=settings.service_name,
            route=route,
            method=method,
        ).observe(elapsed)
        http_requests_total.labels(
            service=settings.service_name,
            route=route,
            method=method,
            status_code=str(status_code),
        ).inc()


def enforce_api_key(x_api_key: str | None) -> None:
    """API-key gate for internal endpoints."""

    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


def _http_error(exc: Exception) -> HTTPException:
    """Map domain and gateway errors to HTTP status codes."""

    message = str(exc)
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=message)
    if isinstance(exc, ForbiddenError):
        return HTTPException(status_code=403, detail=message)
    if isinstance(exc, ConflictError):
        return HTTPException(status_code=409, detail=message)
    if isinstance(exc, RateLimitedError):
        return HTTPException(status_code=429, detail=message)
    if isinstance(exc, GatewayTimeoutError):
        return HTTPException(status_code=504, detail="payment gateway timed out")
    if isinstance(exc, GatewayError):
        return HTTPException(status_code=502, detail="payment gateway error")
    return HTTPException(status_code=400, detail=message)


def _bind_trace(x_trace_id: str | None) -> str:
    trace_id = x_trace_id or str(uuid4())
    trace_id_ctx.set(trace_id)
    return trace_id


@app.post("/payments", response_model=IntentResponse)
async def create_payment(
    req: CreatePaymentRequest,
    x_payer_id: str = Header(),
    x_trace_id: str | None = Header(default=None),
):
    """Create or reuse the order's pending intent; the amount is the order's price."""

    _bind_trace(x_trace_id)
    try:
        intent = await manager.create_intent(req.order_id, x_payer_id, req.payment)
    except (PaymentError, GatewayError) as exc:
        raise _http_error(exc) from exc
    return intent_response(intent)


@app.post("/payments/checkout/{order_id}", response_model=CheckoutResponse)
async def create_checkout(
    order_id: str,
    x_payer_id: str = Header(),
    x_trace_id: str | None = Header(default=None),
):
    """Create a hosted-checkout intent and return its redirect URL."""

    _bind_trace(x_trace_id)
    try:
        intent = await manager.create_checkout_redirect(order_id, x_payer_id)
    except (PaymentError, GatewayError) as exc:
        raise _http_error(exc) from exc
    return CheckoutResponse(intent_id=intent.intent_id, order_id=intent.order_id, checkout_url=intent.checkout_url)


@app.get("/payments/by-order/{order_id}", response_model=IntentResponse)
def get_pending_for_order(order_id: str, x_payer_id: str = Header()):
    """Live pending intent for an order."""

    try:
        intent = manager.get_pending_intent(order_id, x_payer_id)
    except PaymentError as exc:
        raise _http_error(exc) from exc
    if intent is None:
        raise HTTPException(status_code=404, detail="no pending payment for order")
    return intent_response(intent)


@app.get("/payments/saved-cards", response_model=list[SavedCardResponse])
def list_saved_cards(x_payer_id: str = Header()):
    return [saved_card_response(card) for card in manager.list_saved_cards(x_payer_id)]


@app.post("/payments/saved-cards", response_model=SavedCardResponse)
async def add_saved_card(
    req: AddCardRequest,
    x_payer_id: str = Header(),
    x_trace_id: str | None = Header(default=None),
):
    """Store a tokenized card with the gateway for later payments."""

    _bind_trace(x_trace_id)
    try:
        card = await manager.add_saved_card(x_payer_id, req.token, req.email)
    except (PaymentError, GatewayError) as exc:
        raise _http_error(exc) from exc
    return saved_card_response(card)


@app.get("/payments/{intent_id}", response_model=IntentResponse)
def get_payment(intent_id: str, x_payer_id: str = Header()):
    try:
        intent = manager.get_intent(intent_id, x_payer_id)
    except PaymentError as exc:
        raise _http_error(exc) from exc
    return intent_response(intent)


@app.get("/payments/{intent_id}/pix-code", response_class=PlainTextResponse)
def get_pix_code(intent_id: str, x_payer_id: str = Header()):
    """PIX copy-paste code as plain text."""

    try:
        return manager.get_pix_code(intent_id, x_payer_id)
    except PaymentError as exc:
        raise _http_error(exc) from exc


@app.post("/payments/sync/{order_id}", response_model=IntentResponse)
async def sync_payment(
    order_id: str,
    x_payer_id: str | None = Header(default=None),
    x_api_key: str | None = Header(default=None),
    x_trace_id: str | None = Header(default=None),
):
    """Pull the gateway status for the order's latest intent.

    Payers sync their own orders; without `x-payer-id` the API key is required.
    """

    if x_payer_id is None:
        enforce_api_key(x_api_key)
    _bind_trace(x_trace_id)
    try:
        intent = await reconciler.sync_status(order_id, x_payer_id)
    except (PaymentError, GatewayError) as exc:
        raise _http_error(exc) from exc
    if intent is None:
        raise HTTPException(status_code=404, detail="no payment for order")
    return intent_response(intent)


@app.post("/webhooks/gateway", response_model=WebhookAck)
async def gateway_webhook(
    request: Request,
    x_signature: str | None = Header(default=None),
    x_request_id: str | None = Header(default=None),
):
    """Inbound gateway notification. Authentic deliveries are acknowledged once stored."""

    _bind_trace(x_request_id)
    body = await request.body()
    try:
        return await webhooks.receive(
            body,
            request.query_params,
            x_signature,
            x_request_id,
            source_ip=request.client.host if request.client else None,
            query_string=request.url.query or None,
        )
    except WebhookAuthenticationError as exc:
        raise HTTPException(status_code=401, detail="unauthorized") from exc
    except (PaymentError, GatewayError) as exc:
        logger.warning("webhook not processed: %s", exc)
        raise _http_error(exc) from exc


@app.post("/internal/reconciliation/run", response_model=SweepResponse)
async def run_reconciliation(
    older_than_seconds: int | None = None,
    limit: int | None = None,
    x_api_key: str | None = Header(default=None),
):
    """Run one reconciliation sweep over stale pending intents."""

    enforce_api_key(x_api_key)
    return await reconciler.sweep_pending(
        older_than_seconds if older_than_seconds is not None else settings.sync_window_seconds,
        limit if limit is not None else settings.sweep_batch_size,
    )


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Liveness check for the container orchestrator."""

    return {"ok": True}
