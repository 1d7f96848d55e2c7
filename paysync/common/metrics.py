"""Prometheus metric definitions shared across services."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


payment_intents_created_total = Counter(
    "payment_intents_created_total",
    "Payment intents persisted after a successful gateway call",
    ["service", "method"],
)
payment_intents_reused_total = Counter(
    "payment_intents_reused_total",
    "Create calls answered with an existing complete pending intent",
    ["service", "method"],
)
payment_intents_replaced_total = Counter(
    "payment_intents_replaced_total",
    "Stale pending intents deleted and replaced by a fresh one",
    ["service", "method"],
)
payment_attempts_total = Counter(
    "payment_attempts_total",
    "Outbound gateway creation attempts",
    ["service", "method", "result"],
)
attempt_persist_failures_total = Counter(
    "attempt_persist_failures_total",
    "Audit attempt rows that could not be written",
    ["service"],
)
intent_transitions_total = Counter(
    "intent_transitions_total",
    "Terminal transitions applied to payment intents",
    ["service", "outcome", "source"],
)
intent_transition_noops_total = Counter(
    "intent_transition_noops_total",
    "Transition calls that were idempotent no-ops",
    ["service", "source"],
)
gateway_calls_total = Counter(
    "gateway_calls_total",
    "Gateway API calls by operation and result",
    ["service", "operation", "result"],
)
gateway_latency_seconds = Histogram(
    "gateway_latency_seconds",
    "Gateway API call latency seconds",
    ["service", "operation"],
)
webhook_events_total = Counter(
    "webhook_events_total",
    "Inbound webhook deliveries by outcome",
    ["service", "outcome"],
)
webhook_signature_failures_total = Counter(
    "webhook_signature_failures_total",
    "Inbound webhooks dropped because authentication failed",
    ["service"],
)
reconciliation_runs_total = Counter(
    "reconciliation_runs_total",
    "Reconciliation sync executions by trigger and result",
    ["service", "trigger", "result"],
)
payment_e2e_seconds = Histogram(
    "payment_e2e_seconds",
    "Intent duration seconds from creation to terminal status",
    ["service", "terminal_state"],
)
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)
event_queue_delay_seconds = Histogram(
    "event_queue_delay_seconds",
    "Event queue delay seconds between occurred_at and consume time",
    ["service", "topic"],
)
outbox_pending_total = Gauge(
    "outbox_pending_total",
    "Current count of outbox events not yet sent",
    ["service"],
)
outbox_oldest_pending_age_seconds = Gauge(
    "outbox_oldest_pending_age_seconds",
    "Age in seconds of the oldest pending outbox event",
    ["service"],
)
retries_total = Counter("retries_total", "Retry count", ["service", "dependency"])
duplicate_events_skipped_total = Counter(
    "duplicate_events_skipped_total",
    "Duplicate inbox events skipped",
    ["service", "topic"],
)
notifications_total = Counter(
    "notifications_total",
    "Notifications handled by delivery result",
    ["service", "result"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
