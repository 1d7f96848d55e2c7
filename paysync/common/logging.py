"""JSON logs on stdout, stamped with the payment identifiers in scope.

HTTP handlers set the context variables directly; event consumers wrap each
message in `bind_log_context` so the identifiers never leak to the next one.
"""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from paysync.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
correlation_id_ctx: ContextVar[str] = ContextVar("correlation_id", default="")
order_id_ctx: ContextVar[str] = ContextVar("order_id", default="")

CONTEXT_FIELDS: dict[str, ContextVar[str]] = {
    "trace_id": trace_id_ctx,
    "correlation_id": correlation_id_ctx,
    "order_id": order_id_ctx,
}
# Client libraries that log every connection and request at INFO.
QUIET_LOGGERS = ("aiokafka", "httpx", "httpcore")

logger = logging.getLogger("paysync")


class PaymentContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.service = settings.service_name
        for field, var in CONTEXT_FIELDS.items():
            setattr(record, field, var.get() or None)
        return True


@contextmanager
def bind_log_context(**values: str | None):
    """Set the given context fields for the block and restore the previous values after it."""

    unknown = set(values) - set(CONTEXT_FIELDS)
    if unknown:
        raise ValueError(f"unknown log context fields: {sorted(unknown)}")
    tokens = [(CONTEXT_FIELDS[field], CONTEXT_FIELDS[field].set(value)) for field, value in values.items() if value]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def configure_logging(level: str | None = None) -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(PaymentContextFilter())
    handler.setFormatter(
        JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(service)s %(trace_id)s %(correlation_id)s %(order_id)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        )
    )

    root = logging.getLogger()
    # Replacing the handlers keeps repeated calls from duplicating output.
    root.handlers = [handler]
    root.setLevel((level or settings.log_level).upper())
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
