"""Shared fixtures: in-memory database per test and a scripted fake gateway."""

import os

os.environ.setdefault("POSTGRES_DSN", "sqlite://")
os.environ.setdefault("API_KEY", "test-api-key")
os.environ.setdefault("OTEL_ENABLED", "false")
os.environ.setdefault("SERVICE_NAME", "payments-test")
os.environ.setdefault("WEBHOOK_SECRET", "test-secret")

import pytest
from sqlalchemy import select

from paysync.common.db import Base, build_engine, build_session_factory
from paysync.services.gateway.contract import (
    CheckoutPayload,
    GatewayCustomerCard,
    GatewayIntentResult,
    GatewayPaymentStatus,
    PixPayload,
)
from paysync.services.notification import models as notification_models  # noqa: F401
from paysync.services.payments.models import ORDER_AWAITING_PAYMENT, Order, OutboxEvent, PaymentIntent
from paysync.services.payments.reconciliation import ReconciliationService
from paysync.services.payments.service import IntentManager
from paysync.services.payments.webhooks import WebhookProcessor


WEBHOOK_SECRET = "test-secret"


class FakeGateway:
    """Scripted stand-in for the gateway adapter; records every call."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict]] = []
        self.create_error: Exception | None = None
        self.fetch_error: Exception | None = None
        self.pix_complete = True
        self.card_status = "approved"
        self.statuses: dict[str, str] = {}
        self.order_refs: dict[str, str] = {}
        self.customer_error: Exception | None = None
        self._counter = 0

    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def _next_id(self) -> str:
        self._counter += 1
        return str(90000 + self._counter)

    async def create_intent(self, method, amount_cents, description, payer, order_ref, idempotency_key, timeout=None):
        self.calls.append(
            (
                "create_intent",
                {
                    "method": method.method,
                    "amount_cents": amount_cents,
                    "order_ref": order_ref,
                    "idempotency_key": idempotency_key,
                    "payer_email": payer.email,
                    "customer_id": payer.customer_id,
                    "payment_method_id": getattr(method, "payment_method_id", None),
                },
            )
        )
        if self.create_error is not None:
            raise self.create_error
        external_id = self._next_id()
        self.order_refs[external_id] = order_ref
        if method.method == "pix":
            self.statuses[external_id] = "pending"
            payload = PixPayload(
                qr_code=f"00020126580014br.gov.bcb.pix{external_id}",
                qr_code_base64="iVBORw0KGgoAAAANSUhEUgAA" if self.pix_complete else "",
                copy_paste=f"00020126580014br.gov.bcb.pix{external_id}",
            )
            return GatewayIntentResult(
                external_id=external_id,
                status="pending",
                method_payload=payload,
                payload_complete=self.pix_complete,
                request_url="https://gateway.test/v1/payments",
                request_payload={"transaction_amount": amount_cents / 100},
                raw_response='{"status": "pending"}',
                http_status=201,
            )
        self.statuses[external_id] = self.card_status
        return GatewayIntentResult(
            external_id=external_id,
            status=self.card_status,
            payload_complete=True,
            request_url="https://gateway.test/v1/payments",
            request_payload={"transaction_amount": amount_cents / 100},
            raw_response=f'{{"status": "{self.card_status}"}}',
            http_status=201,
            status_detail="accredited" if self.card_status == "approved" else "cc_rejected_other_reason",
        )

    async def create_checkout_preference(self, amount_cents, title, order_ref, payer, idempotency_key, timeout=None):
        self.calls.append(
            (
                "create_checkout_preference",
                {"amount_cents": amount_cents, "order_ref": order_ref, "idempotency_key": idempotency_key},
            )
        )
        if self.create_error is not None:
            raise self.create_error
        return GatewayIntentResult(
            external_id=None,
            method_payload=CheckoutPayload(checkout_url=f"https://checkout.test/pay/{order_ref}"),
            payload_complete=True,
            http_status=201,
        )

    async def fetch_status(self, external_id, timeout=None):
        self.calls.append(("fetch_status", {"external_id": external_id}))
        if self.fetch_error is not None:
            raise self.fetch_error
        return GatewayPaymentStatus(
            status=self.statuses.get(external_id, "pending"),
            order_ref=self.order_refs.get(external_id),
        )

    async def fetch_details(self, external_id, timeout=None):
        self.calls.append(("fetch_details", {"external_id": external_id}))
        if self.fetch_error is not None:
            raise self.fetch_error
        return GatewayPaymentStatus(
            status=self.statuses.get(external_id, "pending"),
            order_ref=self.order_refs.get(external_id),
        )

    async def create_customer(self, email, timeout=None):
        self.calls.append(("create_customer", {"email": email}))
        if self.customer_error is not None:
            raise self.customer_error
        return f"cust-{email}"

    async def add_card(self, customer_id, token, timeout=None):
        self.calls.append(("add_card", {"customer_id": customer_id, "token": token}))
        if self.customer_error is not None:
            raise self.customer_error
        return GatewayCustomerCard(card_id=f"card-{self._next_id()}", last_four="4242", brand="master")


class FakeRedis:
    """Just enough of the redis client for the token bucket."""

    def __init__(self) -> None:
        self.store: dict[str, dict[str, str]] = {}

    def hmget(self, key, *fields):
        values = self.store.get(key, {})
        return [values.get(field) for field in fields]

    def hset(self, key, mapping):
        self.store.setdefault(key, {}).update({k: str(v) for k, v in mapping.items()})

    def expire(self, key, seconds):
        return True


@pytest.fixture
def session_factory():
    engine = build_engine("sqlite://")
    Base.metadata.create_all(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def manager(session_factory, gateway):
    return IntentManager(session_factory, gateway, service_name="payments-test")


@pytest.fixture
def reconciler(session_factory, gateway):
    return ReconciliationService(session_factory, gateway, service_name="payments-test")


@pytest.fixture
def processor(session_factory, reconciler):
    return WebhookProcessor(
        session_factory,
        reconciler,
        webhook_secret=WEBHOOK_SECRET,
        inline_processing=True,
        service_name="payments-test",
    )


@pytest.fixture
def make_order(session_factory):
    """Insert an order awaiting payment and return its id."""

    def _make(
        payer_id: str = "payer-1",
        price_cents: int | None = 4990,
        status: str = ORDER_AWAITING_PAYMENT,
        counterpart_id: str | None = "doctor-1",
    ) -> str:
        with session_factory() as db:
            order = Order(
                payer_id=payer_id,
                counterpart_id=counterpart_id,
                payer_email="payer@example.com",
                description="Consultation",
                price_cents=price_cents,
                status=status,
            )
            db.add(order)
            db.commit()
            return order.order_id

    return _make


def load_intents(session_factory, order_id: str) -> list[PaymentIntent]:
    with session_factory() as db:
        return list(db.execute(select(PaymentIntent).where(PaymentIntent.order_id == order_id)).scalars())


def load_order(session_factory, order_id: str) -> Order:
    with session_factory() as db:
        return db.get(Order, order_id)


def outbox_payloads(session_factory, topic: str) -> list[dict]:
    with session_factory() as db:
        rows = db.execute(select(OutboxEvent).where(OutboxEvent.topic == topic)).scalars()
        return [row.payload["payload"] for row in rows]
