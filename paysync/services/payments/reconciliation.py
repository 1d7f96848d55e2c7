"""Pull-mode reconciliation against the gateway.

Resolves a gateway payment id to a local intent, asks the gateway for the
authoritative status and hands terminal outcomes to `apply_outcome`. Used by
webhook processing (push), on-demand order sync and the scheduled sweep over
pending intents whose webhook never arrived. The sweep also replays stored
webhook deliveries whose processing failed.
"""

import asyncio
from datetime import datetime, timedelta, timezone

from sqlalchemy import or_, select, update

from paysync.common.logging import logger, order_id_ctx
from paysync.common.metrics import reconciliation_runs_total
from paysync.common.state_machine import PENDING, is_terminal
from paysync.services.gateway.contract import GatewayClient, GatewayError, map_gateway_status
from paysync.services.payments.errors import ForbiddenError, NotFoundError
from paysync.services.payments.models import Order, PaymentIntent, WebhookEvent
from paysync.services.payments.schemas import SweepResponse
from paysync.services.payments.transitions import apply_outcome


RESULT_APPLIED = "applied"
RESULT_NOT_FOUND = "not_found"
RESULT_ALREADY_TERMINAL = "already_terminal"
RESULT_NO_CHANGE = "no_change"


def record_webhook_result(session_factory, event_id: str, result: str | None, error: str | None) -> None:
    """Store the outcome of processing one webhook delivery on its row."""

    with session_factory() as db:
        event = db.get(WebhookEvent, event_id)
        if event is None:
            return
        event.is_processed = error is None
        event.processing_result = result
        event.processing_error = error
        event.processed_at = datetime.now(timezone.utc)
        db.commit()


class ReconciliationService:
    """Brings local intents in line with the gateway's view of each payment."""

    def __init__(
        self,
        session_factory,
        gateway: GatewayClient,
        gateway_timeout: float | None = None,
        service_name: str = "payments",
    ) -> None:
        self.session_factory = session_factory
        self.gateway = gateway
        self.gateway_timeout = gateway_timeout
        self.service_name = service_name

    async def reconcile_external_id(self, external_id: str, source: str) -> str:
        """Resolve `external_id` to an intent and apply the gateway status to it."""

        with self.session_factory() as db:
            intent = db.execute(
                select(PaymentIntent).where(PaymentIntent.external_id == external_id)
            ).scalar_one_or_none()
            intent_id = intent.intent_id if intent is not None else None

        if intent_id is None:
            details = await self.gateway.fetch_details(external_id, timeout=self.gateway_timeout)
            if not details.order_ref:
                logger.warning("gateway payment has no order reference external_id=%s", external_id)
                return RESULT_NOT_FOUND
            intent_id = self._cross_reference(details.order_ref, external_id)
            if intent_id is None:
                return RESULT_NOT_FOUND

        return await self._apply_gateway_status(intent_id, external_id, source)

    def _cross_reference(self, order_id: str, external_id: str) -> str | None:
        """Attach `external_id` to the order's pending intent if it has none yet."""

        order_id_ctx.set(order_id)
        with self.session_factory() as db:
            intent = db.execute(
                select(PaymentIntent).where(
                    PaymentIntent.order_id == order_id,
                    PaymentIntent.status == PENDING,
                )
            ).scalar_one_or_none()
            if intent is None:
                logger.warning(
                    "no pending intent for gateway payment order_id=%s external_id=%s", order_id, external_id
                )
                return None
            if intent.external_id == external_id:
                return intent.intent_id
            if intent.external_id is not None:
                logger.warning(
                    "gateway payment belongs to a superseded intent order_id=%s external_id=%s current=%s",
                    order_id,
                    external_id,
                    intent.external_id,
                )
                return None

            result = db.execute(
                update(PaymentIntent)
                .where(PaymentIntent.intent_id == intent.intent_id, PaymentIntent.external_id.is_(None))
                .values(external_id=external_id)
            )
            if result.rowcount != 1:
                db.rollback()
                current = db.get(PaymentIntent, intent.intent_id)
                if current is None or current.external_id != external_id:
                    return None
                return current.intent_id
            db.commit()
            logger.info("external id backfilled intent_id=%s external_id=%s", intent.intent_id, external_id)
            return intent.intent_id

    async def _apply_gateway_status(self, intent_id: str, external_id: str, source: str) -> str:
        with self.session_factory() as db:
            intent = db.get(PaymentIntent, intent_id)
            if intent is None:
                return RESULT_NOT_FOUND
            if is_terminal(intent.status):
                logger.info("intent already terminal intent_id=%s status=%s", intent_id, intent.status)
                return RESULT_ALREADY_TERMINAL

        status = await self.gateway.fetch_status(external_id, timeout=self.gateway_timeout)
        outcome = map_gateway_status(status.status)
        if outcome is None:
            logger.info("gateway status has no local transition intent_id=%s status=%s", intent_id, status.status)
            return RESULT_NO_CHANGE

        with self.session_factory() as db:
            intent = db.get(PaymentIntent, intent_id)
            if intent is None:
                return RESULT_NOT_FOUND
            applied = apply_outcome(
                db,
                intent,
                outcome,
                reason=f"gateway_status:{status.status}",
                source=source,
                service_name=self.service_name,
            )
        return RESULT_APPLIED if applied else RESULT_ALREADY_TERMINAL

    async def sync_status(self, order_id: str, payer_id: str | None = None) -> PaymentIntent | None:
        """Pull the gateway status for the order's latest intent and return it."""

        order_id_ctx.set(order_id)
        with self.session_factory() as db:
            order = db.get(Order, order_id)
            if order is None:
                raise NotFoundError(f"order {order_id} not found")
            if payer_id is not None and order.payer_id != payer_id:
                raise ForbiddenError(f"order {order_id} does not belong to payer")
            # Incomplete pending intents are placeholders for failed creates, never shown to clients.
            intent = db.execute(
                select(PaymentIntent)
                .where(
                    PaymentIntent.order_id == order_id,
                    or_(PaymentIntent.status != PENDING, PaymentIntent.payload_complete.is_(True)),
                )
                .order_by((PaymentIntent.status == PENDING).desc(), PaymentIntent.created_at.desc())
                .limit(1)
            ).scalar_one_or_none()
        if intent is None:
            return None
        if intent.external_id is None:
            logger.warning("intent has no external id yet, nothing to sync intent_id=%s", intent.intent_id)
            return intent

        try:
            await self._apply_gateway_status(intent.intent_id, intent.external_id, source="sync")
        except GatewayError:
            reconciliation_runs_total.labels(service=self.service_name, trigger="sync", result="error").inc()
            raise
        reconciliation_runs_total.labels(service=self.service_name, trigger="sync", result="ok").inc()
        with self.session_factory() as db:
            return db.get(PaymentIntent, intent.intent_id)

    async def retry_failed_webhooks(self, limit: int = 100) -> tuple[int, int, int]:
        """Reprocess stored deliveries whose earlier processing raised.

        Checkout intents only learn their external id from a webhook, so a
        delivery that failed after being acknowledged is the only way back to them.
        Returns `(retried, applied, errors)`.
        """

        with self.session_factory() as db:
            rows = db.execute(
                select(WebhookEvent.event_id, WebhookEvent.external_id)
                .where(
                    WebhookEvent.is_processed.is_(False),
                    WebhookEvent.processing_error.is_not(None),
                )
                .order_by(WebhookEvent.received_at)
                .limit(limit)
            ).all()

        applied = 0
        errors = 0
        for row in rows:
            try:
                result = await self.reconcile_external_id(row.external_id, source="webhook_retry")
            except GatewayError as exc:
                errors += 1
                logger.warning("webhook retry failed event_id=%s error=%s", row.event_id, exc)
                record_webhook_result(self.session_factory, row.event_id, result=None, error=str(exc))
                continue
            record_webhook_result(self.session_factory, row.event_id, result=result, error=None)
            if result == RESULT_APPLIED:
                applied += 1
        return len(rows), applied, errors

    async def sweep_pending(self, older_than_seconds: int, limit: int = 100) -> SweepResponse:
        """Retry failed webhook deliveries, then sync pending intents that outlived the webhook window.

        A failure on one intent is logged and the sweep moves on.
        """

        retried, retry_applied, retry_errors = await self.retry_failed_webhooks(limit)
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=older_than_seconds)
        with self.session_factory() as db:
            rows = db.execute(
                select(PaymentIntent.intent_id, PaymentIntent.external_id)
                .where(
                    PaymentIntent.status == PENDING,
                    PaymentIntent.external_id.is_not(None),
                    PaymentIntent.created_at < cutoff,
                )
                .order_by(PaymentIntent.created_at)
                .limit(limit)
            ).all()

        applied = retry_applied
        errors = retry_errors
        for row in rows:
            try:
                result = await self._apply_gateway_status(row.intent_id, row.external_id, source="sweep")
            except GatewayError as exc:
                errors += 1
                logger.warning("sweep sync failed intent_id=%s error=%s", row.intent_id, exc)
                continue
            if result == RESULT_APPLIED:
                applied += 1

        reconciliation_runs_total.labels(
            service=self.service_name,
            trigger="sweep",
            result="error" if errors else "ok",
        ).inc()
        logger.info(
            "sweep finished scanned=%s webhooks_retried=%s applied=%s errors=%s",
            len(rows),
            retried,
            applied,
            errors,
        )
        return SweepResponse(scanned=len(rows), applied=applied, errors=errors, webhooks_retried=retried)

    async def reconciliation_worker(self, interval_seconds: int, older_than_seconds: int, batch_size: int) -> None:
        """Run `sweep_pending` forever on a fixed interval."""

        while True:
            try:
                await self.sweep_pending(older_than_seconds, batch_size)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("reconciliation sweep failed: %s", exc)
            await asyncio.sleep(interval_seconds)
