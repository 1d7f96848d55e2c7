"""Payment intent creation and read projections.

`IntentManager` validates the order, deduplicates against the order's pending
intent, calls the gateway with a fresh correlation id and persists the result.
Every outbound creation call leaves exactly one row in `payment_attempts`,
written best effort so an audit failure never fails the payment. Payers can
also store cards with the gateway and pay with them later.
"""

from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from paysync.common.logging import correlation_id_ctx, logger, order_id_ctx
from paysync.common.metrics import (
    attempt_persist_failures_total,
    payment_attempts_total,
    payment_intents_created_total,
    payment_intents_replaced_total,
    payment_intents_reused_total,
)
from paysync.common.state_machine import PENDING
from paysync.services.gateway.contract import (
    CardMethod,
    CheckoutPayload,
    CheckoutRedirectMethod,
    GatewayClient,
    GatewayError,
    GatewayIntentResult,
    PayerContact,
    PixMethod,
    PixPayload,
    SavedCardMethod,
    map_gateway_status,
)
from paysync.services.payments.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from paysync.services.payments.models import (
    ORDER_AWAITING_PAYMENT,
    IntentTimeline,
    Order,
    PaymentAttempt,
    PaymentIntent,
    SavedCard,
)
from paysync.services.payments.schemas import IntentResponse, PixCodeResponse, SavedCardResponse
from paysync.services.payments.transitions import apply_outcome, enqueue_notification, format_amount


def intent_response(intent: PaymentIntent) -> IntentResponse:
    """Project an intent for API clients."""

    pix = None
    if intent.method == "pix":
        pix = PixCodeResponse(
            qr_code=intent.pix_qr_code,
            qr_code_base64=intent.pix_qr_code_base64,
            copy_paste=intent.pix_copy_paste,
        )
    return IntentResponse(
        intent_id=intent.intent_id,
        order_id=intent.order_id,
        status=intent.status,
        method=intent.method,
        amount=format_amount(intent.amount_cents),
        external_id=intent.external_id,
        pix=pix,
        checkout_url=intent.checkout_url,
        paid_at=intent.paid_at,
        created_at=intent.created_at,
        updated_at=intent.updated_at,
    )


def saved_card_response(card: SavedCard) -> SavedCardResponse:
    return SavedCardResponse(
        card_id=card.card_id,
        gateway_card_id=card.gateway_card_id,
        last_four=card.last_four,
        brand=card.brand,
        created_at=card.created_at,
    )


class IntentManager:
    """Owns creation of payment intents and their client-facing reads."""

    def __init__(
        self,
        session_factory,
        gateway: GatewayClient,
        rate_limiter=None,
        gateway_timeout: float | None = None,
        default_payer_email: str = "payer@paysync.local",
        description_prefix: str = "Order",
        service_name: str = "payments",
    ) -> None:
        self.session_factory = session_factory
        self.gateway = gateway
        self.rate_limiter = rate_limiter
        self.gateway_timeout = gateway_timeout
        self.default_payer_email = default_payer_email
        self.description_prefix = description_prefix
        self.service_name = service_name

    def _load_order(self, db, order_id: str, payer_id: str) -> Order:
        order = db.get(Order, order_id)
        if order is None:
            raise NotFoundError(f"order {order_id} not found")
        if order.payer_id != payer_id:
            raise ForbiddenError(f"order {order_id} does not belong to payer")
        return order

    def _load_payable_order(self, db, order_id: str, payer_id: str) -> Order:
        order = self._load_order(db, order_id, payer_id)
        if order.status != ORDER_AWAITING_PAYMENT:
            raise ValidationError(f"order {order_id} is not awaiting payment (status={order.status})")
        if not order.price_cents or order.price_cents <= 0:
            raise ValidationError(f"order {order_id} has no price set")
        return order

    @staticmethod
    def _pending_intent(db, order_id: str) -> PaymentIntent | None:
        return db.execute(
            select(PaymentIntent).where(
                PaymentIntent.order_id == order_id,
                PaymentIntent.status == PENDING,
            )
        ).scalar_one_or_none()

    def _enforce_rate_limit(self, payer_id: str) -> None:
        if self.rate_limiter is None:
            return
        if not self.rate_limiter.consume(f"create:{payer_id}"):
            raise RateLimitedError("too many payment attempts, try again shortly")

    def _description(self, order: Order) -> str:
        return order.description or f"{self.description_prefix} {order.order_id}"

    def _payer_contact(self, order: Order) -> PayerContact:
        return PayerContact(email=order.payer_email or self.default_payer_email)

    async def create_intent(
        self,
        order_id: str,
        payer_id: str,
        method: PixMethod | CardMethod | SavedCardMethod | CheckoutRedirectMethod,
    ) -> PaymentIntent:
        """Create (or reuse) the order's pending intent for `method`.

        A pending PIX intent with a complete payload answers a PIX request
        without touching the gateway. Anything else pending is replaced once
        the gateway call succeeds. A saved card is charged as a credit card
        on behalf of its gateway customer.
        """

        if isinstance(method, CheckoutRedirectMethod):
            return await self.create_checkout_redirect(order_id, payer_id)

        customer_id = None
        if isinstance(method, SavedCardMethod):
            method, customer_id = self._saved_card_charge(payer_id, method)

        order_id_ctx.set(order_id)
        with self.session_factory() as db:
            order = self._load_payable_order(db, order_id, payer_id)
            amount_cents = order.price_cents
            description = self._description(order)
            payer = self._payer_contact(order)
            if customer_id is not None:
                payer = payer.model_copy(update={"customer_id": customer_id})
            existing = self._pending_intent(db, order_id)
            if (
                existing is not None
                and isinstance(method, PixMethod)
                and existing.method == "pix"
                and existing.payload_complete
            ):
                logger.info("reusing pending pix intent intent_id=%s order_id=%s", existing.intent_id, order_id)
                payment_intents_reused_total.labels(service=self.service_name, method="pix").inc()
                return existing
            stale_intent_id = existing.intent_id if existing is not None else None

        self._enforce_rate_limit(payer_id)
        correlation_id = uuid4().hex
        correlation_id_ctx.set(correlation_id)
        try:
            result = await self.gateway.create_intent(
                method,
                amount_cents,
                description,
                payer,
                order_ref=order_id,
                idempotency_key=correlation_id,
                timeout=self.gateway_timeout,
            )
        except GatewayError as exc:
            self._record_gateway_failure(order_id, payer_id, method.method, amount_cents, correlation_id, exc)
            raise

        intent = self._persist_intent(
            order_id, payer_id, method.method, amount_cents, result, correlation_id, stale_intent_id
        )
        self._record_attempt(
            intent.intent_id,
            order_id,
            payer_id,
            correlation_id,
            method.method,
            amount_cents,
            is_success=True,
            result=result,
        )

        if isinstance(method, CardMethod):
            outcome = map_gateway_status(result.status)
            if outcome is not None:
                with self.session_factory() as db:
                    current = db.get(PaymentIntent, intent.intent_id)
                    apply_outcome(
                        db,
                        current,
                        outcome,
                        reason=f"gateway_status:{result.status}",
                        source="create",
                        service_name=self.service_name,
                    )
                    db.refresh(current)
                    return current
        return intent

    async def create_checkout_redirect(self, order_id: str, payer_id: str) -> PaymentIntent:
        """Create a hosted-checkout intent; any pending intent for the order is replaced."""

        order_id_ctx.set(order_id)
        with self.session_factory() as db:
            order = self._load_payable_order(db, order_id, payer_id)
            amount_cents = order.price_cents
            description = self._description(order)
            payer = self._payer_contact(order)
            existing = self._pending_intent(db, order_id)
            stale_intent_id = existing.intent_id if existing is not None else None

        self._enforce_rate_limit(payer_id)
        correlation_id = uuid4().hex
        correlation_id_ctx.set(correlation_id)
        try:
            result = await self.gateway.create_checkout_preference(
                amount_cents,
                description,
                order_ref=order_id,
                payer=payer,
                idempotency_key=correlation_id,
                timeout=self.gateway_timeout,
            )
        except GatewayError as exc:
            self._record_gateway_failure(order_id, payer_id, "checkout_redirect", amount_cents, correlation_id, exc)
            raise

        intent = self._persist_intent(
            order_id, payer_id, "checkout_redirect", amount_cents, result, correlation_id, stale_intent_id
        )
        self._record_attempt(
            intent.intent_id,
            order_id,
            payer_id,
            correlation_id,
            "checkout_redirect",
            amount_cents,
            is_success=True,
            result=result,
        )
        return intent

    def _persist_intent(
        self,
        order_id: str,
        payer_id: str,
        method: str,
        amount_cents: int,
        result: GatewayIntentResult,
        correlation_id: str,
        stale_intent_id: str | None,
    ) -> PaymentIntent:
        """Swap the stale pending intent (if any) for the new one in one transaction."""

        intent = PaymentIntent(
            intent_id=str(uuid4()),
            order_id=order_id,
            payer_id=payer_id,
            amount_cents=amount_cents,
            method=method,
            external_id=result.external_id,
            status=PENDING,
            status_detail=result.status_detail,
            payload_complete=result.payload_complete,
            state_version=0,
        )
        if isinstance(result.method_payload, PixPayload):
            intent.pix_qr_code = result.method_payload.qr_code or None
            intent.pix_qr_code_base64 = result.method_payload.qr_code_base64 or None
            intent.pix_copy_paste = result.method_payload.copy_paste or None
        elif isinstance(result.method_payload, CheckoutPayload):
            intent.checkout_url = result.method_payload.checkout_url

        with self.session_factory() as db:
            try:
                if stale_intent_id is not None:
                    stale = db.get(PaymentIntent, stale_intent_id)
                    if stale is not None and stale.is_pending:
                        logger.info(
                            "replacing stale pending intent intent_id=%s method=%s complete=%s",
                            stale.intent_id,
                            stale.method,
                            stale.payload_complete,
                        )
                        db.delete(stale)
                        # The delete must reach the database before the new pending row.
                        db.flush()
                        payment_intents_replaced_total.labels(service=self.service_name, method=stale.method).inc()
                db.add(intent)
                db.flush()
                db.add(
                    IntentTimeline(
                        intent_id=intent.intent_id,
                        from_state=None,
                        to_state=PENDING,
                        reason="intent_created",
                        source="create",
                    )
                )
                enqueue_notification(
                    db,
                    payer_id,
                    order_id,
                    "Payment created",
                    f"Your payment of {format_amount(amount_cents)} is waiting for confirmation.",
                    kind="payment_created",
                )
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                logger.warning("concurrent create lost the pending-intent race order_id=%s", order_id)
                self._record_attempt(
                    intent.intent_id,
                    order_id,
                    payer_id,
                    correlation_id,
                    method,
                    amount_cents,
                    is_success=False,
                    result=result,
                    error_message="another pending intent was created concurrently",
                )
                raise ConflictError(f"order {order_id} already has a pending payment in progress") from exc
            db.refresh(intent)

        logger.info(
            "intent created intent_id=%s order_id=%s method=%s external_id=%s complete=%s",
            intent.intent_id,
            order_id,
            method,
            intent.external_id,
            intent.payload_complete,
        )
        payment_intents_created_total.labels(service=self.service_name, method=method).inc()
        return intent

    def _record_gateway_failure(
        self,
        order_id: str,
        payer_id: str,
        method: str,
        amount_cents: int,
        correlation_id: str,
        exc: GatewayError,
    ) -> None:
        """Audit a failed creation call against the order's pending intent.

        Without a pending intent an incomplete placeholder is created to anchor
        the attempt; reads never treat it as live and the next create replaces it.
        """

        logger.error(
            "gateway create failed order_id=%s method=%s http_status=%s error=%s",
            order_id,
            method,
            exc.http_status,
            exc,
        )
        intent_id = None
        try:
            with self.session_factory() as db:
                existing = self._pending_intent(db, order_id)
                if existing is not None:
                    intent_id = existing.intent_id
                else:
                    placeholder = PaymentIntent(
                        intent_id=str(uuid4()),
                        order_id=order_id,
                        payer_id=payer_id,
                        amount_cents=amount_cents,
                        method=method,
                        status=PENDING,
                        payload_complete=False,
                        state_version=0,
                    )
                    db.add(placeholder)
                    db.commit()
                    intent_id = placeholder.intent_id
        except Exception as persist_exc:
            logger.warning("could not anchor failed attempt order_id=%s error=%s", order_id, persist_exc)
        if intent_id is None:
            attempt_persist_failures_total.labels(service=self.service_name).inc()
            return
        self._record_attempt(
            intent_id,
            order_id,
            payer_id,
            correlation_id,
            method,
            amount_cents,
            is_success=False,
            error=exc,
        )

    def _record_attempt(
        self,
        intent_id: str,
        order_id: str,
        payer_id: str,
        correlation_id: str,
        method: str,
        amount_cents: int,
        is_success: bool,
        result: GatewayIntentResult | None = None,
        error: GatewayError | None = None,
        error_message: str | None = None,
    ) -> None:
        """Append one audit row; failures are logged and counted, never raised."""

        attempt = PaymentAttempt(
            intent_id=intent_id,
            order_id=order_id,
            payer_id=payer_id,
            correlation_id=correlation_id,
            method=method,
            amount_cents=amount_cents,
            is_success=is_success,
            error_message=error_message,
        )
        if result is not None:
            attempt.external_id = result.external_id
            attempt.request_url = result.request_url
            attempt.request_payload = result.request_payload
            attempt.response_payload = result.raw_response
            attempt.response_status_code = result.http_status
            attempt.response_status_detail = result.status_detail
        if error is not None:
            attempt.request_url = error.request_url
            attempt.request_payload = error.request_payload
            attempt.response_payload = error.response_body
            attempt.response_status_code = error.http_status
            attempt.error_message = str(error)

        payment_attempts_total.labels(
            service=self.service_name,
            method=method,
            result="success" if is_success else "failure",
        ).inc()
        try:
            with self.session_factory() as db:
                db.add(attempt)
                db.commit()
        except Exception as exc:
            attempt_persist_failures_total.labels(service=self.service_name).inc()
            logger.exception("attempt persist failed correlation_id=%s error=%s", correlation_id, exc)

    def get_pending_intent(self, order_id: str, payer_id: str) -> PaymentIntent | None:
        """Live pending intent for the order, or None. Incomplete intents are hidden."""

        with self.session_factory() as db:
            self._load_order(db, order_id, payer_id)
            intent = self._pending_intent(db, order_id)
            if intent is None or not intent.is_live:
                return None
            return intent

    def get_intent(self, intent_id: str, payer_id: str) -> PaymentIntent:
        with self.session_factory() as db:
            intent = db.get(PaymentIntent, intent_id)
            if intent is None:
                raise NotFoundError(f"intent {intent_id} not found")
            if intent.payer_id != payer_id:
                raise ForbiddenError(f"intent {intent_id} does not belong to payer")
            return intent

    def get_pix_code(self, intent_id: str, payer_id: str) -> str:
        """Copy-paste PIX code as plain text."""

        intent = self.get_intent(intent_id, payer_id)
        if intent.method != "pix" or not intent.pix_copy_paste:
            raise NotFoundError(f"intent {intent_id} has no pix code")
        return intent.pix_copy_paste

    def _saved_card_charge(self, payer_id: str, method: SavedCardMethod) -> tuple[CardMethod, str]:
        """Card charge for a stored card, plus the gateway customer that owns it."""

        with self.session_factory() as db:
            card = db.get(SavedCard, method.saved_card_id)
            if card is None:
                raise NotFoundError(f"saved card {method.saved_card_id} not found")
            if card.payer_id != payer_id:
                raise ForbiddenError(f"saved card {method.saved_card_id} does not belong to payer")
            logger.info("charging saved card card_id=%s brand=%s", card.card_id, card.brand)
            charge = CardMethod(
                method="credit_card",
                token=method.token,
                payment_method_id=card.brand,
                installments=method.installments,
            )
            return charge, card.gateway_customer_id

    def _payer_email(self, db, payer_id: str) -> str:
        email = db.execute(
            select(Order.payer_email)
            .where(Order.payer_id == payer_id, Order.payer_email.is_not(None))
            .order_by(Order.created_at.desc())
            .limit(1)
        ).scalar_one_or_none()
        return email or self.default_payer_email

    async def add_saved_card(self, payer_id: str, token: str, email: str | None = None) -> SavedCard:
        """Store a tokenized card with the gateway under the payer's customer.

        The payer's first card registers the gateway customer; later cards reuse it.
        """

        if not token.strip():
            raise ValidationError("card token is required")
        with self.session_factory() as db:
            customer_id = db.execute(
                select(SavedCard.gateway_customer_id)
                .where(SavedCard.payer_id == payer_id)
                .order_by(SavedCard.created_at)
                .limit(1)
            ).scalar_one_or_none()
            if customer_id is None:
                email = email or self._payer_email(db, payer_id)

        if customer_id is None:
            customer_id = await self.gateway.create_customer(email, timeout=self.gateway_timeout)
        stored = await self.gateway.add_card(customer_id, token, timeout=self.gateway_timeout)

        card = SavedCard(
            payer_id=payer_id,
            gateway_customer_id=customer_id,
            gateway_card_id=stored.card_id,
            last_four=stored.last_four,
            brand=stored.brand,
        )
        with self.session_factory() as db:
            db.add(card)
            db.commit()
            db.refresh(card)
        logger.info("card saved payer_id=%s card_id=%s last_four=%s", payer_id, card.card_id, card.last_four)
        return card

    def list_saved_cards(self, payer_id: str) -> list[SavedCard]:
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(SavedCard).where(SavedCard.payer_id == payer_id).order_by(SavedCard.created_at)
                ).scalars()
            )
