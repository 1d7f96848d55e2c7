"""Mercado Pago adapter implementing the gateway capability contract.

Credentials and endpoints arrive through `GatewayConfig` at construction, so
tests and alternate deployments can build the adapter without global state.
"""

import asyncio
import time
from decimal import Decimal
from typing import Any
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel

from paysync.common.logging import logger
from paysync.common.metrics import gateway_calls_total, gateway_latency_seconds, retries_total
from paysync.common.tracing import gateway_span
from paysync.services.gateway.contract import (
    CardMethod,
    CheckoutPayload,
    GatewayCustomerCard,
    GatewayError,
    GatewayIntentResult,
    GatewayPaymentStatus,
    GatewayRejectedError,
    GatewayRetryableError,
    GatewayTimeoutError,
    PayerContact,
    PixMethod,
    PixPayload,
)


MAX_DESCRIPTION_LENGTH = 200
# Error code the customers API returns when the email is already registered.
CUSTOMER_EXISTS_CODE = "101"


class GatewayConfig(BaseModel):
    base_url: str = "https://api.mercadopago.com"
    access_token: str = ""
    notification_url: str | None = None
    redirect_base_url: str | None = None
    timeout_seconds: float = 10.0
    max_retries: int = 3
    backoff_seconds: float = 1.0

    @classmethod
    def from_settings(cls, settings) -> "GatewayConfig":
        return cls(
            base_url=settings.gateway_base_url,
            access_token=settings.gateway_access_token,
            notification_url=settings.gateway_notification_url,
            redirect_base_url=settings.gateway_redirect_base_url,
            timeout_seconds=settings.gateway_timeout_seconds,
            max_retries=settings.gateway_max_retries,
            backoff_seconds=settings.gateway_backoff_seconds,
        )

    @property
    def is_test_account(self) -> bool:
        return self.access_token.upper().startswith("TEST-")


def _amount(amount_cents: int) -> float:
    return float((Decimal(amount_cents) / 100).quantize(Decimal("0.01")))


def _truncate(text: str) -> str:
    return text[:MAX_DESCRIPTION_LENGTH]


def _normalize_id(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class MercadoPagoGateway:
    """HTTP client for payments, preferences, payment lookups and stored customer cards."""

    def __init__(
        self,
        config: GatewayConfig,
        http_client: httpx.AsyncClient | None = None,
        service_name: str = "payments",
    ) -> None:
        self.config = config
        self.service_name = service_name
        self._http = http_client

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(base_url=self.config.base_url)
        return self._http

    async def close(self) -> None:
        if self._http is not None:
            await self._http.aclose()

    def _ensure_configured(self) -> None:
        token = self.config.access_token
        if not token.strip() or "YOUR_" in token:
            raise GatewayError("gateway access token is not configured")

    def _headers(self, idempotency_key: str | None) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {self.config.access_token}"}
        if idempotency_key:
            headers["X-Idempotency-Key"] = idempotency_key
        return headers

    async def _request(
        self,
        operation: str,
        http_method: str,
        path: str,
        payload: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
        timeout: float | None = None,
    ) -> httpx.Response:
        with gateway_span(operation, http_method, path) as span:
            response = await self._send(operation, http_method, path, payload, idempotency_key, timeout)
            span.set_attribute("http.response.status_code", response.status_code)
            return response

    async def _send(
        self,
        operation: str,
        http_method: str,
        path: str,
        payload: dict[str, Any] | None,
        idempotency_key: str | None,
        timeout: float | None,
    ) -> httpx.Response:
        """Send one request, retrying rate limits and 5xx with exponential backoff.

        `timeout` bounds the whole call, backoff included. Timeouts are not
        retried, and no retry starts once the remaining budget cannot cover its
        backoff.
        """

        self._ensure_configured()
        deadline = timeout if timeout is not None else self.config.timeout_seconds
        expires_at = time.monotonic() + deadline
        url = f"{self.config.base_url.rstrip('/')}{path}"
        attempts = max(1, self.config.max_retries)
        last_error: GatewayError | None = None
        for attempt in range(1, attempts + 1):
            remaining = max(0.0, expires_at - time.monotonic())
            start = time.perf_counter()
            try:
                logger.info(
                    "gateway_request operation=%s method=%s url=%s attempt=%s idempotency_key=%s",
                    operation,
                    http_method,
                    url,
                    attempt,
                    idempotency_key or "-",
                )
                response = await self._client().request(
                    http_method,
                    url,
                    json=payload,
                    headers=self._headers(idempotency_key),
                    timeout=remaining,
                )
            except httpx.TimeoutException as exc:
                gateway_calls_total.labels(service=self.service_name, operation=operation, result="timeout").inc()
                raise GatewayTimeoutError(
                    f"gateway {operation} timed out after {deadline}s",
                    request_url=url,
                    request_payload=payload,
                ) from exc
            except httpx.TransportError as exc:
                last_error = GatewayRetryableError(
                    f"gateway {operation} transport error: {exc}",
                    request_url=url,
                    request_payload=payload,
                )
            else:
                elapsed = max(0.0, time.perf_counter() - start)
                gateway_latency_seconds.labels(service=self.service_name, operation=operation).observe(elapsed)
                logger.info(
                    "gateway_response operation=%s status=%s body_length=%s",
                    operation,
                    response.status_code,
                    len(response.text),
                )
                if response.status_code < 400:
                    gateway_calls_total.labels(service=self.service_name, operation=operation, result="ok").inc()
                    return response
                if response.status_code == 429 or response.status_code >= 500:
                    last_error = GatewayRetryableError(
                        f"gateway {operation} failed with {response.status_code}",
                        http_status=response.status_code,
                        response_body=response.text,
                        request_url=url,
                        request_payload=payload,
                    )
                else:
                    gateway_calls_total.labels(
                        service=self.service_name, operation=operation, result="rejected"
                    ).inc()
                    raise GatewayRejectedError(
                        f"gateway {operation} rejected with {response.status_code}",
                        http_status=response.status_code,
                        response_body=response.text,
                        request_url=url,
                        request_payload=payload,
                    )

            gateway_calls_total.labels(service=self.service_name, operation=operation, result="retryable").inc()
            if attempt == attempts:
                break
            # Exponential backoff: 1x, 2x, 4x the configured base.
            backoff_seconds = self.config.backoff_seconds * 2 ** (attempt - 1)
            if backoff_seconds >= expires_at - time.monotonic():
                logger.warning(
                    "gateway retry abandoned operation=%s attempt=%s: deadline of %ss exhausted",
                    operation,
                    attempt,
                    deadline,
                )
                break
            retries_total.labels(service=self.service_name, dependency="gateway").inc()
            logger.warning(
                "gateway retry operation=%s attempt=%s backoff_s=%s error=%s",
                operation,
                attempt,
                backoff_seconds,
                last_error,
            )
            await asyncio.sleep(backoff_seconds)

        raise last_error

    def _payment_body(
        self,
        method: PixMethod | CardMethod,
        amount_cents: int,
        description: str,
        payer: PayerContact,
        order_ref: str,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "transaction_amount": _amount(amount_cents),
            "description": _truncate(description),
            "external_reference": order_ref,
            "notification_url": self.config.notification_url,
        }
        if isinstance(method, CardMethod):
            if payer.customer_id:
                payer_body: dict[str, Any] = {"type": "customer", "id": payer.customer_id}
            else:
                payer_body = {"email": method.payer_email or payer.email}
                document = method.payer_document or payer.document
                digits = "".join(ch for ch in document or "" if ch.isdigit())
                if len(digits) == 11:
                    payer_body["identification"] = {"type": "CPF", "number": digits}
            body.update(
                {
                    "payment_method_id": method.payment_method_id.strip().lower(),
                    "token": method.token,
                    "installments": max(1, method.installments),
                    "payer": payer_body,
                }
            )
            if method.issuer_id:
                body["issuer_id"] = method.issuer_id
        else:
            body.update({"payment_method_id": "pix", "payer": {"email": payer.email}})
        return body

    async def create_intent(
        self,
        method: PixMethod | CardMethod,
        amount_cents: int,
        description: str,
        payer: PayerContact,
        order_ref: str,
        idempotency_key: str,
        timeout: float | None = None,
    ) -> GatewayIntentResult:
        body = self._payment_body(method, amount_cents, description, payer, order_ref)
        response = await self._request(
            f"create_{method.method}",
            "POST",
            "/v1/payments",
            payload=body,
            idempotency_key=idempotency_key,
            timeout=timeout,
        )
        data = self._json(response, body)
        external_id = _normalize_id(data.get("id"))
        if external_id is None:
            raise GatewayError(
                "gateway response has no payment id",
                http_status=response.status_code,
                response_body=response.text,
                request_payload=body,
            )

        method_payload = None
        complete = True
        if isinstance(method, PixMethod):
            tx_data = (data.get("point_of_interaction") or {}).get("transaction_data") or {}
            qr_code = tx_data.get("qr_code") or ""
            qr_code_base64 = tx_data.get("qr_code_base64") or ""
            method_payload = PixPayload(
                qr_code=qr_code,
                qr_code_base64=qr_code_base64,
                copy_paste=qr_code or tx_data.get("ticket_url") or "",
            )
            complete = bool(qr_code) and bool(qr_code_base64)

        return GatewayIntentResult(
            external_id=external_id,
            status=(data.get("status") or "pending").lower(),
            method_payload=method_payload,
            payload_complete=complete,
            request_url=str(response.request.url),
            request_payload=body,
            raw_response=response.text,
            http_status=response.status_code,
            status_detail=data.get("status_detail"),
        )

    async def create_checkout_preference(
        self,
        amount_cents: int,
        title: str,
        order_ref: str,
        payer: PayerContact,
        idempotency_key: str,
        timeout: float | None = None,
    ) -> GatewayIntentResult:
        body: dict[str, Any] = {
            "items": [
                {
                    "id": "item1",
                    "title": _truncate(title),
                    "quantity": 1,
                    "currency_id": "BRL",
                    "unit_price": _amount(amount_cents),
                }
            ],
            "external_reference": order_ref,
            "notification_url": self.config.notification_url,
            "payer": {"email": payer.email},
        }
        redirect = self.config.redirect_base_url
        if redirect and "YOUR_" not in redirect:
            base = redirect.rstrip("/")
            body["back_urls"] = {
                "success": f"{base}/payment/success",
                "pending": f"{base}/payment/pending",
                "failure": f"{base}/payment/failure",
            }
            body["auto_return"] = "approved"

        response = await self._request(
            "create_checkout_preference",
            "POST",
            "/checkout/preferences",
            payload=body,
            idempotency_key=idempotency_key,
            timeout=timeout,
        )
        data = self._json(response, body)
        point_key = "sandbox_init_point" if self.config.is_test_account else "init_point"
        checkout_url = data.get(point_key) or data.get("init_point")
        if not checkout_url:
            raise GatewayError(
                "gateway preference response has no init_point",
                http_status=response.status_code,
                response_body=response.text,
                request_payload=body,
            )
        return GatewayIntentResult(
            external_id=None,
            status="pending",
            method_payload=CheckoutPayload(checkout_url=checkout_url),
            payload_complete=True,
            request_url=str(response.request.url),
            request_payload=body,
            raw_response=response.text,
            http_status=response.status_code,
            status_detail=_normalize_id(data.get("id")),
        )

    async def _get_payment(self, operation: str, external_id: str, timeout: float | None) -> GatewayPaymentStatus:
        response = await self._request(operation, "GET", f"/v1/payments/{external_id}", timeout=timeout)
        data = self._json(response, None)
        return GatewayPaymentStatus(
            status=(data.get("status") or "pending").lower(),
            order_ref=_normalize_id(data.get("external_reference")),
            status_detail=data.get("status_detail"),
        )

    async def fetch_status(self, external_id: str, timeout: float | None = None) -> GatewayPaymentStatus:
        return await self._get_payment("fetch_status", external_id, timeout)

    async def fetch_details(self, external_id: str, timeout: float | None = None) -> GatewayPaymentStatus:
        return await self._get_payment("fetch_details", external_id, timeout)

    async def create_customer(self, email: str, timeout: float | None = None) -> str:
        """Register `email` as a gateway customer, or find the one already registered."""

        body = {"email": email}
        try:
            response = await self._request("create_customer", "POST", "/v1/customers", payload=body, timeout=timeout)
        except GatewayRejectedError as exc:
            if CUSTOMER_EXISTS_CODE not in (exc.response_body or ""):
                raise
            existing = await self._search_customer(email, timeout)
            if existing is None:
                raise
            logger.info("gateway customer already registered customer_id=%s", existing)
            return existing

        customer_id = _normalize_id(self._json(response, body).get("id"))
        if customer_id is None:
            raise GatewayError(
                "gateway customer response has no id",
                http_status=response.status_code,
                response_body=response.text,
                request_payload=body,
            )
        return customer_id

    async def _search_customer(self, email: str, timeout: float | None) -> str | None:
        path = f"/v1/customers/search?{urlencode({'email': email})}"
        response = await self._request("search_customer", "GET", path, timeout=timeout)
        results = self._json(response, None).get("results") or []
        if not results or not isinstance(results[0], dict):
            return None
        return _normalize_id(results[0].get("id"))

    async def add_card(self, customer_id: str, token: str, timeout: float | None = None) -> GatewayCustomerCard:
        body = {"token": token}
        response = await self._request(
            "add_card", "POST", f"/v1/customers/{customer_id}/cards", payload=body, timeout=timeout
        )
        data = self._json(response, body)
        card_id = _normalize_id(data.get("id"))
        brand = _normalize_id((data.get("payment_method") or {}).get("id"))
        if card_id is None or brand is None:
            raise GatewayError(
                "gateway card response has no id or payment method",
                http_status=response.status_code,
                response_body=response.text,
                request_payload=body,
            )
        return GatewayCustomerCard(
            card_id=card_id,
            last_four=data.get("last_four_digits") or "",
            brand=brand.lower(),
        )

    @staticmethod
    def _json(response: httpx.Response, request_payload: dict[str, Any] | None) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError as exc:
            raise GatewayError(
                "gateway returned malformed JSON",
                http_status=response.status_code,
                response_body=response.text,
                request_payload=request_payload,
            ) from exc
        if not isinstance(data, dict):
            raise GatewayError(
                "gateway returned an unexpected payload",
                http_status=response.status_code,
                response_body=response.text,
                request_payload=request_payload,
            )
        return data
