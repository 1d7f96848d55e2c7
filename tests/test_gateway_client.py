"""Mercado Pago adapter against a scripted HTTP transport."""

import json

import httpx
import pytest

from paysync.services.gateway.client import GatewayConfig, MercadoPagoGateway
from paysync.services.gateway.contract import (
    CardMethod,
    CheckoutPayload,
    GatewayError,
    GatewayRejectedError,
    GatewayRetryableError,
    GatewayTimeoutError,
    PayerContact,
    PixMethod,
    PixPayload,
)


PAYER = PayerContact(email="payer@example.com", document="123.456.789-09")


def _gateway(handler, **overrides) -> tuple[MercadoPagoGateway, list[httpx.Request]]:
    seen: list[httpx.Request] = []
    overrides.setdefault("backoff_seconds", 0)

    def recording(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    config = GatewayConfig(
        base_url="https://gateway.test",
        access_token=overrides.pop("access_token", "APP_USR-123"),
        notification_url="https://paysync.test/webhooks/gateway",
        **overrides,
    )
    client = httpx.AsyncClient(transport=httpx.MockTransport(recording))
    return MercadoPagoGateway(config, http_client=client, service_name="payments-test"), seen


def _pix_response(request: httpx.Request) -> httpx.Response:
    return httpx.Response(
        201,
        json={
            "id": 1234567890,
            "status": "pending",
            "point_of_interaction": {
                "transaction_data": {"qr_code": "000201pix", "qr_code_base64": "iVBORw0KGgo="}
            },
        },
    )


@pytest.mark.asyncio
async def test_create_pix_intent():
    gateway, seen = _gateway(_pix_response)

    result = await gateway.create_intent(PixMethod(), 4990, "Order abc", PAYER, "order-1", "key-1")

    assert result.external_id == "1234567890"
    assert result.status == "pending"
    assert result.payload_complete
    assert result.method_payload == PixPayload(
        qr_code="000201pix", qr_code_base64="iVBORw0KGgo=", copy_paste="000201pix"
    )
    [request] = seen
    assert request.url.path == "/v1/payments"
    assert request.headers["Authorization"] == "Bearer APP_USR-123"
    assert request.headers["X-Idempotency-Key"] == "key-1"
    body = json.loads(request.content)
    assert body["transaction_amount"] == 49.9
    assert body["payment_method_id"] == "pix"
    assert body["external_reference"] == "order-1"
    assert body["notification_url"] == "https://paysync.test/webhooks/gateway"


@pytest.mark.asyncio
async def test_pix_without_image_is_incomplete():
    def handler(request):
        return httpx.Response(
            201,
            json={"id": 1, "status": "pending", "point_of_interaction": {"transaction_data": {"qr_code": "000201"}}},
        )

    gateway, _ = _gateway(handler)

    result = await gateway.create_intent(PixMethod(), 4990, "Order abc", PAYER, "order-1", "key-1")

    assert not result.payload_complete


@pytest.mark.asyncio
async def test_card_body_carries_token_and_cpf():
    def handler(request):
        return httpx.Response(201, json={"id": "77", "status": "approved", "status_detail": "accredited"})

    gateway, seen = _gateway(handler)
    method = CardMethod(method="credit_card", token="tok_1", payment_method_id=" Visa ", installments=3)

    result = await gateway.create_intent(method, 10000, "Order abc", PAYER, "order-1", "key-1")

    assert (result.external_id, result.status, result.status_detail) == ("77", "approved", "accredited")
    body = json.loads(seen[0].content)
    assert body["token"] == "tok_1"
    assert body["payment_method_id"] == "visa"
    assert body["installments"] == 3
    assert body["payer"] == {
        "email": "payer@example.com",
        "identification": {"type": "CPF", "number": "12345678909"},
    }


@pytest.mark.asyncio
async def test_rate_limit_is_retried_then_succeeds():
    responses = [httpx.Response(429, json={"message": "slow down"}), httpx.Response(503, text="busy")]

    def handler(request):
        if responses:
            return responses.pop(0)
        return _pix_response(request)

    gateway, seen = _gateway(handler)

    result = await gateway.create_intent(PixMethod(), 4990, "Order abc", PAYER, "order-1", "key-1")

    assert result.external_id == "1234567890"
    assert len(seen) == 3
    assert {r.headers["X-Idempotency-Key"] for r in seen} == {"key-1"}


@pytest.mark.asyncio
async def test_retries_exhausted_raise_retryable_error():
    gateway, seen = _gateway(lambda request: httpx.Response(500, text="boom"), max_retries=2)

    with pytest.raises(GatewayRetryableError) as exc_info:
        await gateway.fetch_status("55")

    assert exc_info.value.http_status == 500
    assert len(seen) == 2


@pytest.mark.asyncio
async def test_client_error_is_not_retried():
    gateway, seen = _gateway(lambda request: httpx.Response(400, json={"message": "invalid token"}))

    with pytest.raises(GatewayRejectedError) as exc_info:
        await gateway.create_intent(PixMethod(), 4990, "Order abc", PAYER, "order-1", "key-1")

    assert exc_info.value.http_status == 400
    assert "invalid token" in exc_info.value.response_body
    assert exc_info.value.request_payload["external_reference"] == "order-1"
    assert len(seen) == 1


@pytest.mark.asyncio
async def test_timeout_raises_timeout_error():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    gateway, seen = _gateway(handler)

    with pytest.raises(GatewayTimeoutError):
        await gateway.fetch_status("55", timeout=0.5)
    assert len(seen) == 1


@pytest.mark.asyncio
async def test_unconfigured_token_fails_before_any_call():
    gateway, seen = _gateway(_pix_response, access_token="YOUR_ACCESS_TOKEN")

    with pytest.raises(GatewayError):
        await gateway.create_intent(PixMethod(), 4990, "Order abc", PAYER, "order-1", "key-1")
    assert seen == []


@pytest.mark.asyncio
async def test_checkout_uses_sandbox_url_for_test_accounts():
    def handler(request):
        return httpx.Response(
            201,
            json={
                "id": "pref-1",
                "init_point": "https://gateway.test/checkout?pref=1",
                "sandbox_init_point": "https://sandbox.gateway.test/checkout?pref=1",
            },
        )

    gateway, seen = _gateway(handler, access_token="TEST-abc", redirect_base_url="https://app.test/")

    result = await gateway.create_checkout_preference(4990, "Order abc", "order-1", PAYER, "key-1")

    assert result.external_id is None
    assert result.method_payload == CheckoutPayload(checkout_url="https://sandbox.gateway.test/checkout?pref=1")
    body = json.loads(seen[0].content)
    assert seen[0].url.path == "/checkout/preferences"
    assert body["items"][0]["unit_price"] == 49.9
    assert body["external_reference"] == "order-1"
    assert body["back_urls"]["success"] == "https://app.test/payment/success"
    assert body["auto_return"] == "approved"


@pytest.mark.asyncio
async def test_checkout_uses_live_url_for_production_tokens():
    def handler(request):
        return httpx.Response(201, json={"id": "pref-1", "init_point": "https://gateway.test/checkout?pref=1"})

    gateway, seen = _gateway(handler)

    result = await gateway.create_checkout_preference(4990, "Order abc", "order-1", PAYER, "key-1")

    assert result.method_payload.checkout_url == "https://gateway.test/checkout?pref=1"
    assert "back_urls" not in json.loads(seen[0].content)


@pytest.mark.asyncio
async def test_fetch_status_reads_status_and_reference():
    def handler(request):
        assert request.method == "GET"
        assert request.url.path == "/v1/payments/55"
        return httpx.Response(200, json={"id": 55, "status": "APPROVED", "external_reference": "order-1"})

    gateway, _ = _gateway(handler)

    status = await gateway.fetch_status("55")

    assert status.status == "approved"
    assert status.order_ref == "order-1"


@pytest.mark.asyncio
async def test_malformed_json_is_a_gateway_error():
    gateway, _ = _gateway(lambda request: httpx.Response(200, text="<html>oops</html>"))

    with pytest.raises(GatewayError) as exc_info:
        await gateway.fetch_details("55")

    assert "malformed" in str(exc_info.value)


@pytest.mark.asyncio
async def test_missing_payment_id_is_a_gateway_error():
    gateway, _ = _gateway(lambda request: httpx.Response(201, json={"status": "pending"}))

    with pytest.raises(GatewayError):
        await gateway.create_intent(PixMethod(), 4990, "Order abc", PAYER, "order-1", "key-1")


@pytest.mark.asyncio
async def test_deadline_bounds_retries_and_backoff():
    gateway, seen = _gateway(lambda request: httpx.Response(503, text="busy"), backoff_seconds=5)

    with pytest.raises(GatewayRetryableError):
        await gateway.fetch_status("55", timeout=0.5)

    assert len(seen) == 1


@pytest.mark.asyncio
async def test_each_attempt_gets_the_remaining_budget():
    responses = [httpx.Response(429, json={"message": "slow down"})]

    def handler(request):
        if responses:
            return responses.pop(0)
        return httpx.Response(200, json={"id": 55, "status": "pending"})

    gateway, seen = _gateway(handler)

    await gateway.fetch_status("55", timeout=2.0)

    first, second = (request.extensions["timeout"]["read"] for request in seen)
    assert first <= 2.0
    assert second <= first


@pytest.mark.asyncio
async def test_saved_card_charge_identifies_payer_by_customer():
    def handler(request):
        return httpx.Response(201, json={"id": 78, "status": "in_process"})

    gateway, seen = _gateway(handler)
    method = CardMethod(method="credit_card", token="cvv-tok", payment_method_id="master")
    payer = PAYER.model_copy(update={"customer_id": "cust-9"})

    await gateway.create_intent(method, 10000, "Order abc", payer, "order-1", "key-1")

    assert json.loads(seen[0].content)["payer"] == {"type": "customer", "id": "cust-9"}


@pytest.mark.asyncio
async def test_existing_customer_is_found_by_email():
    def handler(request):
        if request.method == "POST":
            return httpx.Response(400, json={"message": "the customer already exist", "cause": [{"code": "101"}]})
        assert request.url.path == "/v1/customers/search"
        assert request.url.params["email"] == "payer+1@example.com"
        return httpx.Response(200, json={"results": [{"id": "cust-7"}]})

    gateway, seen = _gateway(handler)

    assert await gateway.create_customer("payer+1@example.com") == "cust-7"
    assert [r.method for r in seen] == ["POST", "GET"]


@pytest.mark.asyncio
async def test_customer_rejection_without_existing_match_is_raised():
    def handler(request):
        if request.method == "POST":
            return httpx.Response(400, json={"cause": [{"code": "101"}]})
        return httpx.Response(200, json={"results": []})

    gateway, _ = _gateway(handler)

    with pytest.raises(GatewayRejectedError):
        await gateway.create_customer("payer@example.com")


@pytest.mark.asyncio
async def test_add_card_reads_card_details():
    def handler(request):
        assert request.url.path == "/v1/customers/cust-7/cards"
        assert json.loads(request.content) == {"token": "tok-1"}
        return httpx.Response(
            201, json={"id": 555, "last_four_digits": "4242", "payment_method": {"id": "Master"}}
        )

    gateway, _ = _gateway(handler)

    card = await gateway.add_card("cust-7", "tok-1")

    assert (card.card_id, card.last_four, card.brand) == ("555", "4242", "master")
