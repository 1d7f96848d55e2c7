"""Capability contract between the payment core and the external gateway.

The core only sees these types: a closed set of payment-method variants, the
results the adapter returns, and the gateway error classes.
"""

from typing import Annotated, Any, Literal, Protocol, Union

from pydantic import BaseModel, Field


class PixMethod(BaseModel):
    """Instant payment; the gateway issues a QR code and copy-paste payload."""

    method: Literal["pix"] = "pix"


class CardMethod(BaseModel):
    """Tokenized card charge with a synchronous outcome."""

    method: Literal["credit_card", "debit_card"]
    token: str = Field(min_length=1)
    payment_method_id: str = Field(min_length=1)
    installments: int = Field(default=1, ge=1)
    issuer_id: int | None = None
    payer_email: str | None = None
    payer_document: str | None = None


class SavedCardMethod(BaseModel):
    """Charge a card stored with the gateway; `token` is the fresh CVV token for that card."""

    method: Literal["saved_card"] = "saved_card"
    saved_card_id: str = Field(min_length=1)
    token: str = Field(min_length=1)
    installments: int = Field(default=1, ge=1)


class CheckoutRedirectMethod(BaseModel):
    """Hosted checkout page; the external id becomes known from the webhook."""

    method: Literal["checkout_redirect"] = "checkout_redirect"


PaymentMethod = Annotated[
    Union[PixMethod, CardMethod, SavedCardMethod, CheckoutRedirectMethod],
    Field(discriminator="method"),
]


class PayerContact(BaseModel):
    email: str
    document: str | None = None
    # Set when paying with a saved card; the gateway then identifies the payer by it.
    customer_id: str | None = None


class PixPayload(BaseModel):
    qr_code: str = ""
    qr_code_base64: str = ""
    copy_paste: str = ""


class CheckoutPayload(BaseModel):
    checkout_url: str


class GatewayIntentResult(BaseModel):
    """Outcome of one successful creation call."""

    external_id: str | None = None
    status: str = "pending"
    method_payload: PixPayload | CheckoutPayload | None = None
    payload_complete: bool = False
    request_url: str | None = None
    request_payload: dict[str, Any] | None = None
    raw_response: str | None = None
    http_status: int | None = None
    status_detail: str | None = None


class GatewayPaymentStatus(BaseModel):
    status: str
    order_ref: str | None = None
    status_detail: str | None = None


class GatewayCustomerCard(BaseModel):
    """A card the gateway stored under a customer."""

    card_id: str
    last_four: str = ""
    brand: str


class GatewayError(Exception):
    """Gateway call failed; the caller may retry the whole operation."""

    def __init__(
        self,
        message: str,
        http_status: int | None = None,
        response_body: str | None = None,
        request_url: str | None = None,
        request_payload: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.http_status = http_status
        self.response_body = response_body
        self.request_url = request_url
        self.request_payload = request_payload


class GatewayTimeoutError(GatewayError):
    """Deadline elapsed before the gateway answered."""


class GatewayRetryableError(GatewayError):
    """Rate limiting (429) or a 5xx from the gateway."""


class GatewayRejectedError(GatewayError):
    """The gateway refused the request (4xx other than 429)."""


class GatewayClient(Protocol):
    async def create_intent(
        self,
        method: PixMethod | CardMethod,
        amount_cents: int,
        description: str,
        payer: PayerContact,
        order_ref: str,
        idempotency_key: str,
        timeout: float | None = None,
    ) -> GatewayIntentResult: ...

    async def create_checkout_preference(
        self,
        amount_cents: int,
        title: str,
        order_ref: str,
        payer: PayerContact,
        idempotency_key: str,
        timeout: float | None = None,
    ) -> GatewayIntentResult: ...

    async def fetch_status(self, external_id: str, timeout: float | None = None) -> GatewayPaymentStatus: ...

    async def fetch_details(self, external_id: str, timeout: float | None = None) -> GatewayPaymentStatus: ...

    async def create_customer(self, email: str, timeout: float | None = None) -> str: ...

    async def add_card(self, customer_id: str, token: str, timeout: float | None = None) -> GatewayCustomerCard: ...


def map_gateway_status(status: str | None) -> str | None:
    """Translate a gateway status into a local terminal outcome, if any."""

    normalized = (status or "").strip().lower()
    if normalized == "approved":
        return "approved"
    if normalized in {"rejected", "cancelled"}:
        return "rejected"
    return None
