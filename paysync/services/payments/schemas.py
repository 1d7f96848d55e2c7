"""API request/response schemas for payments endpoints."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from paysync.services.gateway.contract import PaymentMethod


class CreatePaymentRequest(BaseModel):
    """Body of `POST /payments`; the amount always comes from the order."""

    order_id: str = Field(min_length=1)
    payment: PaymentMethod


class PixCodeResponse(BaseModel):
    qr_code: str | None = None
    qr_code_base64: str | None = None
    copy_paste: str | None = None


class IntentResponse(BaseModel):
    """Client view of an intent. Never carries the attempt audit data."""

    intent_id: str
    order_id: str
    status: str
    method: str
    amount: Decimal
    external_id: str | None = None
    pix: PixCodeResponse | None = None
    checkout_url: str | None = None
    paid_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class CheckoutResponse(BaseModel):
    intent_id: str
    order_id: str
    checkout_url: str


class WebhookAck(BaseModel):
    status: str
    duplicate: bool = False


class SweepResponse(BaseModel):
    scanned: int
    applied: int
    errors: int
    webhooks_retried: int = 0


class AddCardRequest(BaseModel):
    """Body of `POST /payments/saved-cards`; `token` comes from the gateway's card form."""

    token: str = Field(min_length=1)
    email: str | None = None


class SavedCardResponse(BaseModel):
    card_id: str
    gateway_card_id: str
    last_four: str
    brand: str
    created_at: datetime | None = None
