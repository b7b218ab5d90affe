"""Payment API endpoints: checkout, verification, webhooks and deposits."""

from datetime import datetime
from decimal import Decimal
from typing import Annotated

from fastapi import APIRouter, Header, Query, Request
from pydantic import BaseModel, EmailStr, Field, field_validator

from casedesk.api.deps import OptionalStaff, Payments
from casedesk.api.v1.consultations import resolve_actor
from casedesk.utils.time import ensure_utc

router = APIRouter()


# ============================================================================
# Request/Response Schemas
# ============================================================================


class CreateCheckoutRequest(BaseModel):
    consultation_id: str
    payment_id: str
    amount: Decimal = Field(..., gt=0)
    email: EmailStr


class CheckoutResponse(BaseModel):
    success: bool = True
    session_id: str
    url: str | None


class VerifySessionRequest(BaseModel):
    session_id: str = Field(..., min_length=1)


class VerifySessionResponse(BaseModel):
    """Outcome of verifying a checkout session."""

    paid: bool
    payment_status: str
    provider_payment_status: str | None
    payment_id: str
    consultation_id: str | None
    consultation_status: str | None
    invoice_number: str | None
    invoice_url: str | None


class WebhookResponse(BaseModel):
    received: bool
    event_type: str
    handled: bool


class CreateDepositRequest(BaseModel):
    application_id: str
    amount: Decimal = Field(..., gt=0)
    email: EmailStr


class DepositResponse(BaseModel):
    success: bool = True
    payment_id: str
    intent_id: str
    client_secret: str | None
    amount: Decimal
    currency: str


class ConfirmPaymentRequest(BaseModel):
    payment_id: str
    payment_intent_id: str = Field(..., min_length=1)
    email: EmailStr


class ConfirmPaymentResponse(BaseModel):
    """Outcome of checking a payment intent."""

    paid: bool
    payment_status: str
    provider_status: str
    payment_id: str
    application_id: str | None
    consultation_id: str | None
    invoice_number: str | None
    invoice_url: str | None


class PaymentResponse(BaseModel):
    """Payment response."""

    id: str
    client_id: str
    consultation_id: str | None
    application_id: str | None
    amount: Decimal
    currency: str
    payment_type: str
    status: str
    transaction_id: str | None
    invoice_number: str | None
    invoice_url: str | None
    completed_at: datetime | None
    refunded_at: datetime | None
    created_at: datetime

    @field_validator("completed_at", "refunded_at", "created_at")
    @classmethod
    def _as_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)

    model_config = {"from_attributes": True}


# ============================================================================
# Endpoints
# ============================================================================


@router.post(
    "/create-checkout",
    response_model=CheckoutResponse,
)
async def create_checkout(
    payments: Payments,
    request: CreateCheckoutRequest,
) -> CheckoutResponse:
    """Create a hosted checkout session for a held consultation."""
    checkout = await payments.create_checkout(
        consultation_id=request.consultation_id,
        payment_id=request.payment_id,
        amount=request.amount,
        email=request.email,
    )
    return CheckoutResponse(session_id=checkout.id, url=checkout.url)


@router.post(
    "/verify-session",
    response_model=VerifySessionResponse,
)
async def verify_session(
    payments: Payments,
    request: VerifySessionRequest,
) -> VerifySessionResponse:
    """Verify a checkout session after the client returns from checkout."""
    result = await payments.verify_session(request.session_id)
    return VerifySessionResponse(**result)


@router.post(
    "/webhook",
    response_model=WebhookResponse,
)
async def payment_webhook(
    payments: Payments,
    request: Request,
    stripe_signature: Annotated[str | None, Header(alias="Stripe-Signature")] = None,
) -> WebhookResponse:
    """Receive provider events; the raw body is needed for signature checks."""
    raw_body = await request.body()
    result = await payments.handle_webhook(raw_body, stripe_signature)
    return WebhookResponse(**result)


@router.post(
    "/create-deposit-payment",
    response_model=DepositResponse,
)
async def create_deposit_payment(
    payments: Payments,
    request: CreateDepositRequest,
) -> DepositResponse:
    """Create a payment intent for an application deposit."""
    deposit = await payments.create_deposit_payment(
        application_id=request.application_id,
        amount=request.amount,
        email=request.email,
    )
    return DepositResponse(
        payment_id=deposit.payment_id,
        intent_id=deposit.intent_id,
        client_secret=deposit.client_secret,
        amount=deposit.amount,
        currency=deposit.currency,
    )


@router.post(
    "/confirm-payment",
    response_model=ConfirmPaymentResponse,
)
async def confirm_payment(
    payments: Payments,
    request: ConfirmPaymentRequest,
) -> ConfirmPaymentResponse:
    """Confirm an intent payment after the client completes it in the browser."""
    result = await payments.confirm_payment(
        payment_id=request.payment_id,
        intent_id=request.payment_intent_id,
        email=request.email,
    )
    return ConfirmPaymentResponse(**result)


@router.get(
    "/history",
    response_model=list[PaymentResponse],
)
async def payment_history(
    payments: Payments,
    staff: OptionalStaff,
    email: Annotated[EmailStr | None, Query()] = None,
) -> list[PaymentResponse]:
    """Payment history for a client, or for everyone when called by staff."""
    actor = resolve_actor(staff, email)
    history = await payments.payment_history(actor, email=email)
    return [PaymentResponse.model_validate(p) for p in history]
