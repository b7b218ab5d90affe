"""Consultation API endpoints: availability, booking and lifecycle."""

from datetime import date, datetime
from decimal import Decimal
from typing import Annotated

from fastapi import APIRouter, Query, status
from pydantic import BaseModel, EmailStr, Field, field_validator

from casedesk.api.deps import Bookings, CurrentStaff, DbSession, Lifecycle, OptionalStaff
from casedesk.booking.errors import Unauthorized
from casedesk.booking.policy import SLOT_DURATION_MINUTES, parse_slot_date
from casedesk.core.config import settings
from casedesk.services.lifecycle import Actor
from casedesk.services.slot_ledger import SlotLedger
from casedesk.utils.time import ensure_utc

router = APIRouter()


# ============================================================================
# Request/Response Schemas
# ============================================================================


class SlotResponse(BaseModel):
    """An open consultation slot."""

    start: datetime
    end: datetime
    time: str


class AvailableSlotsResponse(BaseModel):
    date: date
    slots: list[SlotResponse]
    duration_minutes: int
    fee: Decimal
    currency: str


class BookConsultationRequest(BaseModel):
    """Request to hold a consultation slot."""

    client_email: EmailStr
    client_name: str = Field(..., min_length=1, max_length=200)
    client_phone: str | None = Field(None, max_length=50)
    date: str = Field(description="YYYY-MM-DD")
    time: str = Field(description="HH:MM, on the hour, UTC")
    method: str = Field(description="zoom, phone, in-person, google-meet (or online/in_person)")
    note: str | None = Field(None, max_length=2000)
    consultation_type: str = "initial"


class HoldResponse(BaseModel):
    """Receipt for a newly placed hold."""

    success: bool = True
    consultation_id: str
    payment_id: str
    slot_start: datetime
    hold_expiry: datetime
    fee: Decimal
    currency: str


class ConsultationResponse(BaseModel):
    """Consultation response."""

    id: str
    client_id: str
    adviser_id: str | None
    slot_start: datetime
    duration_minutes: int
    method: str
    consultation_type: str
    status: str
    payment_id: str | None
    expires_at: datetime | None
    rescheduled_from_id: str | None
    reschedule_reason: str | None
    notes: str | None
    client_message: str | None
    visa_pathways: list[str]
    meeting_link: str | None
    cancelled_at: datetime | None
    cancellation_reason: str | None
    completed_at: datetime | None
    created_at: datetime

    @field_validator(
        "slot_start", "expires_at", "cancelled_at", "completed_at", "created_at"
    )
    @classmethod
    def _as_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)

    model_config = {"from_attributes": True}


class ConsultationListResponse(BaseModel):
    items: list[ConsultationResponse]
    total: int
    page: int
    page_size: int


class ConfirmBookingRequest(BaseModel):
    email: EmailStr


class CancelConsultationRequest(BaseModel):
    """Cancellation request; clients identify themselves by e-mail."""

    email: EmailStr | None = None
    reason: str | None = Field(None, max_length=2000)


class CancelConsultationResponse(BaseModel):
    success: bool = True
    consultation_id: str
    status: str
    refund_status: str
    refund_reason: str


class EditConsultationRequest(BaseModel):
    """Edit or reschedule request; a new date/time moves the booking."""

    email: EmailStr | None = None
    date: str | None = None
    time: str | None = None
    method: str | None = None
    adviser_id: str | None = None
    notes: str | None = Field(None, max_length=5000)
    reason: str | None = Field(None, max_length=2000)


class CompleteConsultationRequest(BaseModel):
    notes: str | None = Field(None, max_length=5000)
    visa_pathways: list[str] | None = None
    proceed_with_application: bool = False
    visa_type: str | None = None
    deposit_amount: Decimal | None = Field(None, gt=0)


class CompleteConsultationResponse(BaseModel):
    success: bool = True
    consultation: ConsultationResponse
    application_id: str | None = None
    setup_token_issued: bool = False


def resolve_actor(staff: Actor | None, email: str | None) -> Actor:
    """Staff from the bearer token, otherwise the client named by e-mail."""
    if staff is not None:
        return staff
    if not email:
        raise Unauthorized("Provide the booking e-mail or a staff token")
    return Actor.client(email)


# ============================================================================
# Public Endpoints
# ============================================================================


@router.get(
    "/available-slots",
    response_model=AvailableSlotsResponse,
)
async def get_available_slots(
    session: DbSession,
    date: Annotated[str, Query(description="YYYY-MM-DD")],
) -> AvailableSlotsResponse:
    """List open one-hour slots for a day (business hours, UTC)."""
    day = parse_slot_date(date)
    offers = await SlotLedger(session).available_slots(day)

    return AvailableSlotsResponse(
        date=day,
        slots=[SlotResponse(start=o.start, end=o.end, time=o.time) for o in offers],
        duration_minutes=SLOT_DURATION_MINUTES,
        fee=settings.consultation_fee,
        currency=settings.currency,
    )


@router.post(
    "/book",
    response_model=HoldResponse,
    status_code=status.HTTP_201_CREATED,
)
async def book_consultation(
    bookings: Bookings,
    request: BookConsultationRequest,
) -> HoldResponse:
    """Hold a slot and create its pending payment."""
    receipt = await bookings.book(
        client_email=request.client_email,
        client_name=request.client_name,
        client_phone=request.client_phone,
        date=request.date,
        time=request.time,
        method=request.method,
        note=request.note,
        consultation_type=request.consultation_type,
    )

    return HoldResponse(
        consultation_id=receipt.consultation_id,
        payment_id=receipt.payment_id,
        slot_start=receipt.slot_start,
        hold_expiry=receipt.hold_expiry,
        fee=receipt.fee,
        currency=receipt.currency,
    )


@router.get(
    "/mine",
    response_model=list[ConsultationResponse],
)
async def get_my_consultations(
    lifecycle: Lifecycle,
    email: Annotated[EmailStr, Query()],
) -> list[ConsultationResponse]:
    """List a client's consultations."""
    consultations = await lifecycle.list_for_client(email)
    return [ConsultationResponse.model_validate(c) for c in consultations]


# ============================================================================
# Staff Endpoints
# ============================================================================


@router.get(
    "",
    response_model=ConsultationListResponse,
)
async def list_consultations(
    staff: CurrentStaff,
    lifecycle: Lifecycle,
    status_filter: Annotated[str | None, Query(alias="status")] = None,
    date_from: date | None = None,
    date_to: date | None = None,
    page: Annotated[int, Query(ge=1)] = 1,
    page_size: Annotated[int, Query(ge=1, le=100)] = 20,
) -> ConsultationListResponse:
    """List consultations with optional status and date filters."""
    items, total = await lifecycle.list_all(
        status=status_filter,
        date_from=date_from,
        date_to=date_to,
        page=page,
        page_size=page_size,
    )

    return ConsultationListResponse(
        items=[ConsultationResponse.model_validate(c) for c in items],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.patch(
    "/{consultation_id}/complete",
    response_model=CompleteConsultationResponse,
)
async def complete_consultation(
    consultation_id: str,
    staff: CurrentStaff,
    lifecycle: Lifecycle,
    request: CompleteConsultationRequest,
) -> CompleteConsultationResponse:
    """Mark a confirmed consultation as completed."""
    result = await lifecycle.complete(
        consultation_id,
        staff,
        notes=request.notes,
        visa_pathways=request.visa_pathways,
        proceed_with_application=request.proceed_with_application,
        visa_type=request.visa_type,
        deposit_amount=request.deposit_amount,
    )

    return CompleteConsultationResponse(
        consultation=ConsultationResponse.model_validate(result.consultation),
        application_id=result.application.id if result.application else None,
        setup_token_issued=result.setup_token is not None,
    )


# ============================================================================
# Client or Staff Endpoints
# ============================================================================


@router.get(
    "/{consultation_id}",
    response_model=ConsultationResponse,
)
async def get_consultation(
    consultation_id: str,
    staff: OptionalStaff,
    lifecycle: Lifecycle,
    email: Annotated[EmailStr | None, Query()] = None,
) -> ConsultationResponse:
    """Fetch one consultation."""
    consultation = await lifecycle.get(consultation_id, resolve_actor(staff, email))
    return ConsultationResponse.model_validate(consultation)


@router.patch(
    "/{consultation_id}/confirm-booking",
    response_model=ConsultationResponse,
)
async def confirm_booking(
    consultation_id: str,
    lifecycle: Lifecycle,
    request: ConfirmBookingRequest,
) -> ConsultationResponse:
    """Confirm a hold whose checkout has been paid."""
    consultation = await lifecycle.confirm_booking(consultation_id, request.email)
    return ConsultationResponse.model_validate(consultation)


@router.patch(
    "/{consultation_id}/cancel",
    response_model=CancelConsultationResponse,
)
async def cancel_consultation(
    consultation_id: str,
    staff: OptionalStaff,
    lifecycle: Lifecycle,
    request: CancelConsultationRequest,
) -> CancelConsultationResponse:
    """Cancel a consultation; refunds apply more than 24 hours ahead."""
    result = await lifecycle.cancel(
        consultation_id,
        resolve_actor(staff, request.email),
        reason=request.reason,
    )

    return CancelConsultationResponse(
        consultation_id=result.consultation_id,
        status=result.status,
        refund_status=result.refund_status.value,
        refund_reason=result.refund_reason,
    )


@router.patch(
    "/{consultation_id}",
    response_model=ConsultationResponse,
)
async def edit_consultation(
    consultation_id: str,
    staff: OptionalStaff,
    lifecycle: Lifecycle,
    request: EditConsultationRequest,
) -> ConsultationResponse:
    """Edit details or reschedule to a new slot."""
    consultation = await lifecycle.edit(
        consultation_id,
        resolve_actor(staff, request.email),
        date=request.date,
        time=request.time,
        method=request.method,
        adviser_id=request.adviser_id,
        notes=request.notes,
        reason=request.reason,
    )
    return ConsultationResponse.model_validate(consultation)
