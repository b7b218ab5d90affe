"""Booking policy enforcement.

Slot validation, consultation status transitions and the refund rule.
All functions are pure; services pass in the current time.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Optional

from casedesk.booking.errors import InvalidStateTransition, ValidationError
from casedesk.core.config import settings
from casedesk.models.consultation import ConsultationMethod, ConsultationStatus
from casedesk.utils.time import parse_date

# Cancellations further out than this are refunded
REFUND_WINDOW_HOURS = 24

# Canonical slot length; availability checks rely on every booking sharing it
SLOT_DURATION_MINUTES = 60

# Public aliases accepted at booking time
METHOD_ALIASES = {
    "online": ConsultationMethod.ZOOM,
    "in_person": ConsultationMethod.IN_PERSON,
}

VALID_METHODS = frozenset(m.value for m in ConsultationMethod)

# Statuses that accept no further changes except adviser/notes metadata
TERMINAL_STATUSES = frozenset({
    ConsultationStatus.COMPLETED,
    ConsultationStatus.CANCELLED,
    ConsultationStatus.RESCHEDULED,
})

ALLOWED_TRANSITIONS: dict[ConsultationStatus, frozenset[ConsultationStatus]] = {
    ConsultationStatus.HOLD: frozenset({
        ConsultationStatus.CONFIRMED,
        ConsultationStatus.CANCELLED,
        ConsultationStatus.RESCHEDULED,
    }),
    ConsultationStatus.CONFIRMED: frozenset({
        ConsultationStatus.COMPLETED,
        ConsultationStatus.CANCELLED,
        ConsultationStatus.RESCHEDULED,
    }),
    ConsultationStatus.COMPLETED: frozenset(),
    ConsultationStatus.CANCELLED: frozenset(),
    ConsultationStatus.RESCHEDULED: frozenset(),
}


class RefundStatus(str, Enum):
    """Outcome of a cancellation with respect to the fee."""

    REFUND_PROCESSED = "refund_processed"
    NO_REFUND_WITHIN_WINDOW = "no_refund_within_24_hours"
    NOT_PAID = "not_paid"


@dataclass
class RefundDecision:
    """Refund decision for a cancellation.

    Attributes:
        refundable: Whether the completed fee is returned
        status: Outcome code reported to the caller
        reason: Human-readable explanation
    """

    refundable: bool
    status: RefundStatus
    reason: str


def can_transition(current: str, target: str) -> bool:
    """Check whether a consultation may move from current to target."""
    try:
        return ConsultationStatus(target) in ALLOWED_TRANSITIONS[ConsultationStatus(current)]
    except (KeyError, ValueError):
        return False


def ensure_transition(current: str, target: str) -> None:
    """Raise InvalidStateTransition when the move is not allowed."""
    if not can_transition(current, target):
        raise InvalidStateTransition(
            f"Cannot move consultation from '{current}' to '{target}'"
        )


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def normalize_method(method: Optional[str]) -> ConsultationMethod:
    """Map a public method name (including aliases) onto a stored method.

    Raises:
        ValidationError: If the method is unknown
    """
    if not method:
        raise ValidationError("Consultation method is required")

    value = method.strip().lower()
    if value in METHOD_ALIASES:
        return METHOD_ALIASES[value]
    if value in VALID_METHODS:
        return ConsultationMethod(value)

    raise ValidationError(
        f"Invalid consultation method '{method}'. "
        f"Use one of: {', '.join(sorted(VALID_METHODS | set(METHOD_ALIASES)))}"
    )


def parse_slot_date(value: str) -> date:
    """Parse a YYYY-MM-DD booking date."""
    try:
        return parse_date(value)
    except (TypeError, ValueError):
        raise ValidationError("Invalid date format. Use YYYY-MM-DD") from None


def parse_slot(date_str: str, time_str: str) -> datetime:
    """Combine YYYY-MM-DD and HH:MM into a UTC slot start.

    Raises:
        ValidationError: On malformed input or a start that is not on the hour
    """
    day = parse_slot_date(date_str)

    if not isinstance(time_str, str) or len(time_str) != 5:
        raise ValidationError("Invalid time format. Use HH:MM")
    try:
        slot_time = datetime.strptime(time_str, "%H:%M").time()
    except ValueError:
        raise ValidationError("Invalid time format. Use HH:MM") from None

    if slot_time.minute != 0:
        raise ValidationError("Consultations start on the hour")

    return datetime.combine(day, slot_time, tzinfo=timezone.utc)


def business_hours(day: date) -> list[datetime]:
    """All slot starts offered on a day, in order."""
    return [
        datetime.combine(day, time(hour=hour), tzinfo=timezone.utc)
        for hour in range(settings.business_hours_start, settings.business_hours_end)
    ]


def validate_slot(slot_start: datetime, now: datetime) -> None:
    """Check a slot start is within business hours and in the future.

    Raises:
        ValidationError: If the slot cannot be booked
    """
    if slot_start.minute or slot_start.second or slot_start.microsecond:
        raise ValidationError("Consultations start on the hour")

    if not settings.business_hours_start <= slot_start.hour < settings.business_hours_end:
        raise ValidationError(
            f"Consultations are available between "
            f"{settings.business_hours_start:02d}:00 and "
            f"{settings.business_hours_end:02d}:00 UTC"
        )

    if slot_start <= now:
        raise ValidationError("Cannot book a consultation in the past")


def slot_end(slot_start: datetime) -> datetime:
    return slot_start + timedelta(minutes=SLOT_DURATION_MINUTES)


def hours_until(slot_start: datetime, now: datetime) -> float:
    """Hours from now until the slot starts (negative once started)."""
    return (slot_start - now).total_seconds() / 3600


def refund_decision(
    slot_start: datetime,
    now: datetime,
    payment_completed: bool,
) -> RefundDecision:
    """Decide whether cancelling now returns the consultation fee.

    A completed fee is refunded only when the consultation is more than
    REFUND_WINDOW_HOURS away.

    Examples:
        >>> start = datetime(2025, 3, 3, 10, tzinfo=timezone.utc)
        >>> refund_decision(start, start - timedelta(hours=48), True).refundable
        True
        >>> refund_decision(start, start - timedelta(hours=2), True).refundable
        False
    """
    if not payment_completed:
        return RefundDecision(
            refundable=False,
            status=RefundStatus.NOT_PAID,
            reason="No completed payment to refund",
        )

    if hours_until(slot_start, now) > REFUND_WINDOW_HOURS:
        return RefundDecision(
            refundable=True,
            status=RefundStatus.REFUND_PROCESSED,
            reason=f"Cancelled more than {REFUND_WINDOW_HOURS} hours in advance",
        )

    return RefundDecision(
        refundable=False,
        status=RefundStatus.NO_REFUND_WITHIN_WINDOW,
        reason=f"Cancellations within {REFUND_WINDOW_HOURS} hours are not refunded",
    )
