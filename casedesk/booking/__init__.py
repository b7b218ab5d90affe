"""Booking module for consultation slots, status transitions and refunds."""

from casedesk.booking.errors import (
    BookingError,
    InvalidStateTransition,
    NotFound,
    OwnershipMismatch,
    SlotConflict,
    Unauthorized,
    UpstreamVerificationFailure,
    ValidationError,
)
from casedesk.booking.policy import (
    REFUND_WINDOW_HOURS,
    RefundDecision,
    RefundStatus,
    can_transition,
    refund_decision,
)

__all__ = [
    "BookingError",
    "InvalidStateTransition",
    "NotFound",
    "OwnershipMismatch",
    "REFUND_WINDOW_HOURS",
    "RefundDecision",
    "RefundStatus",
    "SlotConflict",
    "Unauthorized",
    "UpstreamVerificationFailure",
    "ValidationError",
    "can_transition",
    "refund_decision",
]
