"""Errors raised by booking, reconciliation and lifecycle operations.

Each error carries the HTTP status and machine code it is rendered with.
"""


class BookingError(Exception):
    """Base class for domain errors."""

    status_code: int = 400
    code: str = "BOOKING_ERROR"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(BookingError):
    """Malformed input, or a slot outside business hours or in the past."""

    status_code = 400
    code = "VALIDATION_ERROR"


class SlotConflict(BookingError):
    """The requested slot is already occupied."""

    status_code = 409
    code = "SLOT_UNAVAILABLE"


class NotFound(BookingError):
    status_code = 404
    code = "NOT_FOUND"


class Unauthorized(BookingError):
    status_code = 401
    code = "UNAUTHORIZED"


class OwnershipMismatch(BookingError):
    """The caller's e-mail does not match the record's owner."""

    status_code = 403
    code = "OWNERSHIP_MISMATCH"


class InvalidStateTransition(BookingError):
    status_code = 409
    code = "INVALID_STATE_TRANSITION"


class UpstreamVerificationFailure(BookingError):
    """Webhook signature rejected (400) or the provider call failed (502)."""

    status_code = 400
    code = "UPSTREAM_VERIFICATION_FAILED"
