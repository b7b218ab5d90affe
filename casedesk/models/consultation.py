"""Consultation model for paid one-hour advisory sessions."""

from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from casedesk.db.base import Base, TimestampMixin


class ConsultationStatus(str, Enum):
    """Status of a consultation."""

    HOLD = "hold"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    RESCHEDULED = "rescheduled"


class ConsultationMethod(str, Enum):
    """How the consultation is held."""

    ZOOM = "zoom"
    PHONE = "phone"
    IN_PERSON = "in-person"
    GOOGLE_MEET = "google-meet"


class ConsultationType(str, Enum):
    """Kind of consultation being booked."""

    INITIAL = "initial"
    FOLLOW_UP = "follow-up"
    APPEAL = "appeal"


# Statuses that occupy a calendar slot
ACTIVE_SLOT_STATUSES = ("hold", "confirmed", "completed")

_ACTIVE_SLOT_PREDICATE = "status IN ('hold', 'confirmed', 'completed')"


class Consultation(Base, TimestampMixin):
    """A booked consultation slot.

    Created in HOLD together with a pending Payment; moves to CONFIRMED only
    when that payment completes. The partial unique index guarantees at most
    one slot-occupying consultation per start time.
    """

    __tablename__ = "consultations"
    __table_args__ = (
        Index(
            "uq_consultations_active_slot",
            "slot_start",
            unique=True,
            postgresql_where=text(_ACTIVE_SLOT_PREDICATE),
            sqlite_where=text(_ACTIVE_SLOT_PREDICATE),
        ),
        Index("ix_consultations_status_expires_at", "status", "expires_at"),
    )

    client_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("clients.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    # Staff user from the identity service; assigned after booking
    adviser_id: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        index=True,
    )
    slot_start: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    duration_minutes: Mapped[int] = mapped_column(
        Integer,
        default=60,
        nullable=False,
    )
    method: Mapped[ConsultationMethod] = mapped_column(
        String(30),
        nullable=False,
    )
    consultation_type: Mapped[ConsultationType] = mapped_column(
        String(30),
        default=ConsultationType.INITIAL,
        nullable=False,
    )
    status: Mapped[ConsultationStatus] = mapped_column(
        String(30),
        default=ConsultationStatus.HOLD,
        nullable=False,
        index=True,
    )
    # Referenced, not owned; no FK so both rows can be inserted in one flush
    payment_id: Mapped[str | None] = mapped_column(
        UUID(as_uuid=False),
        nullable=True,
        index=True,
    )
    # Hold deadline, cleared on confirmation
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    # Reschedule lineage
    rescheduled_from_id: Mapped[str | None] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("consultations.id", ondelete="SET NULL"),
        nullable=True,
    )
    reschedule_reason: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    notes: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    client_message: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    visa_pathways: Mapped[list[str]] = mapped_column(
        JSON,
        default=list,
        nullable=False,
    )
    meeting_link: Mapped[str | None] = mapped_column(
        String(500),
        nullable=True,
    )
    # Cancellation tracking
    cancelled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    cancelled_by: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    cancellation_reason: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<Consultation {self.id[:8]}... {self.slot_start} status={self.status}>"
