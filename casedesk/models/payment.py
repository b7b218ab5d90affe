"""Payment model."""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import DateTime, ForeignKey, Numeric, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from casedesk.db.base import Base, TimestampMixin


class PaymentStatus(str, Enum):
    """Status of a payment."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentType(str, Enum):
    """What a payment is for."""

    DEPOSIT = "deposit"
    CONSULTATION_FEE = "consultation_fee"
    FINAL = "final"
    ADDITIONAL = "additional"


class Payment(Base, TimestampMixin):
    """A charge collected through the payment provider.

    Status only moves forward: pending to completed or failed, and
    completed to refunded on an explicit cancellation.
    """

    __tablename__ = "payments"

    client_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("clients.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    consultation_id: Mapped[str | None] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("consultations.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    application_id: Mapped[str | None] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("applications.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
    )
    currency: Mapped[str] = mapped_column(
        String(3),
        default="USD",
        nullable=False,
    )
    payment_type: Mapped[PaymentType] = mapped_column(
        String(30),
        nullable=False,
    )
    status: Mapped[PaymentStatus] = mapped_column(
        String(20),
        default=PaymentStatus.PENDING,
        nullable=False,
        index=True,
    )
    # Checkout session or payment intent id
    transaction_id: Mapped[str | None] = mapped_column(
        String(255),
        unique=True,
        nullable=True,
    )
    gateway_reference: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )
    invoice_number: Mapped[str | None] = mapped_column(
        String(50),
        unique=True,
        nullable=True,
    )
    invoice_url: Mapped[str | None] = mapped_column(
        String(500),
        nullable=True,
    )
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    refunded_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    notes: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<Payment {self.id[:8]}... {self.amount} {self.currency} status={self.status}>"
