"""Visa application model (minimal; only the deposit stage is managed here)."""

from decimal import Decimal
from enum import Enum

from sqlalchemy import JSON, ForeignKey, Integer, Numeric, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from casedesk.db.base import Base, TimestampMixin


class ApplicationStage(str, Enum):
    """Stages of a visa application."""

    CONSULTATION = "consultation"
    DEPOSIT_PAID = "deposit_paid"
    DOCUMENTS_PENDING = "documents_pending"
    DOCUMENTS_RECEIVED = "documents_received"
    SUBMITTED_TO_INZ = "submitted_to_inz"
    INZ_PROCESSING = "inz_processing"
    DECISION = "decision"


STAGE_PROGRESS = {
    ApplicationStage.CONSULTATION: 10,
    ApplicationStage.DEPOSIT_PAID: 20,
    ApplicationStage.DOCUMENTS_PENDING: 30,
    ApplicationStage.DOCUMENTS_RECEIVED: 45,
    ApplicationStage.SUBMITTED_TO_INZ: 70,
    ApplicationStage.INZ_PROCESSING: 85,
    ApplicationStage.DECISION: 100,
}


class Application(Base, TimestampMixin):
    """A client's visa application opened after a completed consultation."""

    __tablename__ = "applications"

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
    )
    visa_type: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    stage: Mapped[ApplicationStage] = mapped_column(
        String(30),
        default=ApplicationStage.CONSULTATION,
        nullable=False,
        index=True,
    )
    progress: Mapped[int] = mapped_column(
        Integer,
        default=10,
        nullable=False,
    )
    deposit_amount: Mapped[Decimal | None] = mapped_column(
        Numeric(10, 2),
        nullable=True,
    )
    # List of {"stage", "date", "notes"} entries
    timeline: Mapped[list[dict]] = mapped_column(
        JSON,
        default=list,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Application {self.id[:8]}... {self.visa_type} stage={self.stage}>"
