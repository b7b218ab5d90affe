"""Client model."""

from datetime import datetime

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from casedesk.db.base import Base, TimestampMixin


class Client(Base, TimestampMixin):
    """A person who books consultations.

    Clients are identified by e-mail; the record is created on first
    booking and reused afterwards.
    """

    __tablename__ = "clients"

    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        index=True,
    )
    first_name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    last_name: Mapped[str] = mapped_column(
        String(100),
        default="",
        nullable=False,
    )
    phone: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
    )
    # Issued when a completed consultation proceeds to an application
    setup_token: Mapped[str | None] = mapped_column(
        String(128),
        unique=True,
        nullable=True,
    )
    setup_token_issued_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def __repr__(self) -> str:
        return f"<Client {self.email}>"
