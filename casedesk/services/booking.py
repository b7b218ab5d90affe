"""Booking hold manager.

Creates a time-boxed hold on a consultation slot together with the pending
payment that will confirm it. Both rows are written in one transaction; a
hold never exists without its payment.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from casedesk.booking.errors import SlotConflict, ValidationError
from casedesk.booking.policy import (
    SLOT_DURATION_MINUTES,
    normalize_method,
    parse_slot,
    slot_end,
    validate_slot,
)
from casedesk.core.config import settings
from casedesk.core.logging import audit_logger
from casedesk.db.base import new_id
from casedesk.models.client import Client
from casedesk.models.consultation import Consultation, ConsultationStatus, ConsultationType
from casedesk.models.payment import Payment, PaymentStatus, PaymentType
from casedesk.services.notifications import NotificationService
from casedesk.services.slot_ledger import SlotLedger
from casedesk.utils.time import utc_now

logger = logging.getLogger(__name__)

SLOT_UNAVAILABLE_MESSAGE = "This time slot is no longer available"


@dataclass
class HoldReceipt:
    """What the caller needs to pay for a hold."""

    consultation_id: str
    payment_id: str
    hold_expiry: datetime
    slot_start: datetime
    fee: Decimal
    currency: str


def split_name(full_name: str) -> tuple[str, str]:
    parts = full_name.strip().split(maxsplit=1)
    if not parts:
        raise ValidationError("Client name is required")
    return parts[0], parts[1] if len(parts) > 1 else ""


class BookingHoldManager:
    """Places holds on consultation slots."""

    def __init__(
        self,
        session: AsyncSession,
        notifications: NotificationService | None = None,
    ):
        self.session = session
        self.notifications = notifications
        self.ledger = SlotLedger(session)

    async def _upsert_client(
        self,
        email: str,
        name: str,
        phone: str | None,
    ) -> Client:
        """Find a client by e-mail or create one.

        The insert runs in a savepoint so that losing a concurrent insert of
        the same e-mail only rolls back the savepoint; the winner is re-read.
        """
        first_name, last_name = split_name(name)

        result = await self.session.execute(select(Client).where(Client.email == email))
        client = result.scalar_one_or_none()
        if client is not None:
            if phone and not client.phone:
                client.phone = phone
            return client

        client = Client(email=email, first_name=first_name, last_name=last_name, phone=phone)
        try:
            async with self.session.begin_nested():
                self.session.add(client)
        except IntegrityError:
            result = await self.session.execute(select(Client).where(Client.email == email))
            client = result.scalar_one()

        return client

    async def book(
        self,
        client_email: str,
        client_name: str,
        client_phone: str | None,
        date: str,
        time: str,
        method: str,
        note: str | None = None,
        consultation_type: str = ConsultationType.INITIAL,
    ) -> HoldReceipt:
        """Place a hold on a slot and create its pending payment.

        Raises:
            ValidationError: Bad input, slot outside business hours or in the past
            SlotConflict: Slot already occupied
        """
        now = utc_now()

        # Validation happens before any write
        if not client_email:
            raise ValidationError("Client email is required")
        email = client_email.strip().lower()
        split_name(client_name or "")
        slot_start = parse_slot(date, time)
        validate_slot(slot_start, now)
        stored_method = normalize_method(method)
        try:
            stored_type = ConsultationType(consultation_type or ConsultationType.INITIAL)
        except ValueError:
            raise ValidationError(f"Invalid consultation type '{consultation_type}'") from None

        # An expired hold still sits in the unique index until reaped
        await self.ledger.release_expired_holds(now=now, slot_start=slot_start)

        if not await self.ledger.is_slot_available(slot_start, slot_end(slot_start), now=now):
            await self.session.rollback()
            raise SlotConflict(SLOT_UNAVAILABLE_MESSAGE)

        client = await self._upsert_client(email, client_name, client_phone)

        expires_at = now + timedelta(minutes=settings.hold_minutes)
        consultation_id = new_id()
        payment_id = new_id()

        consultation = Consultation(
            id=consultation_id,
            client_id=client.id,
            slot_start=slot_start,
            duration_minutes=SLOT_DURATION_MINUTES,
            method=stored_method,
            consultation_type=stored_type,
            status=ConsultationStatus.HOLD,
            payment_id=payment_id,
            expires_at=expires_at,
            client_message=note,
            visa_pathways=[],
        )
        payment = Payment(
            id=payment_id,
            client_id=client.id,
            consultation_id=consultation_id,
            amount=settings.consultation_fee,
            currency=settings.currency,
            payment_type=PaymentType.CONSULTATION_FEE,
            status=PaymentStatus.PENDING,
            expires_at=expires_at,
        )

        try:
            self.session.add(consultation)
            await self.session.flush()
            self.session.add(payment)
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            logger.info(f"Lost insert race for slot {slot_start.isoformat()}")
            raise SlotConflict(SLOT_UNAVAILABLE_MESSAGE) from None

        audit_logger.log(
            action="consultation.hold_created",
            actor_type="client",
            actor_id=email,
            entity_type="consultation",
            entity_id=consultation_id,
            metadata={"slot_start": slot_start.isoformat(), "payment_id": payment_id},
        )

        if self.notifications is not None:
            await self.notifications.send_templated_email(
                email,
                "consultation_hold",
                {
                    "client_name": client.full_name,
                    "date": slot_start.strftime("%Y-%m-%d"),
                    "time": slot_start.strftime("%H:%M"),
                    "method": stored_method.value,
                    "amount": f"{settings.consultation_fee:.2f}",
                    "currency": settings.currency,
                    "hold_expiry": expires_at.strftime("%Y-%m-%d %H:%M"),
                },
            )

        return HoldReceipt(
            consultation_id=consultation_id,
            payment_id=payment_id,
            hold_expiry=expires_at,
            slot_start=slot_start,
            fee=settings.consultation_fee,
            currency=settings.currency,
        )
