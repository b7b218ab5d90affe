"""Slot ledger: which consultation slots are taken.

The availability check here is advisory. Mutual exclusion is enforced by
the partial unique index on consultations.slot_start; a booking that loses
the insert race surfaces as SlotConflict in the booking service.

Expired holds are treated as free by every query, and are physically
removed by release_expired_holds (run by the hold reaper task and inline
before each insert on the requested slot).
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Sequence

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement

from casedesk.booking.errors import ValidationError
from casedesk.booking.policy import business_hours, slot_end
from casedesk.models.consultation import Consultation, ConsultationStatus
from casedesk.models.payment import Payment, PaymentStatus
from casedesk.utils.time import ensure_utc, start_of_day, utc_now

logger = logging.getLogger(__name__)


@dataclass
class SlotOffer:
    """A bookable slot."""

    start: datetime
    end: datetime

    @property
    def time(self) -> str:
        return self.start.strftime("%H:%M")


def occupies_slot(now: datetime) -> ColumnElement[bool]:
    """SQL predicate for consultations that hold their slot at `now`."""
    return or_(
        Consultation.status.in_([
            ConsultationStatus.CONFIRMED,
            ConsultationStatus.COMPLETED,
        ]),
        and_(
            Consultation.status == ConsultationStatus.HOLD,
            or_(Consultation.expires_at.is_(None), Consultation.expires_at > now),
        ),
    )


class SlotLedger:
    """Queries and maintenance over the consultation calendar."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def booked_starts(
        self,
        start: datetime,
        end: datetime,
        now: datetime | None = None,
        exclude_id: str | None = None,
    ) -> Sequence[datetime]:
        """Slot starts in [start, end) occupied at `now`."""
        now = now or utc_now()
        query = select(Consultation.slot_start).where(
            Consultation.slot_start >= start,
            Consultation.slot_start < end,
            occupies_slot(now),
        )
        if exclude_id:
            query = query.where(Consultation.id != exclude_id)

        result = await self.session.execute(query)
        return [ensure_utc(s) for s in result.scalars().all()]

    async def is_slot_available(
        self,
        start: datetime,
        end: datetime | None = None,
        now: datetime | None = None,
    ) -> bool:
        """True iff no live consultation starts within [start, end).

        All consultations share one canonical duration, so checking starts
        inside the window is equivalent to checking overlap.
        """
        end = end or slot_end(start)
        return not await self.booked_starts(start, end, now=now)

    async def available_slots(
        self,
        day: date,
        now: datetime | None = None,
    ) -> list[SlotOffer]:
        """Open slots on a day: business hours minus booked and past starts.

        Raises:
            ValidationError: If the day is before today
        """
        now = now or utc_now()
        if day < now.date():
            raise ValidationError("Cannot list slots for a past date")

        day_start = start_of_day(day)
        candidates = business_hours(day)
        booked = set(await self.booked_starts(day_start, slot_end(candidates[-1]), now=now))

        return [
            SlotOffer(start=start, end=slot_end(start))
            for start in candidates
            if start > now and start not in booked
        ]

    async def release_expired_holds(
        self,
        now: datetime | None = None,
        slot_start: datetime | None = None,
    ) -> int:
        """Remove holds whose deadline has passed and fail their payments.

        The pending payment is failed first with a conditional update; a hold
        whose payment completed in the meantime is left for the reconciler to
        confirm. The caller owns the transaction.

        Args:
            now: Reference time (defaults to current UTC time)
            slot_start: Restrict the reap to a single slot

        Returns:
            Number of holds removed
        """
        now = now or utc_now()
        query = select(Consultation.id, Consultation.payment_id).where(
            Consultation.status == ConsultationStatus.HOLD,
            Consultation.expires_at <= now,
        )
        if slot_start is not None:
            query = query.where(Consultation.slot_start == slot_start)

        expired = (await self.session.execute(query)).all()

        released = 0
        for consultation_id, payment_id in expired:
            if payment_id and not await self._fail_pending_payment(payment_id, now):
                logger.info(
                    f"Hold {consultation_id} expired but its payment completed; "
                    "leaving it for confirmation"
                )
                continue

            result = await self.session.execute(
                delete(Consultation)
                .where(
                    Consultation.id == consultation_id,
                    Consultation.status == ConsultationStatus.HOLD,
                )
                .execution_options(synchronize_session=False)
            )
            released += result.rowcount

        if released:
            logger.info(f"Released {released} expired hold(s)")

        return released

    async def _fail_pending_payment(self, payment_id: str, now: datetime) -> bool:
        """Fail a pending payment; False if it has already completed."""
        await self.session.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.status == PaymentStatus.PENDING)
            .values(status=PaymentStatus.FAILED, notes="Hold expired before payment", updated_at=now)
            .execution_options(synchronize_session=False)
        )
        status = await self.session.scalar(
            select(Payment.status).where(Payment.id == payment_id)
        )
        return status not in (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED)
