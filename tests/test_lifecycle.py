"""Tests for confirming, cancelling, rescheduling and completing consultations."""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from casedesk.booking.errors import (
    InvalidStateTransition,
    NotFound,
    OwnershipMismatch,
    SlotConflict,
    Unauthorized,
    UpstreamVerificationFailure,
    ValidationError,
)
from casedesk.booking.policy import RefundStatus
from casedesk.fixtures.email_templates import EMAIL_TEMPLATES
from casedesk.models.application import Application, ApplicationStage
from casedesk.models.client import Client
from casedesk.models.consultation import Consultation, ConsultationStatus
from casedesk.models.payment import Payment, PaymentStatus
from casedesk.services.booking import BookingHoldManager
from casedesk.services.lifecycle import Actor, ConsultationLifecycle
from casedesk.services.reconciliation import ExternalStatus, PaymentReconciler
from casedesk.services.slot_ledger import SlotLedger
from casedesk.utils.time import ensure_utc, utc_now


STAFF = Actor.staff("adviser-7", email="adviser@casedesk.test")


def client_actor(email: str = "client@example.com") -> Actor:
    return Actor.client(email)


async def paid_booking(make_booking, **kwargs):
    return await make_booking(
        status=ConsultationStatus.CONFIRMED,
        payment_status=PaymentStatus.COMPLETED,
        gateway_reference="pi_test_paid",
        **kwargs,
    )


class TestCancel:
    """Cancellation and the 24-hour refund rule."""

    @pytest.mark.asyncio
    async def test_cancel_48_hours_out_refunds(
        self, lifecycle, make_booking, fetch, payment_provider, email_provider
    ):
        booking = await paid_booking(make_booking, slot_start=utc_now() + timedelta(hours=48))

        result = await lifecycle.cancel(booking.consultation_id, client_actor(), reason="Travel plans changed")

        assert result.status == "cancelled"
        assert result.refund_status == RefundStatus.REFUND_PROCESSED

        consultation = await fetch(Consultation, booking.consultation_id)
        assert consultation.status == ConsultationStatus.CANCELLED
        assert consultation.cancelled_by == "client:client@example.com"
        assert consultation.cancellation_reason == "Travel plans changed"

        payment = await fetch(Payment, booking.payment_id)
        assert payment.status == PaymentStatus.REFUNDED
        assert payment.refunded_at is not None
        assert payment_provider.refunds == [
            {"payment_intent": "pi_test_paid", "reason": "Travel plans changed"}
        ]
        assert EMAIL_TEMPLATES["consultation_cancelled"]["subject"] in email_provider.subjects_for(
            booking.email
        )

    @pytest.mark.asyncio
    async def test_cancel_2_hours_out_keeps_fee(self, lifecycle, make_booking, fetch, payment_provider):
        booking = await paid_booking(make_booking, slot_start=utc_now() + timedelta(hours=2))

        result = await lifecycle.cancel(booking.consultation_id, client_actor())

        assert result.refund_status == RefundStatus.NO_REFUND_WITHIN_WINDOW
        assert (await fetch(Payment, booking.payment_id)).status == PaymentStatus.COMPLETED
        assert payment_provider.refunds == []

    @pytest.mark.asyncio
    async def test_cancel_hold_fails_payment_and_frees_slot(
        self, lifecycle, async_session, make_booking, fetch
    ):
        booking = await make_booking()

        result = await lifecycle.cancel(booking.consultation_id, client_actor())

        assert result.refund_status == RefundStatus.NOT_PAID
        assert (await fetch(Payment, booking.payment_id)).status == PaymentStatus.FAILED
        assert await SlotLedger(async_session).is_slot_available(booking.slot_start)

    @pytest.mark.asyncio
    async def test_refund_provider_error_does_not_undo_cancellation(
        self, lifecycle, make_booking, fetch, payment_provider
    ):
        booking = await paid_booking(make_booking, slot_start=utc_now() + timedelta(days=4))
        payment_provider.fail = True

        result = await lifecycle.cancel(booking.consultation_id, client_actor())

        assert result.refund_status == RefundStatus.REFUND_PROCESSED
        assert (await fetch(Consultation, booking.consultation_id)).status == ConsultationStatus.CANCELLED
        assert (await fetch(Payment, booking.payment_id)).status == PaymentStatus.REFUNDED

    @pytest.mark.asyncio
    async def test_staff_can_cancel_any_booking(self, lifecycle, make_booking, fetch):
        booking = await make_booking()

        await lifecycle.cancel(booking.consultation_id, STAFF)

        consultation = await fetch(Consultation, booking.consultation_id)
        assert consultation.cancelled_by == "staff:adviser-7"

    @pytest.mark.asyncio
    async def test_other_client_cannot_cancel(self, lifecycle, make_booking):
        booking = await make_booking()

        with pytest.raises(OwnershipMismatch):
            await lifecycle.cancel(booking.consultation_id, client_actor("intruder@example.com"))

    @pytest.mark.asyncio
    async def test_cancel_twice_rejected(self, lifecycle, make_booking):
        booking = await make_booking()
        await lifecycle.cancel(booking.consultation_id, client_actor())

        with pytest.raises(InvalidStateTransition):
            await lifecycle.cancel(booking.consultation_id, client_actor())

    @pytest.mark.asyncio
    async def test_cancel_expired_hold_rejected(self, lifecycle, make_booking):
        booking = await make_booking(hold_minutes=-1)

        with pytest.raises(InvalidStateTransition):
            await lifecycle.cancel(booking.consultation_id, client_actor())

    @pytest.mark.asyncio
    async def test_cancel_unknown_consultation(self, lifecycle):
        with pytest.raises(NotFound):
            await lifecycle.cancel("8a0e5b1c-2f7d-4c1e-9d3a-6b5f4e3d2c1b", STAFF)


class TestReschedule:
    """Moving a consultation creates a linked replacement."""

    @pytest.mark.asyncio
    async def test_reschedule_creates_replacement(
        self, lifecycle, async_session, make_booking, fetch, slot_at, email_provider
    ):
        booking = await paid_booking(make_booking, slot_start=slot_at(days=3, hour=10))
        target = slot_at(days=5, hour=9)

        replacement = await lifecycle.edit(
            booking.consultation_id,
            client_actor(),
            date=target.strftime("%Y-%m-%d"),
            time="09:00",
            reason="Clashes with work",
        )

        assert replacement.id != booking.consultation_id
        assert replacement.status == ConsultationStatus.CONFIRMED
        assert replacement.rescheduled_from_id == booking.consultation_id
        assert replacement.reschedule_reason == "Clashes with work"
        assert replacement.payment_id == booking.payment_id
        assert ensure_utc(replacement.slot_start) == target

        original = await fetch(Consultation, booking.consultation_id)
        assert original.status == ConsultationStatus.RESCHEDULED
        assert (await fetch(Payment, booking.payment_id)).consultation_id == replacement.id

        ledger = SlotLedger(async_session)
        assert await ledger.is_slot_available(booking.slot_start)
        assert not await ledger.is_slot_available(target)
        assert EMAIL_TEMPLATES["consultation_rescheduled"]["subject"] in email_provider.subjects_for(
            booking.email
        )

    @pytest.mark.asyncio
    async def test_reschedule_into_taken_slot_conflicts(
        self, lifecycle, async_session, make_booking, fetch, slot_at
    ):
        booking = await paid_booking(make_booking, slot_start=slot_at(days=3, hour=10))
        taken = slot_at(days=3, hour=12)
        await make_booking(slot_start=taken, email="other@example.com")

        with pytest.raises(SlotConflict):
            await lifecycle.edit(
                booking.consultation_id,
                client_actor(),
                date=taken.strftime("%Y-%m-%d"),
                time="12:00",
            )

        original = await fetch(Consultation, booking.consultation_id)
        assert original.status == ConsultationStatus.CONFIRMED
        assert ensure_utc(original.slot_start) == booking.slot_start
        assert await async_session.scalar(select(func.count()).select_from(Consultation)) == 2

    @pytest.mark.asyncio
    async def test_reschedule_hold_keeps_deadline(self, lifecycle, make_booking, fetch, slot_at):
        booking = await make_booking(slot_start=slot_at(days=3, hour=10))
        original = await fetch(Consultation, booking.consultation_id)

        replacement = await lifecycle.edit(booking.consultation_id, client_actor(), time="11:00")

        assert replacement.status == ConsultationStatus.HOLD
        assert ensure_utc(replacement.expires_at) == ensure_utc(original.expires_at)

    @pytest.mark.asyncio
    async def test_reschedule_outside_business_hours_rejected(self, lifecycle, make_booking):
        booking = await paid_booking(make_booking)

        with pytest.raises(ValidationError):
            await lifecycle.edit(booking.consultation_id, client_actor(), time="19:00")

    @pytest.mark.asyncio
    async def test_completed_consultation_cannot_move(self, lifecycle, make_booking):
        booking = await make_booking(
            status=ConsultationStatus.COMPLETED,
            payment_status=PaymentStatus.COMPLETED,
        )

        with pytest.raises(InvalidStateTransition):
            await lifecycle.edit(booking.consultation_id, STAFF, time="15:00")

    @pytest.mark.asyncio
    async def test_completed_consultation_accepts_notes(self, lifecycle, make_booking):
        booking = await make_booking(
            status=ConsultationStatus.COMPLETED,
            payment_status=PaymentStatus.COMPLETED,
        )

        updated = await lifecycle.edit(booking.consultation_id, STAFF, notes="Follow up in March")

        assert updated.notes == "Follow up in March"
        assert updated.status == ConsultationStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_only_staff_assign_advisers(self, lifecycle, make_booking):
        booking = await paid_booking(make_booking)

        with pytest.raises(Unauthorized):
            await lifecycle.edit(booking.consultation_id, client_actor(), adviser_id="adviser-3")

        updated = await lifecycle.edit(booking.consultation_id, STAFF, adviser_id="adviser-3")
        assert updated.adviser_id == "adviser-3"

    @pytest.mark.asyncio
    async def test_method_change_without_move(self, lifecycle, make_booking):
        booking = await paid_booking(make_booking)

        updated = await lifecycle.edit(booking.consultation_id, client_actor(), method="in_person")

        assert updated.id == booking.consultation_id
        assert updated.method == "in-person"


class TestConcurrentChanges:
    """Another request commits after the consultation was read."""

    @pytest.mark.asyncio
    async def test_cancel_loses_to_payment_landing(
        self, lifecycle, make_booking, fetch, concurrent_session, monkeypatch, payment_provider
    ):
        booking = await make_booking()
        load_payment = lifecycle._load_payment

        async def payment_lands_first(payment_id):
            async with concurrent_session() as other:
                await PaymentReconciler(other).reconcile(payment_id, ExternalStatus.SUCCEEDED)
            return await load_payment(payment_id)

        monkeypatch.setattr(lifecycle, "_load_payment", payment_lands_first)

        with pytest.raises(InvalidStateTransition):
            await lifecycle.cancel(booking.consultation_id, client_actor(), reason="Too slow")

        assert (await fetch(Consultation, booking.consultation_id)).status == ConsultationStatus.CONFIRMED
        assert (await fetch(Payment, booking.payment_id)).status == PaymentStatus.COMPLETED
        assert payment_provider.refunds == []

    @pytest.mark.asyncio
    async def test_reschedule_loses_to_cancellation(
        self, lifecycle, async_session, make_booking, fetch, slot_at, concurrent_session, monkeypatch
    ):
        booking = await make_booking(slot_start=slot_at(days=3, hour=10))
        is_slot_available = lifecycle.ledger.is_slot_available

        async def cancelled_elsewhere(*args, **kwargs):
            async with concurrent_session() as other:
                await ConsultationLifecycle(other).cancel(booking.consultation_id, client_actor())
            return await is_slot_available(*args, **kwargs)

        monkeypatch.setattr(lifecycle.ledger, "is_slot_available", cancelled_elsewhere)

        with pytest.raises(InvalidStateTransition):
            await lifecycle.edit(booking.consultation_id, client_actor(), time="11:00")

        assert (await fetch(Consultation, booking.consultation_id)).status == ConsultationStatus.CANCELLED
        assert await async_session.scalar(select(func.count()).select_from(Consultation)) == 1
        assert (await fetch(Payment, booking.payment_id)).consultation_id == booking.consultation_id

    @pytest.mark.asyncio
    async def test_reschedule_loses_insert_race(
        self, lifecycle, async_session, make_booking, fetch, slot_at, concurrent_session, monkeypatch
    ):
        booking = await paid_booking(make_booking, slot_start=slot_at(days=3, hour=10))
        target = slot_at(days=3, hour=14)
        is_slot_available = lifecycle.ledger.is_slot_available

        async def slot_taken_after_check(*args, **kwargs):
            available = await is_slot_available(*args, **kwargs)
            async with concurrent_session() as other:
                await BookingHoldManager(other).book(
                    client_email="quick@example.com",
                    client_name="Quick Booker",
                    client_phone=None,
                    date=target.strftime("%Y-%m-%d"),
                    time="14:00",
                    method="zoom",
                )
            return available

        monkeypatch.setattr(lifecycle.ledger, "is_slot_available", slot_taken_after_check)

        with pytest.raises(SlotConflict):
            await lifecycle.edit(booking.consultation_id, client_actor(), time="14:00")

        original = await fetch(Consultation, booking.consultation_id)
        assert original.status == ConsultationStatus.CONFIRMED
        assert ensure_utc(original.slot_start) == booking.slot_start
        assert (await fetch(Payment, booking.payment_id)).consultation_id == booking.consultation_id
        assert await async_session.scalar(select(func.count()).select_from(Consultation)) == 2


class TestConfirmBooking:
    @pytest.mark.asyncio
    async def test_paid_checkout_confirms_hold(self, lifecycle, make_booking, payment_provider):
        checkout = await payment_provider.create_checkout_session(
            amount=Decimal("50.00"),
            currency="USD",
            customer_email="client@example.com",
            description="Consultation",
            metadata={},
            success_url="https://app.test/ok",
            cancel_url="https://app.test/cancel",
        )
        booking = await make_booking(transaction_id=checkout.id)
        payment_provider.mark_paid(checkout.id)

        consultation = await lifecycle.confirm_booking(booking.consultation_id, "client@example.com")

        assert consultation.status == ConsultationStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_unpaid_hold_is_not_confirmed(self, lifecycle, make_booking):
        booking = await make_booking()

        with pytest.raises(InvalidStateTransition):
            await lifecycle.confirm_booking(booking.consultation_id, "client@example.com")

    @pytest.mark.asyncio
    async def test_already_confirmed_is_returned(self, lifecycle, make_booking):
        booking = await paid_booking(make_booking)

        consultation = await lifecycle.confirm_booking(booking.consultation_id, "client@example.com")

        assert consultation.id == booking.consultation_id

    @pytest.mark.asyncio
    async def test_provider_outage_is_upstream_failure(self, lifecycle, make_booking, payment_provider):
        booking = await make_booking(transaction_id="cs_test_unreachable")
        payment_provider.fail = True

        with pytest.raises(UpstreamVerificationFailure) as exc_info:
            await lifecycle.confirm_booking(booking.consultation_id, "client@example.com")

        assert exc_info.value.status_code == 502


class TestComplete:
    @pytest.mark.asyncio
    async def test_complete_with_application(
        self, lifecycle, async_session, make_booking, fetch, email_provider
    ):
        booking = await paid_booking(make_booking)

        result = await lifecycle.complete(
            booking.consultation_id,
            STAFF,
            notes="Eligible for skilled migrant",
            visa_pathways=["skilled_migrant"],
            proceed_with_application=True,
            visa_type="Skilled Migrant",
            deposit_amount=Decimal("500.00"),
        )

        assert result.consultation.status == ConsultationStatus.COMPLETED
        assert result.consultation.adviser_id == "adviser-7"
        assert result.consultation.visa_pathways == ["skilled_migrant"]
        assert result.setup_token

        application = await fetch(Application, result.application.id)
        assert application.stage == ApplicationStage.CONSULTATION
        assert application.progress == 10
        assert application.deposit_amount == Decimal("500.00")

        client = (
            await async_session.execute(select(Client).where(Client.email == booking.email))
        ).scalar_one()
        assert client.setup_token == result.setup_token
        assert EMAIL_TEMPLATES["account_setup"]["subject"] in email_provider.subjects_for(booking.email)

    @pytest.mark.asyncio
    async def test_complete_without_application(self, lifecycle, make_booking):
        booking = await paid_booking(make_booking)

        result = await lifecycle.complete(booking.consultation_id, STAFF)

        assert result.application is None
        assert result.setup_token is None

    @pytest.mark.asyncio
    async def test_client_cannot_complete(self, lifecycle, make_booking):
        booking = await paid_booking(make_booking)

        with pytest.raises(Unauthorized):
            await lifecycle.complete(booking.consultation_id, client_actor())

    @pytest.mark.asyncio
    async def test_hold_cannot_be_completed(self, lifecycle, make_booking):
        booking = await make_booking()

        with pytest.raises(InvalidStateTransition):
            await lifecycle.complete(booking.consultation_id, STAFF)

    @pytest.mark.asyncio
    async def test_application_requires_visa_type(self, lifecycle, make_booking):
        booking = await paid_booking(make_booking)

        with pytest.raises(ValidationError):
            await lifecycle.complete(booking.consultation_id, STAFF, proceed_with_application=True)


class TestQueries:
    @pytest.mark.asyncio
    async def test_expired_hold_is_not_found(self, lifecycle, make_booking):
        booking = await make_booking(hold_minutes=-1)

        with pytest.raises(NotFound):
            await lifecycle.get(booking.consultation_id, client_actor())

    @pytest.mark.asyncio
    async def test_list_for_client_hides_expired_holds(self, lifecycle, make_booking, slot_at):
        live = await make_booking(slot_start=slot_at(days=2, hour=9))
        await make_booking(slot_start=slot_at(days=2, hour=10), hold_minutes=-1)
        await make_booking(slot_start=slot_at(days=2, hour=11), email="other@example.com")

        consultations = await lifecycle.list_for_client("Client@Example.com")

        assert [c.id for c in consultations] == [live.consultation_id]

    @pytest.mark.asyncio
    async def test_list_all_filters_and_pages(self, lifecycle, make_booking, slot_at):
        for hour in (9, 10, 11):
            await paid_booking(make_booking, slot_start=slot_at(days=2, hour=hour))
        await make_booking(slot_start=slot_at(days=6, hour=9))

        items, total = await lifecycle.list_all(status="confirmed", page=1, page_size=2)
        assert total == 3
        assert len(items) == 2

        day = slot_at(days=6).date()
        items, total = await lifecycle.list_all(date_from=day, date_to=day)
        assert total == 1
        assert items[0].status == ConsultationStatus.HOLD
