"""Consultation lifecycle: confirm, cancel, edit/reschedule and complete.

Transitions follow casedesk.booking.policy. Status changes are conditional
updates on the status the caller observed, so a concurrent change makes
the later operation fail with InvalidStateTransition instead of
overwriting it.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Sequence

from sqlalchemy import and_, func, not_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from casedesk.booking.errors import (
    InvalidStateTransition,
    NotFound,
    OwnershipMismatch,
    SlotConflict,
    Unauthorized,
    UpstreamVerificationFailure,
    ValidationError,
)
from casedesk.booking.policy import (
    RefundStatus,
    ensure_transition,
    is_terminal,
    normalize_method,
    parse_slot,
    refund_decision,
    slot_end,
    validate_slot,
)
from casedesk.core.config import settings
from casedesk.core.logging import audit_logger
from casedesk.db.base import new_id
from casedesk.models.application import STAGE_PROGRESS, Application, ApplicationStage
from casedesk.models.client import Client
from casedesk.models.consultation import Consultation, ConsultationStatus
from casedesk.models.payment import Payment, PaymentStatus
from casedesk.services.booking import SLOT_UNAVAILABLE_MESSAGE
from casedesk.services.notifications import NotificationService
from casedesk.services.payment_provider import PaymentProvider, PaymentProviderError
from casedesk.services.reconciliation import ExternalStatus, PaymentReconciler, Trigger
from casedesk.services.slot_ledger import SlotLedger
from casedesk.utils.time import ensure_utc, start_of_day, utc_now

logger = logging.getLogger(__name__)


@dataclass
class Actor:
    """Who is performing an operation.

    Clients are identified by e-mail; staff by the subject of their token.
    """

    kind: str
    email: str | None = None
    staff_id: str | None = None

    @property
    def is_staff(self) -> bool:
        return self.kind == "staff"

    @property
    def label(self) -> str:
        if self.is_staff:
            return f"staff:{self.staff_id}"
        return f"client:{self.email}"

    @classmethod
    def client(cls, email: str) -> "Actor":
        return cls(kind="client", email=(email or "").strip().lower())

    @classmethod
    def staff(cls, staff_id: str, email: str | None = None) -> "Actor":
        return cls(kind="staff", staff_id=staff_id, email=email)


@dataclass
class CancellationResult:
    consultation_id: str
    status: str
    refund_status: RefundStatus
    refund_reason: str


@dataclass
class CompletionResult:
    consultation: Consultation
    application: Application | None = None
    setup_token: str | None = None


def _hold_expired(consultation: Consultation, now: datetime) -> bool:
    expires_at = ensure_utc(consultation.expires_at)
    return (
        consultation.status == ConsultationStatus.HOLD
        and expires_at is not None
        and expires_at <= now
    )


def _live(now: datetime):
    """Filter out holds whose deadline has passed."""
    return not_(
        and_(
            Consultation.status == ConsultationStatus.HOLD,
            Consultation.expires_at <= now,
        )
    )


class ConsultationLifecycle:
    """Status transitions on existing consultations."""

    def __init__(
        self,
        session: AsyncSession,
        provider: PaymentProvider | None = None,
        reconciler: PaymentReconciler | None = None,
        notifications: NotificationService | None = None,
    ):
        self.session = session
        self.provider = provider
        self.reconciler = reconciler or PaymentReconciler(session, notifications=notifications)
        self.notifications = notifications
        self.ledger = SlotLedger(session)

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    async def _load(self, consultation_id: str) -> Consultation:
        result = await self.session.execute(
            select(Consultation)
            .where(Consultation.id == consultation_id)
            .execution_options(populate_existing=True)
        )
        consultation = result.scalar_one_or_none()
        if consultation is None:
            raise NotFound(f"Consultation {consultation_id} not found")
        return consultation

    async def _load_payment(self, payment_id: str | None) -> Payment | None:
        if not payment_id:
            return None
        result = await self.session.execute(
            select(Payment)
            .where(Payment.id == payment_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _check_access(self, consultation: Consultation, actor: Actor) -> Client:
        client = await self.session.get(Client, consultation.client_id)
        if client is None:
            raise NotFound(f"Client for consultation {consultation.id} not found")
        if not actor.is_staff and client.email != (actor.email or "").lower():
            raise OwnershipMismatch("This consultation belongs to a different client")
        return client

    async def get(self, consultation_id: str, actor: Actor) -> Consultation:
        """Fetch a consultation the actor may see; expired holds are absent."""
        consultation = await self._load(consultation_id)
        await self._check_access(consultation, actor)
        if _hold_expired(consultation, utc_now()):
            raise NotFound(f"Consultation {consultation_id} not found")
        return consultation

    async def list_for_client(self, email: str) -> Sequence[Consultation]:
        """A client's consultations, most recent slot first."""
        result = await self.session.execute(
            select(Consultation)
            .join(Client, Client.id == Consultation.client_id)
            .where(Client.email == email.strip().lower(), _live(utc_now()))
            .order_by(Consultation.slot_start.desc())
        )
        return result.scalars().all()

    async def list_all(
        self,
        status: str | None = None,
        date_from: date | None = None,
        date_to: date | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[Sequence[Consultation], int]:
        """Staff listing with filters and pagination.

        Returns:
            Tuple of (consultations on the page, total matching)
        """
        conditions = [_live(utc_now())]
        if status:
            conditions.append(Consultation.status == status)
        if date_from:
            conditions.append(Consultation.slot_start >= start_of_day(date_from))
        if date_to:
            conditions.append(Consultation.slot_start < start_of_day(date_to) + timedelta(days=1))

        total = await self.session.scalar(
            select(func.count()).select_from(Consultation).where(*conditions)
        )
        result = await self.session.execute(
            select(Consultation)
            .where(*conditions)
            .order_by(Consultation.slot_start.asc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return result.scalars().all(), total or 0

    # =========================================================================
    # CONFIRM
    # =========================================================================

    async def confirm_booking(self, consultation_id: str, email: str) -> Consultation:
        """Confirm a hold once its checkout session has been paid.

        A confirmed consultation is returned unchanged. For a hold, the
        provider is asked about the linked checkout session and a paid
        session is reconciled.

        Raises:
            InvalidStateTransition: If the payment has not completed
        """
        consultation = await self._load(consultation_id)
        await self._check_access(consultation, Actor.client(email))

        if consultation.status == ConsultationStatus.CONFIRMED:
            return consultation
        if consultation.status != ConsultationStatus.HOLD:
            raise InvalidStateTransition(
                f"Cannot confirm a {consultation.status} consultation"
            )

        payment = await self._load_payment(consultation.payment_id)
        if (
            payment is not None
            and payment.status == PaymentStatus.PENDING
            and payment.transaction_id
            and self.provider is not None
        ):
            try:
                checkout = await self.provider.retrieve_checkout_session(payment.transaction_id)
            except PaymentProviderError as e:
                raise UpstreamVerificationFailure(
                    f"Could not verify payment: {e}", status_code=502
                ) from e

            if checkout.is_paid:
                await self.reconciler.reconcile(
                    payment.id,
                    ExternalStatus.SUCCEEDED,
                    external_ref=checkout.payment_intent,
                    trigger=Trigger.CONFIRM,
                )

        consultation = await self._load(consultation_id)
        if consultation.status != ConsultationStatus.CONFIRMED:
            raise InvalidStateTransition("Payment has not been completed for this consultation")

        return consultation

    # =========================================================================
    # CANCEL
    # =========================================================================

    async def cancel(
        self,
        consultation_id: str,
        actor: Actor,
        reason: str | None = None,
    ) -> CancellationResult:
        """Cancel a hold or confirmed consultation.

        A completed fee is refunded only when the consultation is more than
        REFUND_WINDOW_HOURS away; the provider refund is issued after the
        state change commits.
        """
        now = utc_now()
        consultation = await self._load(consultation_id)
        client = await self._check_access(consultation, actor)

        current = consultation.status
        ensure_transition(current, ConsultationStatus.CANCELLED)
        if _hold_expired(consultation, now):
            raise InvalidStateTransition("This hold has already expired")

        payment = await self._load_payment(consultation.payment_id)
        paid = (
            current == ConsultationStatus.CONFIRMED
            and payment is not None
            and payment.status == PaymentStatus.COMPLETED
        )
        slot_start = ensure_utc(consultation.slot_start)
        decision = refund_decision(slot_start, now, payment_completed=paid)

        result = await self.session.execute(
            update(Consultation)
            .where(Consultation.id == consultation.id, Consultation.status == current)
            .values(
                status=ConsultationStatus.CANCELLED,
                cancelled_at=now,
                cancelled_by=actor.label,
                cancellation_reason=reason,
                expires_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.session.rollback()
            raise InvalidStateTransition("Consultation changed while cancelling; retry")

        if payment is not None and current == ConsultationStatus.HOLD:
            await self.session.execute(
                update(Payment)
                .where(Payment.id == payment.id, Payment.status == PaymentStatus.PENDING)
                .values(status=PaymentStatus.FAILED, notes="Hold cancelled before payment")
                .execution_options(synchronize_session=False)
            )

        if decision.refundable:
            await self.session.execute(
                update(Payment)
                .where(Payment.id == payment.id, Payment.status == PaymentStatus.COMPLETED)
                .values(status=PaymentStatus.REFUNDED, refunded_at=now)
                .execution_options(synchronize_session=False)
            )

        await self.session.commit()

        audit_logger.log(
            action="consultation.cancelled",
            actor_type=actor.kind,
            actor_id=actor.staff_id or actor.email or "",
            entity_type="consultation",
            entity_id=consultation.id,
            metadata={"refund_status": decision.status.value, "previous_status": current},
        )

        if decision.refundable:
            await self._issue_provider_refund(payment, reason)

        if self.notifications is not None:
            await self.notifications.send_templated_email(
                client.email,
                "consultation_cancelled",
                {
                    "client_name": client.full_name,
                    "date": slot_start.strftime("%Y-%m-%d"),
                    "time": slot_start.strftime("%H:%M"),
                    "refund_reason": decision.reason,
                },
            )

        return CancellationResult(
            consultation_id=consultation.id,
            status=ConsultationStatus.CANCELLED.value,
            refund_status=decision.status,
            refund_reason=decision.reason,
        )

    async def _issue_provider_refund(self, payment: Payment, reason: str | None) -> None:
        if self.provider is None:
            logger.warning(f"No payment provider configured; refund {payment.id} manually")
            return
        try:
            intent_id = payment.gateway_reference
            if not intent_id and payment.transaction_id:
                checkout = await self.provider.retrieve_checkout_session(payment.transaction_id)
                intent_id = checkout.payment_intent
            if not intent_id:
                logger.warning(f"Payment {payment.id} has no provider reference; refund manually")
                return
            await self.provider.refund(intent_id, reason=reason)
        except PaymentProviderError:
            logger.exception(f"Provider refund failed for payment {payment.id}; refund manually")

    # =========================================================================
    # EDIT / RESCHEDULE
    # =========================================================================

    async def edit(
        self,
        consultation_id: str,
        actor: Actor,
        date: str | None = None,
        time: str | None = None,
        method: str | None = None,
        adviser_id: str | None = None,
        notes: str | None = None,
        reason: str | None = None,
    ) -> Consultation:
        """Edit metadata or move the consultation to a new slot.

        A date/time change creates a new consultation that keeps the status,
        payment and hold deadline of the original; the original is marked
        rescheduled. Terminal consultations accept only adviser/notes edits.

        Returns:
            The current consultation (the new record after a reschedule)
        """
        now = utc_now()
        consultation = await self._load(consultation_id)
        client = await self._check_access(consultation, actor)

        if adviser_id is not None and not actor.is_staff:
            raise Unauthorized("Only staff can assign an adviser")

        wants_move = bool(date or time)
        stored_method = normalize_method(method) if method else None

        if is_terminal(consultation.status):
            if wants_move or stored_method:
                raise InvalidStateTransition(
                    f"A {consultation.status} consultation cannot be changed"
                )
            return await self._update_metadata(consultation, adviser_id=adviser_id, notes=notes)

        if _hold_expired(consultation, now):
            raise InvalidStateTransition("This hold has already expired")

        current_start = ensure_utc(consultation.slot_start)
        new_start = current_start
        if wants_move:
            new_start = parse_slot(
                date or current_start.strftime("%Y-%m-%d"),
                time or current_start.strftime("%H:%M"),
            )

        if new_start == current_start:
            return await self._update_metadata(
                consultation, adviser_id=adviser_id, notes=notes, method=stored_method
            )

        validate_slot(new_start, now)
        current = consultation.status
        ensure_transition(current, ConsultationStatus.RESCHEDULED)

        await self.ledger.release_expired_holds(now=now, slot_start=new_start)
        if not await self.ledger.is_slot_available(new_start, slot_end(new_start), now=now):
            await self.session.rollback()
            raise SlotConflict(SLOT_UNAVAILABLE_MESSAGE)

        replacement = Consultation(
            id=new_id(),
            client_id=consultation.client_id,
            adviser_id=adviser_id if adviser_id is not None else consultation.adviser_id,
            slot_start=new_start,
            duration_minutes=consultation.duration_minutes,
            method=stored_method or consultation.method,
            consultation_type=consultation.consultation_type,
            status=current,
            payment_id=consultation.payment_id,
            expires_at=consultation.expires_at,
            rescheduled_from_id=consultation.id,
            reschedule_reason=reason,
            notes=notes if notes is not None else consultation.notes,
            client_message=consultation.client_message,
            visa_pathways=list(consultation.visa_pathways or []),
            meeting_link=consultation.meeting_link,
        )

        try:
            result = await self.session.execute(
                update(Consultation)
                .where(Consultation.id == consultation.id, Consultation.status == current)
                .values(status=ConsultationStatus.RESCHEDULED, reschedule_reason=reason)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await self.session.rollback()
                raise InvalidStateTransition("Consultation changed while rescheduling; retry")

            self.session.add(replacement)
            await self.session.flush()

            if consultation.payment_id:
                await self.session.execute(
                    update(Payment)
                    .where(Payment.id == consultation.payment_id)
                    .values(consultation_id=replacement.id)
                    .execution_options(synchronize_session=False)
                )
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            logger.info(f"Lost insert race rescheduling {consultation.id} to {new_start.isoformat()}")
            raise SlotConflict(SLOT_UNAVAILABLE_MESSAGE) from None

        audit_logger.log(
            action="consultation.rescheduled",
            actor_type=actor.kind,
            actor_id=actor.staff_id or actor.email or "",
            entity_type="consultation",
            entity_id=replacement.id,
            metadata={
                "rescheduled_from_id": consultation.id,
                "from": current_start.isoformat(),
                "to": new_start.isoformat(),
            },
        )

        if self.notifications is not None:
            await self.notifications.send_templated_email(
                client.email,
                "consultation_rescheduled",
                {
                    "client_name": client.full_name,
                    "date": new_start.strftime("%Y-%m-%d"),
                    "time": new_start.strftime("%H:%M"),
                    "method": replacement.method,
                },
            )

        return await self._load(replacement.id)

    async def _update_metadata(
        self,
        consultation: Consultation,
        adviser_id: str | None = None,
        notes: str | None = None,
        method: str | None = None,
    ) -> Consultation:
        if adviser_id is not None:
            consultation.adviser_id = adviser_id
        if notes is not None:
            consultation.notes = notes
        if method is not None:
            consultation.method = method
        await self.session.commit()
        return await self._load(consultation.id)

    # =========================================================================
    # COMPLETE
    # =========================================================================

    async def complete(
        self,
        consultation_id: str,
        staff: Actor,
        notes: str | None = None,
        visa_pathways: list[str] | None = None,
        proceed_with_application: bool = False,
        visa_type: str | None = None,
        deposit_amount: Decimal | None = None,
    ) -> CompletionResult:
        """Mark a confirmed consultation as held.

        Optionally opens an Application and issues the client an
        account-setup token.
        """
        if not staff.is_staff:
            raise Unauthorized("Only staff can complete consultations")
        if proceed_with_application and not visa_type:
            raise ValidationError("visa_type is required to proceed with an application")

        now = utc_now()
        consultation = await self._load(consultation_id)
        ensure_transition(consultation.status, ConsultationStatus.COMPLETED)

        values: dict = {
            "status": ConsultationStatus.COMPLETED,
            "completed_at": now,
            "adviser_id": consultation.adviser_id or staff.staff_id,
        }
        if notes is not None:
            values["notes"] = notes
        if visa_pathways is not None:
            values["visa_pathways"] = visa_pathways

        result = await self.session.execute(
            update(Consultation)
            .where(
                Consultation.id == consultation.id,
                Consultation.status == ConsultationStatus.CONFIRMED,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.session.rollback()
            raise InvalidStateTransition("Consultation changed while completing; retry")

        application = None
        token = None
        client = await self.session.get(Client, consultation.client_id)

        if proceed_with_application:
            application = Application(
                client_id=consultation.client_id,
                consultation_id=consultation.id,
                visa_type=visa_type,
                stage=ApplicationStage.CONSULTATION,
                progress=STAGE_PROGRESS[ApplicationStage.CONSULTATION],
                deposit_amount=deposit_amount,
                timeline=[{
                    "stage": ApplicationStage.CONSULTATION.value,
                    "date": now.isoformat(),
                    "notes": "Consultation completed",
                }],
            )
            self.session.add(application)

            token = secrets.token_urlsafe(32)
            client.setup_token = token
            client.setup_token_issued_at = now

        await self.session.commit()

        audit_logger.log(
            action="consultation.completed",
            actor_type="staff",
            actor_id=staff.staff_id or "",
            entity_type="consultation",
            entity_id=consultation.id,
            metadata={"application_id": application.id if application else None},
        )

        if token and self.notifications is not None:
            await self.notifications.send_templated_email(
                client.email,
                "account_setup",
                {
                    "client_name": client.full_name,
                    "visa_type": visa_type,
                    "setup_url": f"{settings.frontend_url}/setup-account?token={token}",
                },
            )

        return CompletionResult(
            consultation=await self._load(consultation.id),
            application=application,
            setup_token=token,
        )
