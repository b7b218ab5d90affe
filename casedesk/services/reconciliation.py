"""Payment reconciliation.

Applies an external payment signal (webhook, verify-session or
confirm-booking) to internal state exactly once. Every write is a
conditional update on the current status, so concurrent or reordered
triggers converge: whichever wins the pending -> completed update performs
the follow-on transitions, every other caller observes the result.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from casedesk.booking.errors import NotFound
from casedesk.core.logging import audit_logger
from casedesk.models.application import STAGE_PROGRESS, Application, ApplicationStage
from casedesk.models.client import Client
from casedesk.models.consultation import Consultation, ConsultationStatus
from casedesk.models.payment import Payment, PaymentStatus, PaymentType
from casedesk.services.invoices import InvoiceService
from casedesk.services.notifications import NotificationService
from casedesk.utils.time import ensure_utc, utc_now

logger = logging.getLogger(__name__)


class ExternalStatus(str, Enum):
    """Payment outcome reported by the provider."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Trigger(str, Enum):
    """Which path delivered the payment signal."""

    WEBHOOK = "webhook"
    VERIFY = "verify"
    CONFIRM = "confirm"


@dataclass
class ReconciliationResult:
    """State of a payment and its consultation after reconciliation."""

    payment_id: str
    status: str
    applied: bool
    consultation_id: str | None = None
    consultation_status: str | None = None
    invoice_number: str | None = None
    invoice_url: str | None = None


def _is_uuid(value: str) -> bool:
    try:
        UUID(value)
    except (TypeError, ValueError):
        return False
    return True


class PaymentReconciler:
    """Single entry point for applying payment outcomes."""

    def __init__(
        self,
        session: AsyncSession,
        invoices: InvoiceService | None = None,
        notifications: NotificationService | None = None,
    ):
        self.session = session
        self.invoices = invoices
        self.notifications = notifications

    async def _find_payment(self, payment_ref: str) -> Payment | None:
        if _is_uuid(payment_ref):
            payment = await self._load(payment_ref)
            if payment is not None:
                return payment

        result = await self.session.execute(
            select(Payment)
            .where(
                or_(
                    Payment.transaction_id == payment_ref,
                    Payment.gateway_reference == payment_ref,
                )
            )
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def _load(self, payment_id: str) -> Payment | None:
        result = await self.session.execute(
            select(Payment)
            .where(Payment.id == payment_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _result(self, payment: Payment, applied: bool) -> ReconciliationResult:
        consultation_status = None
        if payment.consultation_id:
            consultation_status = await self.session.scalar(
                select(Consultation.status).where(Consultation.id == payment.consultation_id)
            )

        return ReconciliationResult(
            payment_id=payment.id,
            status=payment.status,
            applied=applied,
            consultation_id=payment.consultation_id,
            consultation_status=consultation_status,
            invoice_number=payment.invoice_number,
            invoice_url=payment.invoice_url,
        )

    async def current_state(self, payment_ref: str) -> ReconciliationResult:
        """Report the state of a payment without changing it."""
        payment = await self._find_payment(payment_ref)
        if payment is None:
            raise NotFound(f"Payment {payment_ref} not found")
        return await self._result(payment, applied=False)

    async def reconcile(
        self,
        payment_ref: str,
        external_status: ExternalStatus | str,
        external_ref: str | None = None,
        trigger: Trigger | str = Trigger.WEBHOOK,
    ) -> ReconciliationResult:
        """Apply an external payment outcome.

        Args:
            payment_ref: Internal payment id, checkout session id or payment intent id
            external_status: Outcome reported by the provider
            external_ref: Provider payment intent id, recorded on success
            trigger: Which path delivered the signal (for logging)

        Returns:
            ReconciliationResult; `applied` is True only for the caller that
            performed the transition

        Raises:
            NotFound: If no payment matches the reference
        """
        external_status = ExternalStatus(external_status)
        trigger = Trigger(trigger)

        payment = await self._find_payment(payment_ref)
        if payment is None:
            raise NotFound(f"Payment {payment_ref} not found")

        log_extra = {"payment_id": payment.id, "trigger": trigger.value}

        if payment.status == PaymentStatus.COMPLETED:
            logger.info(f"Payment {payment.id} already completed", extra=log_extra)
            return await self._result(payment, applied=False)

        if external_status == ExternalStatus.SUCCEEDED:
            return await self._apply_success(payment, external_ref, trigger, log_extra)

        return await self._apply_failure(payment, trigger, log_extra)

    async def _apply_success(
        self,
        payment: Payment,
        external_ref: str | None,
        trigger: Trigger,
        log_extra: dict,
    ) -> ReconciliationResult:
        if payment.status in (PaymentStatus.FAILED, PaymentStatus.REFUNDED):
            logger.warning(
                f"Success signal for {payment.status} payment {payment.id}; "
                "needs manual review",
                extra=log_extra,
            )
            return await self._result(payment, applied=False)

        now = utc_now()
        values: dict = {
            "status": PaymentStatus.COMPLETED,
            "completed_at": now,
            "expires_at": None,
        }
        if external_ref:
            values["gateway_reference"] = external_ref

        result = await self.session.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == PaymentStatus.PENDING)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            # Another trigger got there first
            await self.session.rollback()
            payment = await self._load(payment.id)
            logger.info(f"Payment {payment.id} reconciled concurrently", extra=log_extra)
            return await self._result(payment, applied=False)

        if payment.consultation_id:
            await self._confirm_consultation(payment.id, log_extra)
        if payment.application_id and payment.payment_type == PaymentType.DEPOSIT:
            await self._advance_application(payment.application_id, now)

        await self.session.commit()
        payment = await self._load(payment.id)

        audit_logger.log(
            action="payment.completed",
            actor_type="system",
            actor_id=trigger.value,
            entity_type="payment",
            entity_id=payment.id,
            metadata={"consultation_id": payment.consultation_id, "gateway_reference": payment.gateway_reference},
        )
        logger.info(f"Payment {payment.id} completed", extra=log_extra)

        payment = await self._issue_invoice(payment, log_extra)
        await self._notify_success(payment)

        return await self._result(payment, applied=True)

    async def _confirm_consultation(self, payment_id: str, log_extra: dict) -> None:
        # Match on the payment link: a reschedule may have replaced the
        # consultation row since the payment was read.
        result = await self.session.execute(
            update(Consultation)
            .where(
                Consultation.payment_id == payment_id,
                Consultation.status == ConsultationStatus.HOLD,
            )
            .values(status=ConsultationStatus.CONFIRMED, expires_at=None)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            consultation_id = await self.session.scalar(
                select(Payment.consultation_id).where(Payment.id == payment_id)
            )
            status = await self.session.scalar(
                select(Consultation.status).where(Consultation.id == consultation_id)
            )
            logger.warning(
                f"Payment completed but consultation {consultation_id} is "
                f"{status or 'gone'}; needs manual review",
                extra=log_extra,
            )

    async def _advance_application(self, application_id: str, now: datetime) -> None:
        application = await self.session.get(Application, application_id, populate_existing=True)
        if application is None:
            logger.warning(f"Deposit paid for missing application {application_id}")
            return

        timeline = list(application.timeline or []) + [{
            "stage": ApplicationStage.DEPOSIT_PAID.value,
            "date": now.isoformat(),
            "notes": "Deposit payment received",
        }]
        await self.session.execute(
            update(Application)
            .where(
                Application.id == application_id,
                Application.stage == ApplicationStage.CONSULTATION,
            )
            .values(
                stage=ApplicationStage.DEPOSIT_PAID,
                progress=STAGE_PROGRESS[ApplicationStage.DEPOSIT_PAID],
                timeline=timeline,
            )
            .execution_options(synchronize_session=False)
        )

    async def _issue_invoice(self, payment: Payment, log_extra: dict) -> Payment:
        if self.invoices is None:
            return payment
        try:
            return await self.invoices.issue(self.session, payment.id)
        except Exception:
            logger.exception(
                f"Invoice generation failed for payment {payment.id}; will retry",
                extra=log_extra,
            )
            await self.session.rollback()
            return await self._load(payment.id)

    async def _notify_success(self, payment: Payment) -> None:
        if self.notifications is None:
            return

        client = await self.session.get(Client, payment.client_id)
        if client is None:
            return

        data = {
            "client_name": client.full_name,
            "amount": f"{payment.amount:.2f}",
            "currency": payment.currency,
            "invoice_url": payment.invoice_url or "available soon",
        }

        if payment.consultation_id:
            consultation = await self.session.get(
                Consultation, payment.consultation_id, populate_existing=True
            )
            if consultation is None or consultation.status != ConsultationStatus.CONFIRMED:
                return
            start = ensure_utc(consultation.slot_start)
            data.update({
                "date": start.strftime("%Y-%m-%d"),
                "time": start.strftime("%H:%M"),
                "method": consultation.method,
            })
            await self.notifications.send_templated_email(
                client.email, "consultation_confirmed", data
            )
        elif payment.application_id:
            application = await self.session.get(
                Application, payment.application_id, populate_existing=True
            )
            data["visa_type"] = application.visa_type if application else ""
            await self.notifications.send_templated_email(
                client.email, "deposit_received", data
            )

    async def _apply_failure(
        self,
        payment: Payment,
        trigger: Trigger,
        log_extra: dict,
    ) -> ReconciliationResult:
        if payment.status != PaymentStatus.PENDING:
            return await self._result(payment, applied=False)

        now = utc_now()
        result = await self.session.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == PaymentStatus.PENDING)
            .values(status=PaymentStatus.FAILED)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.session.rollback()
            payment = await self._load(payment.id)
            return await self._result(payment, applied=False)

        # A live hold stays until it expires so the client can retry
        if payment.consultation_id:
            await self.session.execute(
                update(Consultation)
                .where(
                    Consultation.payment_id == payment.id,
                    Consultation.status == ConsultationStatus.HOLD,
                    Consultation.expires_at <= now,
                )
                .values(
                    status=ConsultationStatus.CANCELLED,
                    cancelled_at=now,
                    cancelled_by="system",
                    cancellation_reason="Payment failed after hold expired",
                )
                .execution_options(synchronize_session=False)
            )

        await self.session.commit()
        payment = await self._load(payment.id)

        audit_logger.log(
            action="payment.failed",
            actor_type="system",
            actor_id=trigger.value,
            entity_type="payment",
            entity_id=payment.id,
        )
        logger.info(f"Payment {payment.id} failed", extra=log_extra)

        if self.notifications is not None:
            client = await self.session.get(Client, payment.client_id)
            if client is not None:
                await self.notifications.send_templated_email(
                    client.email,
                    "payment_failed",
                    {
                        "client_name": client.full_name,
                        "amount": f"{payment.amount:.2f}",
                        "currency": payment.currency,
                    },
                )

        return await self._result(payment, applied=True)
