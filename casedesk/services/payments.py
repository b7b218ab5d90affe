"""Payment service: checkout, verification, webhooks and deposits.

Every confirmation path (verify-session, confirm-payment and the provider
webhook) ends in PaymentReconciler.reconcile; nothing here changes payment
status directly.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from casedesk.booking.errors import (
    InvalidStateTransition,
    NotFound,
    OwnershipMismatch,
    UpstreamVerificationFailure,
    ValidationError,
)
from casedesk.core.config import settings
from casedesk.core.logging import audit_logger
from casedesk.models.application import Application, ApplicationStage
from casedesk.models.client import Client
from casedesk.models.consultation import Consultation, ConsultationStatus
from casedesk.models.payment import Payment, PaymentStatus, PaymentType
from casedesk.services.lifecycle import Actor
from casedesk.services.payment_provider import (
    CheckoutSession,
    PaymentProvider,
    PaymentProviderError,
    WebhookSignatureError,
)
from casedesk.services.reconciliation import (
    ExternalStatus,
    PaymentReconciler,
    ReconciliationResult,
    Trigger,
)
from casedesk.utils.time import ensure_utc, utc_now

logger = logging.getLogger(__name__)

SUCCESS_EVENTS = frozenset({
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
    "payment_intent.succeeded",
})

FAILURE_EVENTS = frozenset({
    "payment_intent.payment_failed",
    "checkout.session.async_payment_failed",
    "checkout.session.expired",
})


@dataclass
class DepositIntent:
    payment_id: str
    intent_id: str
    client_secret: str | None
    amount: Decimal
    currency: str


def _as_amount(value: Any) -> Decimal:
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid amount '{value}'") from None


def _upstream(e: Exception) -> UpstreamVerificationFailure:
    return UpstreamVerificationFailure(f"Payment provider error: {e}", status_code=502)


class PaymentService:
    """Payment operations exposed over HTTP."""

    def __init__(
        self,
        session: AsyncSession,
        provider: PaymentProvider,
        reconciler: PaymentReconciler,
    ):
        self.session = session
        self.provider = provider
        self.reconciler = reconciler

    async def _client_for(self, client_id: str, email: str) -> Client:
        client = await self.session.get(Client, client_id)
        if client is None or client.email != (email or "").strip().lower():
            raise OwnershipMismatch("This record belongs to a different client")
        return client

    # =========================================================================
    # CONSULTATION CHECKOUT
    # =========================================================================

    async def create_checkout(
        self,
        consultation_id: str,
        payment_id: str,
        amount: Any,
        email: str,
    ) -> CheckoutSession:
        """Create (or reuse) a hosted checkout session for a held consultation.

        Raises:
            NotFound: Unknown consultation or payment
            OwnershipMismatch: E-mail does not match the booking
            InvalidStateTransition: Hold expired, not a hold, or payment not pending
            ValidationError: Amount differs from the recorded fee
        """
        consultation = await self.session.get(Consultation, consultation_id, populate_existing=True)
        if consultation is None:
            raise NotFound(f"Consultation {consultation_id} not found")
        client = await self._client_for(consultation.client_id, email)

        expires_at = ensure_utc(consultation.expires_at)
        if consultation.status != ConsultationStatus.HOLD:
            raise InvalidStateTransition(f"Consultation is {consultation.status}, not awaiting payment")
        if expires_at is not None and expires_at <= utc_now():
            raise InvalidStateTransition("This hold has expired; please book again")

        payment = await self.session.get(Payment, payment_id, populate_existing=True)
        if payment is None or payment.id != consultation.payment_id:
            raise NotFound(f"Payment {payment_id} not found for this consultation")
        if payment.status != PaymentStatus.PENDING:
            raise InvalidStateTransition(f"Payment is {payment.status}")
        if _as_amount(amount) != _as_amount(payment.amount):
            raise ValidationError("Amount does not match the consultation fee")

        if payment.transaction_id:
            try:
                existing = await self.provider.retrieve_checkout_session(payment.transaction_id)
            except PaymentProviderError as e:
                raise _upstream(e) from e
            if existing.status == "open":
                return existing

        metadata = {
            "payment_id": payment.id,
            "consultation_id": consultation.id,
            "client_email": client.email,
            "payment_type": PaymentType(payment.payment_type).value,
        }
        try:
            checkout = await self.provider.create_checkout_session(
                amount=payment.amount,
                currency=payment.currency,
                customer_email=client.email,
                description=f"Immigration consultation {ensure_utc(consultation.slot_start):%Y-%m-%d %H:%M} UTC",
                metadata=metadata,
                success_url=(
                    f"{settings.frontend_url}/consultation-success"
                    f"?session_id={{CHECKOUT_SESSION_ID}}&consultationId={consultation.id}"
                ),
                cancel_url=f"{settings.frontend_url}/consultation?cancelled=true",
            )
        except PaymentProviderError as e:
            raise _upstream(e) from e

        await self.session.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == PaymentStatus.PENDING)
            .values(transaction_id=checkout.id)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()

        logger.info(f"Checkout {checkout.id} created for payment {payment.id}")
        return checkout

    # =========================================================================
    # CONFIRMATION TRIGGERS
    # =========================================================================

    async def verify_session(self, session_id: str) -> dict[str, Any]:
        """Ask the provider about a checkout session and reconcile it."""
        try:
            checkout = await self.provider.retrieve_checkout_session(session_id)
        except PaymentProviderError as e:
            raise _upstream(e) from e

        payment_ref = checkout.metadata.get("payment_id") or checkout.id

        if checkout.is_paid:
            result = await self.reconciler.reconcile(
                payment_ref,
                ExternalStatus.SUCCEEDED,
                external_ref=checkout.payment_intent,
                trigger=Trigger.VERIFY,
            )
        elif checkout.status == "expired":
            result = await self.reconciler.reconcile(
                payment_ref, ExternalStatus.FAILED, trigger=Trigger.VERIFY
            )
        else:
            result = await self.reconciler.current_state(payment_ref)

        return self._verification_response(result, checkout)

    @staticmethod
    def _verification_response(
        result: ReconciliationResult,
        checkout: CheckoutSession,
    ) -> dict[str, Any]:
        return {
            "paid": result.status == PaymentStatus.COMPLETED,
            "payment_status": result.status,
            "provider_payment_status": checkout.payment_status,
            "payment_id": result.payment_id,
            "consultation_id": result.consultation_id,
            "consultation_status": result.consultation_status,
            "invoice_number": result.invoice_number,
            "invoice_url": result.invoice_url,
        }

    async def handle_webhook(self, raw_body: bytes, signature_header: str | None) -> dict[str, Any]:
        """Verify and apply a provider webhook.

        Raises:
            UpstreamVerificationFailure: If the signature is invalid (no state is read)
        """
        try:
            event = self.provider.construct_event(raw_body, signature_header or "")
        except WebhookSignatureError as e:
            logger.warning(f"Rejected webhook: {e}")
            raise UpstreamVerificationFailure("Invalid webhook signature") from e

        obj = event.data_object
        metadata = obj.get("metadata") or {}
        handled = False

        if event.type in SUCCESS_EVENTS:
            if event.type.startswith("checkout.session") and obj.get("payment_status") != "paid":
                logger.info(f"Checkout {obj.get('id')} completed without payment yet")
            else:
                intent_id = obj.get("payment_intent") if event.type.startswith("checkout") else obj.get("id")
                handled = await self._reconcile_event(
                    metadata.get("payment_id") or obj.get("id"),
                    ExternalStatus.SUCCEEDED,
                    intent_id,
                    event.type,
                )
        elif event.type in FAILURE_EVENTS:
            handled = await self._reconcile_event(
                metadata.get("payment_id") or obj.get("id"),
                ExternalStatus.FAILED,
                None,
                event.type,
            )
        else:
            logger.info(f"Ignoring webhook event {event.type}")

        return {"received": True, "event_type": event.type, "handled": handled}

    async def _reconcile_event(
        self,
        payment_ref: str | None,
        status: ExternalStatus,
        external_ref: str | None,
        event_type: str,
    ) -> bool:
        if not payment_ref:
            logger.warning(f"Webhook {event_type} carries no payment reference")
            return False
        try:
            await self.reconciler.reconcile(
                payment_ref, status, external_ref=external_ref, trigger=Trigger.WEBHOOK
            )
        except NotFound:
            # Acknowledge so the provider stops retrying; nothing to apply
            logger.warning(f"Webhook {event_type} for unknown payment {payment_ref}")
            return False
        return True

    # =========================================================================
    # APPLICATION DEPOSITS
    # =========================================================================

    async def create_deposit_payment(
        self,
        application_id: str,
        amount: Any,
        email: str,
    ) -> DepositIntent:
        """Create a payment intent for an application's deposit.

        Raises:
            ValidationError: Amount differs from the application's deposit
            InvalidStateTransition: Deposit already paid
        """
        application = await self.session.get(Application, application_id, populate_existing=True)
        if application is None:
            raise NotFound(f"Application {application_id} not found")
        client = await self._client_for(application.client_id, email)

        if application.stage != ApplicationStage.CONSULTATION:
            raise InvalidStateTransition("The deposit for this application has already been paid")
        if application.deposit_amount is None:
            raise ValidationError("No deposit amount has been set for this application")
        deposit = _as_amount(application.deposit_amount)
        if _as_amount(amount) != deposit:
            raise ValidationError("Amount does not match the application deposit")

        result = await self.session.execute(
            select(Payment).where(
                Payment.application_id == application.id,
                Payment.payment_type == PaymentType.DEPOSIT,
                Payment.status == PaymentStatus.PENDING,
            )
        )
        payment = result.scalars().first()

        try:
            if payment is not None and payment.transaction_id:
                intent = await self.provider.retrieve_payment_intent(payment.transaction_id)
                return DepositIntent(
                    payment_id=payment.id,
                    intent_id=intent.id,
                    client_secret=intent.client_secret,
                    amount=payment.amount,
                    currency=payment.currency,
                )

            if payment is None:
                payment = Payment(
                    client_id=client.id,
                    application_id=application.id,
                    amount=deposit,
                    currency=settings.currency,
                    payment_type=PaymentType.DEPOSIT,
                    status=PaymentStatus.PENDING,
                )
                self.session.add(payment)
                await self.session.commit()

            intent = await self.provider.create_payment_intent(
                amount=payment.amount,
                currency=payment.currency,
                customer_email=client.email,
                metadata={
                    "payment_id": payment.id,
                    "application_id": application.id,
                    "client_email": client.email,
                    "payment_type": PaymentType.DEPOSIT.value,
                },
                idempotency_key=f"deposit-{payment.id}",
            )
        except PaymentProviderError as e:
            raise _upstream(e) from e

        payment.transaction_id = intent.id
        payment.gateway_reference = intent.id
        await self.session.commit()

        audit_logger.log(
            action="payment.deposit_intent_created",
            actor_type="client",
            actor_id=client.email,
            entity_type="payment",
            entity_id=payment.id,
            metadata={"application_id": application.id, "intent_id": intent.id},
        )

        return DepositIntent(
            payment_id=payment.id,
            intent_id=intent.id,
            client_secret=intent.client_secret,
            amount=payment.amount,
            currency=payment.currency,
        )

    async def confirm_payment(self, payment_id: str, intent_id: str, email: str) -> dict[str, Any]:
        """Check a payment intent after client-side confirmation and reconcile it.

        Second trigger for intent payments alongside the payment_intent
        webhooks. An intent still processing leaves the payment pending.

        Raises:
            NotFound: Unknown payment
            OwnershipMismatch: E-mail does not match the payment's client
            ValidationError: The intent belongs to a different payment
            UpstreamVerificationFailure: Provider unavailable (502)
        """
        payment = await self.session.get(Payment, payment_id, populate_existing=True)
        if payment is None:
            raise NotFound(f"Payment {payment_id} not found")
        await self._client_for(payment.client_id, email)

        try:
            intent = await self.provider.retrieve_payment_intent(intent_id)
        except PaymentProviderError as e:
            raise _upstream(e) from e

        known_refs = {payment.transaction_id, payment.gateway_reference} - {None}
        if intent.id not in known_refs and intent.metadata.get("payment_id") != payment.id:
            raise ValidationError("Payment intent does not belong to this payment")

        if intent.is_succeeded:
            result = await self.reconciler.reconcile(
                payment.id,
                ExternalStatus.SUCCEEDED,
                external_ref=intent.id,
                trigger=Trigger.VERIFY,
            )
        elif intent.status == "canceled":
            result = await self.reconciler.reconcile(
                payment.id, ExternalStatus.FAILED, trigger=Trigger.VERIFY
            )
        else:
            result = await self.reconciler.current_state(payment.id)

        return {
            "paid": result.status == PaymentStatus.COMPLETED,
            "payment_status": result.status,
            "provider_status": intent.status,
            "payment_id": result.payment_id,
            "application_id": payment.application_id,
            "consultation_id": result.consultation_id,
            "invoice_number": result.invoice_number,
            "invoice_url": result.invoice_url,
        }

    # =========================================================================
    # HISTORY
    # =========================================================================

    async def payment_history(
        self,
        actor: Actor,
        email: str | None = None,
    ) -> Sequence[Payment]:
        """Payments for a client; staff may list everyone or filter by e-mail."""
        query = select(Payment).order_by(Payment.created_at.desc())

        if not actor.is_staff:
            email = actor.email
            if not email:
                raise ValidationError("Email is required")

        if email:
            query = query.join(Client, Client.id == Payment.client_id).where(
                Client.email == email.strip().lower()
            )

        result = await self.session.execute(query)
        return result.scalars().all()
