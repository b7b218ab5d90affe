"""Payment provider abstraction and the Stripe implementation.

The Stripe SDK is synchronous; every call runs in a worker thread so the
event loop is never blocked.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import stripe

from casedesk.core.config import settings

logger = logging.getLogger(__name__)


class PaymentProviderError(Exception):
    """The provider rejected or failed a call."""

    pass


class WebhookSignatureError(PaymentProviderError):
    """A webhook payload failed signature verification."""

    pass


@dataclass
class CheckoutSession:
    """Hosted checkout session as seen by the service."""

    id: str
    url: str | None
    status: str | None
    payment_status: str | None
    payment_intent: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def is_paid(self) -> bool:
        return self.payment_status == "paid"


@dataclass
class PaymentIntent:
    id: str
    status: str
    client_secret: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def is_succeeded(self) -> bool:
        return self.status == "succeeded"


@dataclass
class WebhookEvent:
    """A verified webhook event; data_object is the event's data.object."""

    id: str
    type: str
    data_object: dict[str, Any]


def to_minor_units(amount: Decimal) -> int:
    """Convert a currency amount into the smallest unit (cents)."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class PaymentProvider(ABC):
    """Abstract base class for payment providers."""

    @abstractmethod
    async def create_checkout_session(
        self,
        amount: Decimal,
        currency: str,
        customer_email: str,
        description: str,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
        idempotency_key: str | None = None,
    ) -> CheckoutSession:
        pass

    @abstractmethod
    async def retrieve_checkout_session(self, session_id: str) -> CheckoutSession:
        pass

    @abstractmethod
    async def create_payment_intent(
        self,
        amount: Decimal,
        currency: str,
        customer_email: str,
        metadata: dict[str, str],
        idempotency_key: str | None = None,
    ) -> PaymentIntent:
        pass

    @abstractmethod
    async def retrieve_payment_intent(self, intent_id: str) -> PaymentIntent:
        pass

    @abstractmethod
    async def refund(self, payment_intent_id: str, reason: str | None = None) -> str:
        """Refund a captured payment and return the refund id."""
        pass

    @abstractmethod
    def construct_event(self, payload: bytes, signature_header: str) -> WebhookEvent:
        """Verify a webhook payload and parse it.

        Raises:
            WebhookSignatureError: If the signature or payload is invalid
        """
        pass


class StripePaymentProvider(PaymentProvider):
    """Stripe implementation using an instance-scoped StripeClient."""

    def __init__(self, api_key: str, webhook_secret: str) -> None:
        self.client = stripe.StripeClient(api_key)
        self.webhook_secret = webhook_secret

    @staticmethod
    def _options(idempotency_key: str | None) -> dict[str, Any]:
        return {"idempotency_key": idempotency_key} if idempotency_key else {}

    @staticmethod
    def _to_checkout_session(obj: Any) -> CheckoutSession:
        intent = obj.get("payment_intent")
        if intent is not None and not isinstance(intent, str):
            intent = intent.get("id")
        return CheckoutSession(
            id=obj["id"],
            url=obj.get("url"),
            status=obj.get("status"),
            payment_status=obj.get("payment_status"),
            payment_intent=intent,
            metadata=dict(obj.get("metadata") or {}),
        )

    @staticmethod
    def _to_payment_intent(obj: Any) -> PaymentIntent:
        return PaymentIntent(
            id=obj["id"],
            status=obj["status"],
            client_secret=obj.get("client_secret"),
            metadata=dict(obj.get("metadata") or {}),
        )

    async def create_checkout_session(
        self,
        amount: Decimal,
        currency: str,
        customer_email: str,
        description: str,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
        idempotency_key: str | None = None,
    ) -> CheckoutSession:
        params = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "customer_email": customer_email,
            "line_items": [
                {
                    "price_data": {
                        "currency": currency.lower(),
                        "unit_amount": to_minor_units(amount),
                        "product_data": {"name": description},
                    },
                    "quantity": 1,
                }
            ],
            "metadata": metadata,
            "payment_intent_data": {"metadata": metadata},
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        try:
            session = await asyncio.to_thread(
                self.client.checkout.sessions.create,
                params,
                self._options(idempotency_key),
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe error creating checkout session: {e}")
            raise PaymentProviderError(str(e)) from e

        logger.info(f"Checkout session created: {session.id}")
        return self._to_checkout_session(session)

    async def retrieve_checkout_session(self, session_id: str) -> CheckoutSession:
        try:
            session = await asyncio.to_thread(
                self.client.checkout.sessions.retrieve, session_id
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe error retrieving checkout session {session_id}: {e}")
            raise PaymentProviderError(str(e)) from e

        return self._to_checkout_session(session)

    async def create_payment_intent(
        self,
        amount: Decimal,
        currency: str,
        customer_email: str,
        metadata: dict[str, str],
        idempotency_key: str | None = None,
    ) -> PaymentIntent:
        params = {
            "amount": to_minor_units(amount),
            "currency": currency.lower(),
            "receipt_email": customer_email,
            "metadata": metadata,
            "automatic_payment_methods": {"enabled": True},
        }
        try:
            intent = await asyncio.to_thread(
                self.client.payment_intents.create,
                params,
                self._options(idempotency_key),
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe error creating payment intent: {e}")
            raise PaymentProviderError(str(e)) from e

        logger.info(f"Payment intent created: {intent.id}")
        return self._to_payment_intent(intent)

    async def retrieve_payment_intent(self, intent_id: str) -> PaymentIntent:
        try:
            intent = await asyncio.to_thread(
                self.client.payment_intents.retrieve, intent_id
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe error retrieving payment intent {intent_id}: {e}")
            raise PaymentProviderError(str(e)) from e

        return self._to_payment_intent(intent)

    async def refund(self, payment_intent_id: str, reason: str | None = None) -> str:
        params: dict[str, Any] = {"payment_intent": payment_intent_id}
        if reason:
            params["metadata"] = {"reason": reason}
        try:
            refund = await asyncio.to_thread(
                self.client.refunds.create,
                params,
                self._options(f"refund-{payment_intent_id}"),
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe error refunding {payment_intent_id}: {e}")
            raise PaymentProviderError(str(e)) from e

        logger.info(f"Refund {refund.id} created for {payment_intent_id}")
        return refund.id

    def construct_event(self, payload: bytes, signature_header: str) -> WebhookEvent:
        if not self.webhook_secret:
            raise WebhookSignatureError("Webhook secret is not configured")
        try:
            stripe.Webhook.construct_event(payload, signature_header, self.webhook_secret)
        except ValueError as e:
            raise WebhookSignatureError(f"Invalid payload: {e}") from e
        except stripe.SignatureVerificationError as e:
            raise WebhookSignatureError(f"Invalid signature: {e}") from e

        # Signature checked above; work with plain dicts from here on
        event = json.loads(payload)
        return WebhookEvent(
            id=event.get("id", ""),
            type=event.get("type", ""),
            data_object=event.get("data", {}).get("object", {}),
        )


def build_payment_provider() -> PaymentProvider:
    """Create the configured payment provider."""
    return StripePaymentProvider(
        api_key=settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
    )
