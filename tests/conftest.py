"""Pytest configuration and fixtures."""

import hashlib
import hmac
import json
import time
from collections.abc import AsyncGenerator, Generator
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import StaticPool, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import casedesk.models  # noqa: F401
from casedesk.core.security import create_access_token
from casedesk.db.base import Base
from casedesk.db.session import get_db
from casedesk.main import app
from casedesk.models.client import Client
from casedesk.models.consultation import Consultation, ConsultationMethod, ConsultationStatus
from casedesk.models.payment import Payment, PaymentStatus, PaymentType
from casedesk.services.booking import BookingHoldManager
from casedesk.services.invoices import InvoiceService
from casedesk.services.lifecycle import ConsultationLifecycle
from casedesk.services.notifications import EmailProvider, NotificationService
from casedesk.services.payment_provider import (
    CheckoutSession,
    PaymentIntent,
    PaymentProviderError,
    StripePaymentProvider,
)
from casedesk.services.payments import PaymentService
from casedesk.services.reconciliation import PaymentReconciler
from casedesk.services.storage import LocalStorageBackend
from casedesk.utils.time import utc_now


# Use SQLite for testing (simpler than spinning up postgres)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

WEBHOOK_SECRET = "whsec_test_secret"


# ============================================================================
# Test doubles
# ============================================================================


class RecordingEmailProvider(EmailProvider):
    """Keeps every message instead of sending it."""

    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.fail = False

    async def send(self, recipient, subject, body, html_body=None, **kwargs):
        if self.fail:
            raise RuntimeError("mail relay down")
        self.sent.append({"recipient": recipient, "subject": subject, "body": body})
        return f"msg_{len(self.sent)}", {}

    def subjects_for(self, recipient: str) -> list[str]:
        return [m["subject"] for m in self.sent if m["recipient"] == recipient]


class FakePaymentProvider(StripePaymentProvider):
    """In-memory checkout sessions and intents; webhook verification is real."""

    def __init__(self) -> None:
        super().__init__(api_key="sk_test_fake", webhook_secret=WEBHOOK_SECRET)
        self.sessions: dict[str, CheckoutSession] = {}
        self.intents: dict[str, PaymentIntent] = {}
        self.refunds: list[dict] = []
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise PaymentProviderError("provider unavailable")

    async def create_checkout_session(
        self,
        amount,
        currency,
        customer_email,
        description,
        metadata,
        success_url,
        cancel_url,
        idempotency_key=None,
    ) -> CheckoutSession:
        self._check()
        session_id = f"cs_test_{uuid4().hex[:16]}"
        checkout = CheckoutSession(
            id=session_id,
            url=f"https://checkout.test/{session_id}",
            status="open",
            payment_status="unpaid",
            metadata=dict(metadata),
        )
        self.sessions[session_id] = checkout
        return checkout

    async def retrieve_checkout_session(self, session_id: str) -> CheckoutSession:
        self._check()
        if session_id not in self.sessions:
            raise PaymentProviderError(f"No such checkout.session: {session_id}")
        return self.sessions[session_id]

    async def create_payment_intent(
        self,
        amount,
        currency,
        customer_email,
        metadata,
        idempotency_key=None,
    ) -> PaymentIntent:
        self._check()
        intent_id = f"pi_test_{uuid4().hex[:16]}"
        intent = PaymentIntent(
            id=intent_id,
            status="requires_payment_method",
            client_secret=f"{intent_id}_secret",
            metadata=dict(metadata),
        )
        self.intents[intent_id] = intent
        return intent

    async def retrieve_payment_intent(self, intent_id: str) -> PaymentIntent:
        self._check()
        if intent_id not in self.intents:
            raise PaymentProviderError(f"No such payment_intent: {intent_id}")
        return self.intents[intent_id]

    async def refund(self, payment_intent_id: str, reason: str | None = None) -> str:
        self._check()
        self.refunds.append({"payment_intent": payment_intent_id, "reason": reason})
        return f"re_test_{len(self.refunds)}"

    def mark_paid(self, session_id: str) -> CheckoutSession:
        checkout = self.sessions[session_id]
        checkout.status = "complete"
        checkout.payment_status = "paid"
        checkout.payment_intent = f"pi_test_{uuid4().hex[:16]}"
        return checkout

    def mark_expired(self, session_id: str) -> CheckoutSession:
        checkout = self.sessions[session_id]
        checkout.status = "expired"
        return checkout

    def set_intent_status(self, intent_id: str, status: str) -> PaymentIntent:
        intent = self.intents[intent_id]
        intent.status = status
        return intent


def sign_webhook(payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
    """Build a Stripe-Signature header for a payload."""
    timestamp = int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def webhook_payload(event_type: str, data_object: dict[str, Any]) -> bytes:
    return json.dumps({
        "id": f"evt_test_{uuid4().hex[:16]}",
        "object": "event",
        "type": event_type,
        "data": {"object": data_object},
    }).encode("utf-8")


@dataclass
class SeededBooking:
    consultation_id: str
    payment_id: str
    email: str
    slot_start: datetime


# ============================================================================
# Database
# ============================================================================


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def async_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests."""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )

    async with async_session_maker() as session:
        yield session


@pytest.fixture
def concurrent_session(async_engine):
    """Session factory for a second, independent request against the same database."""
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


# ============================================================================
# Services
# ============================================================================


@pytest.fixture
def email_provider() -> RecordingEmailProvider:
    return RecordingEmailProvider()


@pytest.fixture
def notifications(email_provider: RecordingEmailProvider) -> NotificationService:
    return NotificationService(email_provider)


@pytest.fixture
def payment_provider() -> FakePaymentProvider:
    return FakePaymentProvider()


@pytest.fixture
def storage(tmp_path) -> LocalStorageBackend:
    return LocalStorageBackend(base_path=str(tmp_path / "files"), base_url="https://files.test")


@pytest.fixture
def invoices(storage: LocalStorageBackend) -> InvoiceService:
    return InvoiceService(storage)


@pytest.fixture
def reconciler(async_session, invoices, notifications) -> PaymentReconciler:
    return PaymentReconciler(async_session, invoices=invoices, notifications=notifications)


@pytest.fixture
def booking_manager(async_session, notifications) -> BookingHoldManager:
    return BookingHoldManager(async_session, notifications=notifications)


@pytest.fixture
def lifecycle(async_session, payment_provider, reconciler, notifications) -> ConsultationLifecycle:
    return ConsultationLifecycle(
        async_session,
        provider=payment_provider,
        reconciler=reconciler,
        notifications=notifications,
    )


@pytest.fixture
def payment_service(async_session, payment_provider, reconciler) -> PaymentService:
    return PaymentService(async_session, provider=payment_provider, reconciler=reconciler)


# ============================================================================
# Data helpers
# ============================================================================


@pytest.fixture
def slot_at():
    """Slot start `days` ahead at `hour`:00 UTC."""

    def _slot_at(days: int = 3, hour: int = 10) -> datetime:
        day = (utc_now() + timedelta(days=days)).date()
        return datetime(day.year, day.month, day.day, hour, tzinfo=timezone.utc)

    return _slot_at


@pytest.fixture
def make_booking(async_session: AsyncSession, slot_at):
    """Insert a consultation and its payment directly."""

    async def _make_booking(
        slot_start: datetime | None = None,
        status: ConsultationStatus = ConsultationStatus.HOLD,
        payment_status: PaymentStatus = PaymentStatus.PENDING,
        email: str = "client@example.com",
        hold_minutes: int = 30,
        transaction_id: str | None = None,
        gateway_reference: str | None = None,
    ) -> SeededBooking:
        slot_start = slot_start or slot_at()

        result = await async_session.execute(select(Client).where(Client.email == email))
        client = result.scalar_one_or_none()
        if client is None:
            client = Client(email=email, first_name="Aroha", last_name="Ngata")
            async_session.add(client)
            await async_session.flush()

        expires_at = None
        if status == ConsultationStatus.HOLD:
            expires_at = utc_now() + timedelta(minutes=hold_minutes)

        consultation = Consultation(
            client_id=client.id,
            slot_start=slot_start,
            duration_minutes=60,
            method=ConsultationMethod.ZOOM,
            status=status,
            expires_at=expires_at,
            visa_pathways=[],
        )
        async_session.add(consultation)
        await async_session.flush()

        payment = Payment(
            client_id=client.id,
            consultation_id=consultation.id,
            amount=Decimal("50.00"),
            currency="USD",
            payment_type=PaymentType.CONSULTATION_FEE,
            status=payment_status,
            transaction_id=transaction_id,
            gateway_reference=gateway_reference,
            expires_at=expires_at,
            completed_at=utc_now() if payment_status == PaymentStatus.COMPLETED else None,
        )
        async_session.add(payment)
        await async_session.flush()

        consultation.payment_id = payment.id
        await async_session.commit()

        return SeededBooking(
            consultation_id=consultation.id,
            payment_id=payment.id,
            email=email,
            slot_start=slot_start,
        )

    return _make_booking


@pytest.fixture
def fetch(async_session: AsyncSession):
    """Reload a row from the database, bypassing the identity map."""

    async def _fetch(model, row_id: str):
        result = await async_session.execute(
            select(model)
            .where(model.id == row_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    return _fetch


# ============================================================================
# HTTP
# ============================================================================


@pytest.fixture(scope="function")
def client(
    async_session: AsyncSession,
    payment_provider: FakePaymentProvider,
    notifications: NotificationService,
    invoices: InvoiceService,
) -> Generator[TestClient, None, None]:
    """Create FastAPI test client with overridden dependencies."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield async_session

    app.dependency_overrides[get_db] = override_get_db
    app.state.payment_provider = payment_provider
    app.state.notifications = notifications
    app.state.invoices = invoices

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    del app.state.payment_provider
    del app.state.notifications
    del app.state.invoices


@pytest.fixture
def signed_event():
    """Build a (payload, Stripe-Signature header) pair for a webhook event."""

    def _signed_event(event_type: str, data_object: dict[str, Any], secret: str = WEBHOOK_SECRET):
        payload = webhook_payload(event_type, data_object)
        return payload, sign_webhook(payload, secret)

    return _signed_event


@pytest.fixture
def staff_headers() -> dict[str, str]:
    """Authorization header for an adviser."""
    token = create_access_token(
        subject="adviser-7",
        additional_claims={"actor_type": "staff", "email": "adviser@casedesk.test"},
    )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def client_token_headers() -> dict[str, str]:
    """A valid token that is not a staff token."""
    token = create_access_token(
        subject="client@example.com",
        additional_claims={"actor_type": "client"},
    )
    return {"Authorization": f"Bearer {token}"}
