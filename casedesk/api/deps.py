"""FastAPI dependency injection utilities."""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from casedesk.core.security import decode_access_token
from casedesk.db.session import get_db
from casedesk.services.booking import BookingHoldManager
from casedesk.services.invoices import InvoiceService
from casedesk.services.lifecycle import Actor, ConsultationLifecycle
from casedesk.services.notifications import NotificationService
from casedesk.services.payment_provider import PaymentProvider
from casedesk.services.payments import PaymentService
from casedesk.services.reconciliation import PaymentReconciler

# Security scheme
security = HTTPBearer(auto_error=False)


async def get_current_token(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> dict | None:
    """Extract and decode the current JWT token.

    Args:
        credentials: Bearer token credentials

    Returns:
        Decoded token payload or None
    """
    if not credentials:
        return None

    return decode_access_token(credentials.credentials)


async def get_current_staff(
    token: Annotated[dict | None, Depends(get_current_token)],
) -> Actor:
    """Get the authenticated staff member.

    Raises:
        HTTPException: If not authenticated or not a staff token
    """
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if token.get("actor_type") != "staff":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Staff authentication required",
        )

    return Actor.staff(staff_id=token["sub"], email=token.get("email"))


async def get_optional_staff(
    token: Annotated[dict | None, Depends(get_current_token)],
) -> Actor | None:
    """Staff actor when a valid staff token is present, otherwise None."""
    if not token or token.get("actor_type") != "staff":
        return None
    return Actor.staff(staff_id=token["sub"], email=token.get("email"))


# Capabilities are built once in the application lifespan


def get_payment_provider(request: Request) -> PaymentProvider:
    return request.app.state.payment_provider


def get_notifications(request: Request) -> NotificationService:
    return request.app.state.notifications


def get_invoice_service(request: Request) -> InvoiceService:
    return request.app.state.invoices


def get_reconciler(
    session: Annotated[AsyncSession, Depends(get_db)],
    invoices: Annotated[InvoiceService, Depends(get_invoice_service)],
    notifications: Annotated[NotificationService, Depends(get_notifications)],
) -> PaymentReconciler:
    return PaymentReconciler(session, invoices=invoices, notifications=notifications)


def get_booking_manager(
    session: Annotated[AsyncSession, Depends(get_db)],
    notifications: Annotated[NotificationService, Depends(get_notifications)],
) -> BookingHoldManager:
    return BookingHoldManager(session, notifications=notifications)


def get_lifecycle(
    session: Annotated[AsyncSession, Depends(get_db)],
    provider: Annotated[PaymentProvider, Depends(get_payment_provider)],
    reconciler: Annotated[PaymentReconciler, Depends(get_reconciler)],
    notifications: Annotated[NotificationService, Depends(get_notifications)],
) -> ConsultationLifecycle:
    return ConsultationLifecycle(
        session,
        provider=provider,
        reconciler=reconciler,
        notifications=notifications,
    )


def get_payment_service(
    session: Annotated[AsyncSession, Depends(get_db)],
    provider: Annotated[PaymentProvider, Depends(get_payment_provider)],
    reconciler: Annotated[PaymentReconciler, Depends(get_reconciler)],
) -> PaymentService:
    return PaymentService(session, provider=provider, reconciler=reconciler)


# Type aliases for cleaner dependency injection
CurrentStaff = Annotated[Actor, Depends(get_current_staff)]
OptionalStaff = Annotated[Actor | None, Depends(get_optional_staff)]
DbSession = Annotated[AsyncSession, Depends(get_db)]
Bookings = Annotated[BookingHoldManager, Depends(get_booking_manager)]
Lifecycle = Annotated[ConsultationLifecycle, Depends(get_lifecycle)]
Payments = Annotated[PaymentService, Depends(get_payment_service)]
