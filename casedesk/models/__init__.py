"""Database models for CaseDesk."""

from casedesk.models.application import STAGE_PROGRESS, Application, ApplicationStage
from casedesk.models.client import Client
from casedesk.models.consultation import (
    ACTIVE_SLOT_STATUSES,
    Consultation,
    ConsultationMethod,
    ConsultationStatus,
    ConsultationType,
)
from casedesk.models.payment import Payment, PaymentStatus, PaymentType

__all__ = [
    "ACTIVE_SLOT_STATUSES",
    "Application",
    "ApplicationStage",
    "Client",
    "Consultation",
    "ConsultationMethod",
    "ConsultationStatus",
    "ConsultationType",
    "Payment",
    "PaymentStatus",
    "PaymentType",
    "STAGE_PROGRESS",
]
