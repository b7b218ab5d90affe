"""Business logic services."""

from casedesk.services.booking import BookingHoldManager, HoldReceipt
from casedesk.services.invoices import InvoiceService
from casedesk.services.lifecycle import Actor, ConsultationLifecycle
from casedesk.services.notifications import NotificationService
from casedesk.services.payments import PaymentService
from casedesk.services.reconciliation import PaymentReconciler, ReconciliationResult
from casedesk.services.slot_ledger import SlotLedger

__all__ = [
    "Actor",
    "BookingHoldManager",
    "ConsultationLifecycle",
    "HoldReceipt",
    "InvoiceService",
    "NotificationService",
    "PaymentReconciler",
    "PaymentService",
    "ReconciliationResult",
    "SlotLedger",
]
