"""Invoice generation for completed payments.

Renders a PDF with reportlab, stores it under a key derived from the
payment, and records the number and URL on the payment exactly once.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from io import BytesIO

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import (
    Paragraph,
    SimpleDocTemplate,
    Spacer,
    Table,
    TableStyle,
)
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from casedesk.core.config import settings
from casedesk.models.client import Client
from casedesk.models.consultation import Consultation
from casedesk.models.payment import Payment, PaymentStatus, PaymentType
from casedesk.services.storage import StorageBackend
from casedesk.utils.time import ensure_utc, utc_now

logger = logging.getLogger(__name__)


class InvoiceError(Exception):
    """Raised when an invoice cannot be produced."""

    pass


SERVICE_DESCRIPTIONS = {
    PaymentType.CONSULTATION_FEE: "Immigration consultation",
    PaymentType.DEPOSIT: "Application deposit",
    PaymentType.FINAL: "Application final payment",
    PaymentType.ADDITIONAL: "Additional services",
}


@dataclass
class InvoiceData:
    """Everything printed on an invoice."""

    invoice_number: str
    issued_at: datetime
    client_name: str
    client_email: str
    description: str
    amount: Decimal
    currency: str
    transaction_id: str | None = None
    consultation_start: datetime | None = None


def invoice_number_for(payment: Payment) -> str:
    """Deterministic invoice number for a payment."""
    issued = ensure_utc(payment.completed_at) or utc_now()
    return f"INV-{issued:%Y%m%d}-{payment.id[:8].upper()}"


def storage_key_for(payment: Payment) -> str:
    return f"invoices/{invoice_number_for(payment)}.pdf"


class InvoicePDFRenderer:
    """Renders invoices to PDF."""

    def __init__(self) -> None:
        self.styles = getSampleStyleSheet()
        self._setup_styles()

    def _setup_styles(self) -> None:
        """Setup custom paragraph styles."""
        self.styles.add(ParagraphStyle(
            name="InvoiceTitle",
            parent=self.styles["Heading1"],
            fontSize=20,
            spaceAfter=12,
        ))
        self.styles.add(ParagraphStyle(
            name="SectionHeader",
            parent=self.styles["Heading2"],
            fontSize=12,
            spaceAfter=6,
            textColor=colors.darkblue,
        ))
        self.styles.add(ParagraphStyle(
            name="Footer",
            parent=self.styles["Normal"],
            fontSize=8,
            textColor=colors.grey,
        ))

    def render(self, data: InvoiceData) -> bytes:
        """Render an invoice.

        Args:
            data: Invoice contents

        Returns:
            PDF bytes
        """
        buffer = BytesIO()
        doc = SimpleDocTemplate(
            buffer,
            pagesize=A4,
            leftMargin=20 * mm,
            rightMargin=20 * mm,
            topMargin=20 * mm,
            bottomMargin=20 * mm,
        )

        story = []

        story.append(Paragraph("INVOICE", self.styles["InvoiceTitle"]))
        story.append(Paragraph(settings.company_name, self.styles["Normal"]))
        story.append(Paragraph(settings.company_address, self.styles["Normal"]))
        story.append(Paragraph(settings.company_email, self.styles["Normal"]))
        story.append(Spacer(1, 8 * mm))

        header_data = [
            ["Invoice Number:", data.invoice_number],
            ["Date:", data.issued_at.strftime("%d %B %Y")],
        ]
        if data.transaction_id:
            header_data.append(["Reference:", data.transaction_id])

        header_table = Table(header_data, colWidths=[100, 280])
        header_table.setStyle(TableStyle([
            ("FONTNAME", (0, 0), (0, -1), "Helvetica-Bold"),
            ("FONTSIZE", (0, 0), (-1, -1), 10),
        ]))
        story.append(header_table)
        story.append(Spacer(1, 6 * mm))

        story.append(Paragraph("BILL TO", self.styles["SectionHeader"]))
        story.append(Paragraph(data.client_name, self.styles["Normal"]))
        story.append(Paragraph(data.client_email, self.styles["Normal"]))
        story.append(Spacer(1, 6 * mm))

        description = data.description
        if data.consultation_start:
            description += f" ({data.consultation_start:%d %B %Y %H:%M} UTC)"

        amount = f"{data.amount:.2f} {data.currency}"
        service_data = [
            ["Description", "Amount"],
            [description, amount],
            ["Total", amount],
        ]
        service_table = Table(service_data, colWidths=[300, 100])
        service_table.setStyle(TableStyle([
            ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
            ("FONTNAME", (0, -1), (-1, -1), "Helvetica-Bold"),
            ("LINEBELOW", (0, 0), (-1, 0), 0.5, colors.grey),
            ("LINEABOVE", (0, -1), (-1, -1), 0.5, colors.grey),
            ("ALIGN", (1, 0), (1, -1), "RIGHT"),
            ("FONTSIZE", (0, 0), (-1, -1), 10),
        ]))
        story.append(service_table)
        story.append(Spacer(1, 10 * mm))

        story.append(Paragraph(
            f"Paid in full. Generated {utc_now():%Y-%m-%d %H:%M} UTC.",
            self.styles["Footer"],
        ))

        doc.build(story)

        return buffer.getvalue()


class InvoiceService:
    """Issues invoices for completed payments."""

    def __init__(
        self,
        storage: StorageBackend,
        renderer: InvoicePDFRenderer | None = None,
    ) -> None:
        self.storage = storage
        self.renderer = renderer or InvoicePDFRenderer()

    async def _build_data(self, session: AsyncSession, payment: Payment) -> InvoiceData:
        client = await session.get(Client, payment.client_id)
        if client is None:
            raise InvoiceError(f"Client {payment.client_id} not found for payment {payment.id}")

        consultation_start = None
        if payment.consultation_id:
            consultation = await session.get(Consultation, payment.consultation_id)
            if consultation is not None:
                consultation_start = ensure_utc(consultation.slot_start)

        return InvoiceData(
            invoice_number=invoice_number_for(payment),
            issued_at=ensure_utc(payment.completed_at) or utc_now(),
            client_name=client.full_name,
            client_email=client.email,
            description=SERVICE_DESCRIPTIONS.get(payment.payment_type, "Services"),
            amount=payment.amount,
            currency=payment.currency,
            transaction_id=payment.transaction_id,
            consultation_start=consultation_start,
        )

    async def issue(self, session: AsyncSession, payment_id: str) -> Payment:
        """Generate, store and record the invoice for a completed payment.

        Safe to call repeatedly: an invoice already recorded is returned
        as-is, and concurrent callers write the same object and only one
        assignment sticks.

        Raises:
            InvoiceError: If the payment is missing or not completed
            StorageError: If the PDF cannot be stored
        """
        payment = await session.get(Payment, payment_id, populate_existing=True)
        if payment is None:
            raise InvoiceError(f"Payment {payment_id} not found")

        if payment.invoice_url:
            return payment

        if payment.status not in (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED):
            raise InvoiceError(f"Payment {payment_id} is {payment.status}, not completed")

        data = await self._build_data(session, payment)
        pdf_bytes = await asyncio.to_thread(self.renderer.render, data)
        url = await self.storage.upload(
            pdf_bytes,
            storage_key_for(payment),
            content_type="application/pdf",
        )

        result = await session.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.invoice_url.is_(None))
            .values(invoice_number=data.invoice_number, invoice_url=url)
            .execution_options(synchronize_session=False)
        )
        await session.commit()

        if result.rowcount == 1:
            logger.info(f"Invoice {data.invoice_number} issued for payment {payment.id}")

        refreshed = await session.execute(
            select(Payment)
            .where(Payment.id == payment.id)
            .execution_options(populate_existing=True)
        )
        return refreshed.scalar_one()
