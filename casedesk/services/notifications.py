"""Outbound e-mail notifications for booking and payment events."""

import asyncio
import logging
import smtplib
import ssl
from abc import ABC, abstractmethod
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, make_msgid
from enum import Enum
from typing import Any
from uuid import uuid4

from casedesk.core.config import settings
from casedesk.fixtures.email_templates import EMAIL_TEMPLATES

logger = logging.getLogger(__name__)


class EmailProviderError(Exception):
    """Base exception for e-mail provider errors."""

    pass


class EmailProvider(ABC):
    """Abstract base class for e-mail providers."""

    @abstractmethod
    async def send(
        self,
        recipient: str,
        subject: str,
        body: str,
        html_body: str | None = None,
        **kwargs: Any,
    ) -> tuple[str, dict]:
        """Send an e-mail and return (provider_message_id, metadata).

        Raises EmailProviderError on failure.
        """
        pass


class SmtpEmailProvider(EmailProvider):
    """Delivers e-mail through an SMTP relay such as SES or SendGrid.

    Port 465 uses implicit TLS; any other port upgrades with STARTTLS when
    use_tls is set. smtplib blocks, so delivery runs in a worker thread.
    """

    def __init__(
        self,
        smtp_host: str,
        smtp_port: int = 587,
        smtp_user: str = "",
        smtp_password: str = "",
        from_email: str = "",
        from_name: str = "Migrantifly",
        use_tls: bool = True,
        timeout: int = 30,
        provider_name: str = "smtp",
    ):
        self.provider_name = provider_name
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.from_email = from_email
        self.from_name = from_name
        self.use_tls = use_tls
        self.timeout = timeout

    def build_message(
        self,
        recipient: str,
        subject: str,
        body: str,
        html_body: str | None = None,
    ) -> MIMEMultipart:
        message = MIMEMultipart("alternative")
        message["Subject"] = subject
        message["From"] = formataddr((self.from_name, self.from_email))
        message["To"] = recipient
        message["Message-ID"] = make_msgid(domain=self.from_email.rpartition("@")[2] or None)
        message.attach(MIMEText(body, "plain", "utf-8"))
        if html_body:
            message.attach(MIMEText(html_body, "html", "utf-8"))
        return message

    def _deliver(self, recipient: str, message: MIMEMultipart) -> None:
        if self.smtp_port == 465:
            server = smtplib.SMTP_SSL(
                self.smtp_host,
                self.smtp_port,
                context=ssl.create_default_context(),
                timeout=self.timeout,
            )
        else:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout)
            if self.use_tls:
                server.starttls(context=ssl.create_default_context())

        try:
            if self.smtp_user:
                server.login(self.smtp_user, self.smtp_password)
            server.sendmail(self.from_email, [recipient], message.as_string())
        finally:
            server.quit()

    async def send(
        self,
        recipient: str,
        subject: str,
        body: str,
        html_body: str | None = None,
        **kwargs: Any,
    ) -> tuple[str, dict]:
        """Send an e-mail through the relay."""
        message = self.build_message(recipient, subject, body, html_body)

        try:
            await asyncio.to_thread(self._deliver, recipient, message)
        except (smtplib.SMTPException, OSError) as e:
            raise EmailProviderError(f"SMTP delivery to {recipient} failed: {e}") from e

        logger.info(f"Sent email to {recipient} via {self.smtp_host}: {subject}")

        return message["Message-ID"], {
            "provider": self.provider_name,
            "from": message["From"],
            "to": recipient,
            "has_html": html_body is not None,
        }


class LogEmailProvider(EmailProvider):
    """Development provider: writes each message to the log instead of sending it."""

    async def send(
        self,
        recipient: str,
        subject: str,
        body: str,
        html_body: str | None = None,
        **kwargs: Any,
    ) -> tuple[str, dict]:
        message_id = f"log_{uuid4().hex[:16]}"
        logger.info(f"Email not sent (no SMTP host) to {recipient}: {subject}")
        return message_id, {"provider": "log", "to": recipient}


def build_email_provider() -> EmailProvider:
    """Create the configured e-mail provider.

    Without an SMTP host, messages are only logged.
    """
    if not settings.smtp_host:
        if settings.env in ("staging", "prod"):
            logger.warning("SMTP_HOST is not set; outbound e-mail will only be logged")
        return LogEmailProvider()

    return SmtpEmailProvider(
        smtp_host=settings.smtp_host,
        smtp_port=settings.smtp_port,
        smtp_user=settings.smtp_user,
        smtp_password=settings.smtp_password,
        from_email=settings.from_email,
        from_name=settings.from_name,
        use_tls=settings.smtp_use_tls,
        provider_name=settings.email_provider,
    )


class NotificationService:
    """Renders templates and hands them to the e-mail provider.

    Sending is best-effort: failures are logged and reported as False,
    never raised into the calling transition.
    """

    def __init__(self, email_provider: EmailProvider) -> None:
        self.email_provider = email_provider

    def render_template(self, template: str, data: dict[str, Any]) -> str:
        """Replace {{key}} placeholders with values from data."""
        result = template
        for key, value in data.items():
            if isinstance(value, Enum):
                value = value.value
            result = result.replace("{{" + key + "}}", "" if value is None else str(value))
        return result

    async def send_templated_email(
        self,
        recipient: str,
        template_code: str,
        data: dict[str, Any],
    ) -> bool:
        """Send a templated e-mail.

        Returns:
            True if the provider accepted the message
        """
        template = EMAIL_TEMPLATES.get(template_code)
        if template is None:
            logger.error(f"Unknown email template: {template_code}")
            return False

        context = {"company_name": settings.company_name, **data}
        subject = self.render_template(template["subject"], context)
        body = self.render_template(template["body"], context)

        try:
            message_id, _ = await self.email_provider.send(
                recipient=recipient,
                subject=subject,
                body=body,
            )
        except Exception:
            logger.exception(f"Failed to send {template_code} email to {recipient}")
            return False

        logger.info(f"Sent {template_code} email to {recipient} ({message_id})")
        return True
