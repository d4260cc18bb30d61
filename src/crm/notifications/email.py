"""SMTP email delivery.

smtplib is blocking, so each send runs in a worker thread. send() reports
success as a bool and logs failures; callers decide how a failed send is
recorded.
"""

from __future__ import annotations

import asyncio
import smtplib
import ssl
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr

import structlog

from src.crm.config import Settings

logger = structlog.get_logger(__name__)


@dataclass
class EmailAttachment:
    filename: str
    content: bytes
    mime_type: str = "application/octet-stream"


class EmailSender:
    """Send plain-text (optionally HTML) mail through the configured SMTP relay."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    @property
    def configured(self) -> bool:
        return self._settings.smtp_configured

    def build_message(
        self,
        to: list[str],
        subject: str,
        text: str,
        html: str | None = None,
        attachments: list[EmailAttachment] | None = None,
    ) -> EmailMessage:
        settings = self._settings
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = formataddr((settings.SMTP_FROM_NAME, settings.SMTP_FROM_ADDRESS))
        msg["To"] = ", ".join(to)
        msg.set_content(text)
        if html:
            msg.add_alternative(html, subtype="html")
        for attachment in attachments or []:
            maintype, _, subtype = attachment.mime_type.partition("/")
            msg.add_attachment(
                attachment.content,
                maintype=maintype,
                subtype=subtype or "octet-stream",
                filename=attachment.filename,
            )
        return msg

    async def send(
        self,
        to: str | list[str],
        subject: str,
        text: str,
        html: str | None = None,
        attachments: list[EmailAttachment] | None = None,
    ) -> bool:
        """Deliver one message. Returns False when SMTP is unset or the send fails."""
        recipients = [to] if isinstance(to, str) else list(to)
        if not recipients:
            return False
        if not self.configured:
            logger.warning("email.smtp_not_configured", subject=subject)
            return False

        msg = self.build_message(recipients, subject, text, html, attachments)
        try:
            await asyncio.to_thread(self._deliver, msg, recipients)
        except (smtplib.SMTPException, OSError) as exc:
            logger.warning(
                "email.send_failed",
                recipients=len(recipients),
                subject=subject,
                error=str(exc),
            )
            return False

        logger.info("email.sent", recipients=len(recipients), subject=subject)
        return True

    def _deliver(self, msg: EmailMessage, recipients: list[str]) -> None:
        settings = self._settings
        if settings.SMTP_PORT == 465:
            server: smtplib.SMTP = smtplib.SMTP_SSL(
                settings.SMTP_HOST,
                settings.SMTP_PORT,
                context=ssl.create_default_context(),
                timeout=30,
            )
        else:
            server = smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=30)
            if settings.SMTP_USE_TLS:
                server.starttls(context=ssl.create_default_context())
        try:
            if settings.SMTP_USER:
                server.login(settings.SMTP_USER, settings.SMTP_PASSWORD)
            server.send_message(msg, from_addr=settings.SMTP_FROM_ADDRESS, to_addrs=recipients)
        finally:
            server.quit()
