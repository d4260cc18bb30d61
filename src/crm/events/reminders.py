"""Event reminder sending over email and SMS.

EventReminderSender is shared by the manual "send now" endpoint and the
automation worker. Contact preferences (do-not-email / do-not-text) are read
at send time, every per-recipient attempt is written to the delivery log,
and a failing recipient never stops the rest of the batch.
"""

from __future__ import annotations

from datetime import datetime
from zoneinfo import ZoneInfo

import structlog

from src.crm.events.repository import EventReminderRepository
from src.crm.events.schemas import (
    ChannelTally,
    EventSummary,
    ReminderAttemptStatus,
    ReminderDeliveryCreate,
    ReminderRecipient,
    ReminderSendSummary,
    ReminderTriggerType,
)
from src.crm.notifications.email import EmailSender
from src.crm.notifications.sms import TwilioSmsClient

logger = structlog.get_logger(__name__)

SMS_MAX_LENGTH = 320
PREVIEW_LENGTH = 200

EMAIL_NOT_CONFIGURED = "Email delivery is not configured"
SMS_NOT_CONFIGURED = "SMS delivery is not configured"


def format_event_time(value: datetime, timezone: str) -> str:
    local = value.astimezone(ZoneInfo(timezone))
    return local.strftime("%A, %B %d, %Y at %I:%M %p %Z").replace(" 0", " ")


def build_email_body(
    event: EventSummary, recipient_name: str, custom_message: str | None, timezone: str
) -> str:
    lines = [
        f"Hi {recipient_name or 'there'},",
        "",
        f"This is a reminder that {event.name} starts {format_event_time(event.start_date, timezone)}.",
    ]
    if event.location_name:
        lines.append(f"Location: {event.location_name}")
    if custom_message:
        lines.extend(["", custom_message])
    lines.extend(["", "We look forward to seeing you."])
    return "\n".join(lines)


def build_sms_body(event: EventSummary, custom_message: str | None, timezone: str) -> str:
    body = f"Reminder: {event.name} starts {format_event_time(event.start_date, timezone)}"
    if event.location_name:
        body += f" at {event.location_name}"
    body += "."
    if custom_message:
        body += f" {custom_message}"
    return body[:SMS_MAX_LENGTH]


def attempt_status_for(summary: ReminderSendSummary) -> ReminderAttemptStatus:
    """sent: all succeeded, partial: mixed, failed: only failures, skipped: nothing sent."""
    if summary.sent and not summary.failed:
        return ReminderAttemptStatus.SENT
    if summary.sent and summary.failed:
        return ReminderAttemptStatus.PARTIAL
    if summary.failed:
        return ReminderAttemptStatus.FAILED
    return ReminderAttemptStatus.SKIPPED


class EventReminderSender:
    """Send one round of reminders for an event to all active registrants."""

    def __init__(
        self,
        repository: EventReminderRepository,
        email_sender: EmailSender,
        sms_client: TwilioSmsClient,
    ) -> None:
        self._repo = repository
        self._email = email_sender
        self._sms = sms_client

    async def send_event_reminders(
        self,
        event: EventSummary,
        *,
        trigger_type: ReminderTriggerType,
        send_email: bool,
        send_sms: bool,
        custom_message: str | None = None,
        timezone: str = "UTC",
        automation_id: str | None = None,
        sent_by: str | None = None,
    ) -> ReminderSendSummary:
        recipients = await self._repo.list_recipients(event.id)
        summary = ReminderSendSummary(
            event_id=event.id,
            trigger_type=trigger_type,
            total_registrants=len(recipients),
            email=ChannelTally(requested=send_email),
            sms=ChannelTally(requested=send_sms),
        )

        email_ready = send_email and self._email.configured
        sms_ready = send_sms and self._sms.configured
        if send_email and not email_ready:
            summary.warnings.append(EMAIL_NOT_CONFIGURED)
            logger.warning("event_reminders.email_not_configured", event_id=event.id)
        if send_sms and not sms_ready:
            summary.warnings.append(SMS_NOT_CONFIGURED)
            logger.warning("event_reminders.sms_not_configured", event_id=event.id)

        subject = f"Reminder: {event.name}"
        sms_body = build_sms_body(event, custom_message, timezone)
        deliveries: list[ReminderDeliveryCreate] = []

        def log_delivery(
            recipient: ReminderRecipient,
            channel: str,
            address: str | None,
            status: str,
            error: str | None = None,
            preview: str | None = None,
        ) -> None:
            deliveries.append(
                ReminderDeliveryCreate(
                    event_id=event.id,
                    registration_id=recipient.registration_id,
                    channel=channel,
                    recipient=address,
                    delivery_status=status,
                    error_message=error,
                    message_preview=preview[:PREVIEW_LENGTH] if preview else None,
                    trigger_type=trigger_type,
                    automation_id=automation_id,
                    sent_by=sent_by,
                )
            )

        for recipient in recipients:
            if send_email:
                await self._send_email(
                    recipient, email_ready, subject, event, custom_message, timezone,
                    summary, log_delivery,
                )
            if send_sms:
                await self._send_sms(recipient, sms_ready, sms_body, summary, log_delivery)

        try:
            await self._repo.record_deliveries(deliveries)
        except Exception:
            logger.error("event_reminders.delivery_log_failed", event_id=event.id, exc_info=True)
            summary.errors.append("Failed to record reminder deliveries")

        logger.info(
            "event_reminders.sent",
            event_id=event.id,
            trigger_type=trigger_type.value,
            registrants=summary.total_registrants,
            sent=summary.sent,
            failed=summary.failed,
        )
        return summary

    async def _send_email(
        self, recipient, ready, subject, event, custom_message, timezone, summary, log_delivery
    ) -> None:
        tally = summary.email
        if recipient.do_not_email or not recipient.email:
            tally.skipped += 1
            reason = "Contact opted out of email" if recipient.do_not_email else "No email address"
            log_delivery(recipient, "email", recipient.email, "skipped", reason)
            return
        if not ready:
            tally.skipped += 1
            log_delivery(recipient, "email", recipient.email, "skipped", EMAIL_NOT_CONFIGURED)
            return

        body = build_email_body(event, recipient.name, custom_message, timezone)
        tally.attempted += 1
        try:
            delivered = await self._email.send(recipient.email, subject, body)
        except Exception as exc:
            delivered = False
            error = str(exc)
            logger.warning(
                "event_reminders.email_exception",
                registration_id=recipient.registration_id,
                error=error,
            )
        else:
            error = None if delivered else "Email delivery failed"

        if delivered:
            tally.sent += 1
            log_delivery(recipient, "email", recipient.email, "sent", preview=body)
        else:
            tally.failed += 1
            summary.errors.append(f"email to {recipient.email}: {error}")
            log_delivery(recipient, "email", recipient.email, "failed", error, body)

    async def _send_sms(self, recipient, ready, body, summary, log_delivery) -> None:
        tally = summary.sms
        if recipient.do_not_text or not recipient.phone:
            tally.skipped += 1
            reason = "Contact opted out of text messages" if recipient.do_not_text else "No phone number"
            log_delivery(recipient, "sms", recipient.phone, "skipped", reason)
            return
        if not ready:
            tally.skipped += 1
            log_delivery(recipient, "sms", recipient.phone, "skipped", SMS_NOT_CONFIGURED)
            return

        tally.attempted += 1
        try:
            result = await self._sms.send(recipient.phone, body)
            success, error, address = result.success, result.error, result.normalized_to
        except Exception as exc:
            success, error, address = False, str(exc), None
            logger.warning(
                "event_reminders.sms_exception",
                registration_id=recipient.registration_id,
                error=error,
            )

        if success:
            tally.sent += 1
            log_delivery(recipient, "sms", address or recipient.phone, "sent", preview=body)
        else:
            tally.failed += 1
            summary.errors.append(f"sms to {recipient.phone}: {error}")
            log_delivery(recipient, "sms", address or recipient.phone, "failed", error, body)
