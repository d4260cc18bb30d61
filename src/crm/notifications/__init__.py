"""Outbound email (SMTP) and SMS (Twilio) senders used by the workers."""

from src.crm.notifications.email import EmailAttachment, EmailSender
from src.crm.notifications.sms import SmsResult, TwilioSmsClient, normalize_phone_for_sms

__all__ = [
    "EmailAttachment",
    "EmailSender",
    "SmsResult",
    "TwilioSmsClient",
    "normalize_phone_for_sms",
]
