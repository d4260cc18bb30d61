"""Test doubles and seed helpers shared across test modules."""

from __future__ import annotations

import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime

from src.crm.core.database import SessionFactory
from src.crm.models.events import EventModel, EventRegistrationModel
from src.crm.models.shared import Contact, User
from src.crm.notifications.sms import SmsResult


# ── Delivery Doubles ─────────────────────────────────────────────────────────


@dataclass
class SentEmail:
    to: str | list[str]
    subject: str
    text: str
    attachments: list = field(default_factory=list)


class RecordingEmailSender:
    """EmailSender double: records messages and answers with ``result``."""

    def __init__(self, configured: bool = True, result: bool = True) -> None:
        self.configured = configured
        self.result = result
        self.sent: list[SentEmail] = []
        self.fail_for: set[str] = set()

    async def send(self, to, subject, text, html=None, attachments=None) -> bool:
        self.sent.append(SentEmail(to, subject, text, list(attachments or [])))
        if isinstance(to, str) and to in self.fail_for:
            return False
        return self.result


class RecordingSmsClient:
    """TwilioSmsClient double; every send succeeds."""

    def __init__(self, configured: bool = True) -> None:
        self.configured = configured
        self.sent: list[tuple[str, str]] = []

    async def send(self, to: str, body: str) -> SmsResult:
        self.sent.append((to, body))
        return SmsResult(success=True, to=to, normalized_to=to, sid="SM123")


# ── Seed Helpers ─────────────────────────────────────────────────────────────


async def seed(session_factory: SessionFactory, *models) -> None:
    async for session in session_factory():
        session.add_all(models)
        await session.commit()


def make_user(organization_id: uuid.UUID, email: str = "staff@example.org") -> User:
    return User(id=uuid.uuid4(), organization_id=organization_id, email=email, name="Staff")


def make_contact(
    organization_id: uuid.UUID,
    first_name: str = "Ada",
    email: str | None = "ada@example.org",
    phone: str | None = "+15555550100",
    **kwargs,
) -> Contact:
    return Contact(
        id=uuid.uuid4(),
        organization_id=organization_id,
        first_name=first_name,
        last_name="Lovelace",
        email=email,
        mobile_phone=phone,
        **kwargs,
    )


def make_event(
    organization_id: uuid.UUID, start_date: datetime, status: str = "planned"
) -> EventModel:
    return EventModel(
        id=uuid.uuid4(),
        organization_id=organization_id,
        name="Spring Gala",
        start_date=start_date,
        location_name="Town Hall",
        status=status,
    )


def make_registration(
    event: EventModel, contact: Contact, status: str = "registered"
) -> EventRegistrationModel:
    return EventRegistrationModel(
        id=uuid.uuid4(),
        event_id=event.id,
        contact_id=contact.id,
        registration_status=status,
    )


# ── Stripe Webhooks ──────────────────────────────────────────────────────────

STRIPE_WEBHOOK_SECRET = "whsec_test_secret"


def stripe_payload(
    event_type: str, obj: dict, created: int | None = None, event_id: str | None = None
) -> bytes:
    event = {
        "id": event_id or f"evt_{uuid.uuid4().hex}",
        "object": "event",
        "type": event_type,
        "created": int(time.time()) if created is None else created,
        "livemode": False,
        "data": {"object": obj},
    }
    return json.dumps(event).encode()


def stripe_signature(payload: bytes, secret: str = STRIPE_WEBHOOK_SECRET) -> str:
    """A ``Stripe-Signature`` header value signed the way Stripe signs."""
    timestamp = int(time.time())
    digest = hmac.new(
        secret.encode(), f"{timestamp}.{payload.decode()}".encode(), hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},v1={digest}"
