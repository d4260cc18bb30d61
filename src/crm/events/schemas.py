"""Pydantic schemas for event reminders.

- Enums: ReminderTimingType, ReminderAttemptStatus, ReminderTriggerType
- Automations: EventReminderAutomationCreate/Update/Sync/Read, ClaimedReminderAutomation
- Sending: ReminderRecipient, ChannelTally, ReminderSendSummary, SendRemindersRequest
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


# ── Enums ───────────────────────────────────────────────────────────────────


class ReminderTimingType(str, Enum):
    RELATIVE = "relative"
    ABSOLUTE = "absolute"


class ReminderAttemptStatus(str, Enum):
    """Terminal outcome stored on an automation after its single attempt."""

    SENT = "sent"
    PARTIAL = "partial"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class ReminderTriggerType(str, Enum):
    MANUAL = "manual"
    AUTOMATED = "automated"


# ── Automations ─────────────────────────────────────────────────────────────


class EventReminderAutomationCreate(BaseModel):
    """Incoming automation definition; cross-field rules are enforced by the service."""

    timing_type: ReminderTimingType | None = None
    relative_minutes_before: int | None = None
    absolute_send_at: datetime | None = None
    send_email: bool | None = None
    send_sms: bool | None = None
    custom_message: str | None = None
    timezone: str | None = None


class EventReminderAutomationUpdate(EventReminderAutomationCreate):
    is_active: bool | None = None


class EventReminderAutomationSync(BaseModel):
    items: list[EventReminderAutomationCreate] = Field(default_factory=list)


class EventReminderAutomationRead(BaseModel):
    id: str
    event_id: str
    timing_type: ReminderTimingType
    relative_minutes_before: int | None = None
    absolute_send_at: datetime | None = None
    send_email: bool = True
    send_sms: bool = True
    custom_message: str | None = None
    timezone: str = "UTC"
    is_active: bool = True
    due_at: datetime | None = None
    processing_started_at: datetime | None = None
    attempted_at: datetime | None = None
    attempt_status: ReminderAttemptStatus | None = None
    attempt_summary: dict[str, Any] | None = None
    last_error: str | None = None
    created_by: str | None = None
    modified_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ClaimedReminderAutomation(EventReminderAutomationRead):
    """Automation claimed by the worker, with its computed due time."""

    due_at: datetime
    event_start_date: datetime
    event_status: str


class AttemptResult(BaseModel):
    status: ReminderAttemptStatus
    summary: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None


# ── Sending ─────────────────────────────────────────────────────────────────


class EventSummary(BaseModel):
    """The event fields a reminder message needs."""

    id: str
    organization_id: str
    name: str
    start_date: datetime
    end_date: datetime | None = None
    location_name: str | None = None
    status: str


class ReminderRecipient(BaseModel):
    registration_id: str
    contact_id: str
    name: str
    email: str | None = None
    phone: str | None = None
    do_not_email: bool = False
    do_not_text: bool = False


class ChannelTally(BaseModel):
    requested: bool = False
    attempted: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0


class ReminderSendSummary(BaseModel):
    event_id: str
    trigger_type: ReminderTriggerType
    total_registrants: int = 0
    email: ChannelTally = Field(default_factory=ChannelTally)
    sms: ChannelTally = Field(default_factory=ChannelTally)
    warnings: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)

    @property
    def sent(self) -> int:
        return self.email.sent + self.sms.sent

    @property
    def failed(self) -> int:
        return self.email.failed + self.sms.failed


class SendRemindersRequest(BaseModel):
    send_email: bool = True
    send_sms: bool = True
    custom_message: str | None = Field(default=None, max_length=500)
    timezone: str = "UTC"


class ReminderDeliveryCreate(BaseModel):
    event_id: str
    registration_id: str
    channel: str
    recipient: str | None = None
    delivery_status: str
    error_message: str | None = None
    message_preview: str | None = None
    trigger_type: ReminderTriggerType
    automation_id: str | None = None
    sent_by: str | None = None
