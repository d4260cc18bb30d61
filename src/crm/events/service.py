"""Event reminder automation management.

Validates and normalizes automation input, guards against editing or
cancelling automations that have already fired, and exposes the manual
"send reminders now" action.
"""

from __future__ import annotations

from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog

from src.crm.core.errors import ConflictError, NotFoundError, ValidationError
from src.crm.core.timeutils import as_utc, utcnow
from src.crm.events.reminders import EventReminderSender
from src.crm.events.repository import EventReminderRepository
from src.crm.events.schemas import (
    EventReminderAutomationCreate,
    EventReminderAutomationRead,
    EventReminderAutomationSync,
    EventReminderAutomationUpdate,
    EventSummary,
    ReminderSendSummary,
    ReminderTimingType,
    ReminderTriggerType,
    SendRemindersRequest,
)

logger = structlog.get_logger(__name__)

MAX_CUSTOM_MESSAGE_LENGTH = 500


def validate_timezone(name: str) -> str:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError("Invalid timezone")
    return name


def normalize_reminder_input(
    data: EventReminderAutomationCreate,
    current: EventReminderAutomationRead | None = None,
) -> dict[str, Any]:
    """Merge ``data`` over ``current`` and enforce the timing/channel rules.

    Returns column values ready for the repository. Relative timing clears
    the absolute send time and vice versa.
    """
    timing_type = data.timing_type or (current.timing_type if current else None)
    if timing_type is None:
        raise ValidationError("Timing type is required")

    send_email = data.send_email if data.send_email is not None else (
        current.send_email if current else True
    )
    send_sms = data.send_sms if data.send_sms is not None else (
        current.send_sms if current else True
    )
    if not send_email and not send_sms:
        raise ValidationError("At least one reminder channel must be enabled")

    timezone = data.timezone if data.timezone is not None else (
        current.timezone if current else "UTC"
    )
    timezone = timezone.strip()
    if not timezone:
        raise ValidationError("Timezone is required")
    validate_timezone(timezone)

    raw_message = data.custom_message if data.custom_message is not None else (
        current.custom_message if current else None
    )
    custom_message = raw_message.strip() if raw_message else None
    if custom_message and len(custom_message) > MAX_CUSTOM_MESSAGE_LENGTH:
        raise ValidationError("Custom message must be 500 characters or less")

    relative_minutes = data.relative_minutes_before
    if relative_minutes is None and current is not None:
        relative_minutes = current.relative_minutes_before
    absolute_send_at = data.absolute_send_at
    if absolute_send_at is None and current is not None:
        absolute_send_at = current.absolute_send_at

    if timing_type == ReminderTimingType.RELATIVE:
        if not relative_minutes or relative_minutes <= 0:
            raise ValidationError("Relative timing requires a positive number of minutes")
        absolute_send_at = None
    else:
        if absolute_send_at is None:
            raise ValidationError("Absolute timing requires an exact send datetime")
        relative_minutes = None

    return {
        "timing_type": ReminderTimingType(timing_type).value,
        "relative_minutes_before": relative_minutes,
        "absolute_send_at": as_utc(absolute_send_at),
        "send_email": send_email,
        "send_sms": send_sms,
        "custom_message": custom_message or None,
        "timezone": timezone,
    }


class EventReminderService:
    """Organization-scoped operations on an event's reminder automations."""

    def __init__(self, repository: EventReminderRepository, sender: EventReminderSender) -> None:
        self._repo = repository
        self._sender = sender

    async def _require_event(self, organization_id: str, event_id: str) -> EventSummary:
        event = await self._repo.get_event(organization_id, event_id)
        if event is None:
            raise NotFoundError("Event not found")
        return event

    async def _require_automation(
        self, event_id: str, automation_id: str
    ) -> EventReminderAutomationRead:
        automation = await self._repo.get_automation(event_id, automation_id)
        if automation is None:
            raise NotFoundError("Reminder automation not found")
        return automation

    async def list_automations(
        self, organization_id: str, event_id: str
    ) -> list[EventReminderAutomationRead]:
        await self._require_event(organization_id, event_id)
        return await self._repo.list_automations(event_id)

    async def create_automation(
        self,
        organization_id: str,
        event_id: str,
        data: EventReminderAutomationCreate,
        user_id: str,
    ) -> EventReminderAutomationRead:
        await self._require_event(organization_id, event_id)
        fields = normalize_reminder_input(data)
        automation = await self._repo.create_automation(event_id, fields, user_id)
        logger.info(
            "event_reminders.automation_created",
            event_id=event_id,
            automation_id=automation.id,
            timing_type=automation.timing_type.value,
        )
        return automation

    async def update_automation(
        self,
        organization_id: str,
        event_id: str,
        automation_id: str,
        data: EventReminderAutomationUpdate,
        user_id: str,
    ) -> EventReminderAutomationRead:
        await self._require_event(organization_id, event_id)
        current = await self._require_automation(event_id, automation_id)
        if current.attempted_at is not None:
            raise ConflictError("Attempted reminder automations cannot be edited")

        fields = normalize_reminder_input(data, current)
        fields["is_active"] = data.is_active if data.is_active is not None else current.is_active
        updated = await self._repo.update_automation(
            event_id, automation_id, fields, user_id, utcnow()
        )
        if updated is None:
            # Claimed and attempted between the read and the write
            raise ConflictError("Attempted reminder automations cannot be edited")
        return updated

    async def cancel_automation(
        self, organization_id: str, event_id: str, automation_id: str, user_id: str
    ) -> EventReminderAutomationRead:
        await self._require_event(organization_id, event_id)
        current = await self._require_automation(event_id, automation_id)
        if current.attempted_at is not None:
            raise ConflictError("Attempted reminder automations cannot be cancelled")

        cancelled = await self._repo.cancel_automation(event_id, automation_id, user_id, utcnow())
        if cancelled is None:
            raise ConflictError("Attempted reminder automations cannot be cancelled")
        return cancelled

    async def sync_automations(
        self,
        organization_id: str,
        event_id: str,
        data: EventReminderAutomationSync,
        user_id: str,
    ) -> list[EventReminderAutomationRead]:
        """Replace all pending automations of an event with ``data.items``.

        Every item is validated before anything is cancelled, so a bad item
        leaves the existing schedule untouched.
        """
        await self._require_event(organization_id, event_id)
        normalized = [normalize_reminder_input(item) for item in data.items]
        cancelled = await self._repo.cancel_pending(event_id, user_id, utcnow())
        created = [
            await self._repo.create_automation(event_id, fields, user_id) for fields in normalized
        ]
        logger.info(
            "event_reminders.automations_synced",
            event_id=event_id,
            cancelled=cancelled,
            created=len(created),
        )
        return created

    async def event_start_changed(self, organization_id: str, event_id: str) -> int:
        """Re-derive pending send times after an event was moved."""
        await self._require_event(organization_id, event_id)
        refreshed = await self._repo.refresh_due_times(event_id)
        logger.info("event_reminders.due_times_refreshed", event_id=event_id, count=refreshed)
        return refreshed

    async def send_now(
        self,
        organization_id: str,
        event_id: str,
        request: SendRemindersRequest,
        user_id: str,
    ) -> ReminderSendSummary:
        if not request.send_email and not request.send_sms:
            raise ValidationError("At least one reminder channel must be enabled")
        validate_timezone(request.timezone)
        event = await self._require_event(organization_id, event_id)
        return await self._sender.send_event_reminders(
            event,
            trigger_type=ReminderTriggerType.MANUAL,
            send_email=request.send_email,
            send_sms=request.send_sms,
            custom_message=request.custom_message,
            timezone=request.timezone,
            sent_by=user_id,
        )
