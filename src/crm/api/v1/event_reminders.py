"""REST API endpoints for event reminder automations and manual sends."""

from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Depends

from src.crm.api.deps import CurrentUser, get_current_user, get_event_reminder_service
from src.crm.events.schemas import (
    EventReminderAutomationCreate,
    EventReminderAutomationRead,
    EventReminderAutomationSync,
    EventReminderAutomationUpdate,
    ReminderSendSummary,
    SendRemindersRequest,
)

router = APIRouter(prefix="/events/{event_id}", tags=["event-reminders"])


@router.get("/reminder-automations", response_model=list[EventReminderAutomationRead])
async def list_reminder_automations(
    event_id: uuid.UUID,
    user: CurrentUser = Depends(get_current_user),
    service: Any = Depends(get_event_reminder_service),
) -> list[EventReminderAutomationRead]:
    return await service.list_automations(user.organization_id, str(event_id))


@router.post(
    "/reminder-automations",
    response_model=EventReminderAutomationRead,
    status_code=201,
)
async def create_reminder_automation(
    event_id: uuid.UUID,
    body: EventReminderAutomationCreate,
    user: CurrentUser = Depends(get_current_user),
    service: Any = Depends(get_event_reminder_service),
) -> EventReminderAutomationRead:
    return await service.create_automation(user.organization_id, str(event_id), body, user.id)


@router.put("/reminder-automations", response_model=list[EventReminderAutomationRead])
async def sync_reminder_automations(
    event_id: uuid.UUID,
    body: EventReminderAutomationSync,
    user: CurrentUser = Depends(get_current_user),
    service: Any = Depends(get_event_reminder_service),
) -> list[EventReminderAutomationRead]:
    """Replace every pending automation of the event with the given list."""
    return await service.sync_automations(user.organization_id, str(event_id), body, user.id)


@router.put(
    "/reminder-automations/{automation_id}",
    response_model=EventReminderAutomationRead,
)
async def update_reminder_automation(
    event_id: uuid.UUID,
    automation_id: uuid.UUID,
    body: EventReminderAutomationUpdate,
    user: CurrentUser = Depends(get_current_user),
    service: Any = Depends(get_event_reminder_service),
) -> EventReminderAutomationRead:
    return await service.update_automation(
        user.organization_id, str(event_id), str(automation_id), body, user.id
    )


@router.delete(
    "/reminder-automations/{automation_id}",
    response_model=EventReminderAutomationRead,
)
async def cancel_reminder_automation(
    event_id: uuid.UUID,
    automation_id: uuid.UUID,
    user: CurrentUser = Depends(get_current_user),
    service: Any = Depends(get_event_reminder_service),
) -> EventReminderAutomationRead:
    """Deactivate a pending automation. Attempted ones answer 409."""
    return await service.cancel_automation(
        user.organization_id, str(event_id), str(automation_id), user.id
    )


@router.post("/send-reminders", response_model=ReminderSendSummary)
async def send_reminders_now(
    event_id: uuid.UUID,
    body: SendRemindersRequest,
    user: CurrentUser = Depends(get_current_user),
    service: Any = Depends(get_event_reminder_service),
) -> ReminderSendSummary:
    return await service.send_now(user.organization_id, str(event_id), body, user.id)
