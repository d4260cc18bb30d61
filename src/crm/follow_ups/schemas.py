"""Pydantic schemas for follow-ups and their reminder notifications."""

from __future__ import annotations

from datetime import date, datetime, time
from enum import Enum

from pydantic import BaseModel, Field

from src.crm.core.ids import UUIDStr


class FollowUpEntityType(str, Enum):
    CASE = "case"
    TASK = "task"


class FollowUpFrequency(str, Enum):
    ONCE = "once"
    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"


class FollowUpMethod(str, Enum):
    PHONE = "phone"
    EMAIL = "email"
    IN_PERSON = "in_person"
    VIDEO_CALL = "video_call"
    OTHER = "other"


class FollowUpStatus(str, Enum):
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class NotificationStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


# ── Requests ────────────────────────────────────────────────────────────────


class FollowUpCreate(BaseModel):
    entity_type: FollowUpEntityType
    entity_id: UUIDStr
    title: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    scheduled_date: date
    scheduled_time: time | None = None
    frequency: FollowUpFrequency = FollowUpFrequency.ONCE
    frequency_end_date: date | None = None
    method: FollowUpMethod | None = None
    assigned_to: UUIDStr | None = None
    reminder_minutes_before: int | None = Field(default=None, ge=0)


class FollowUpUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    scheduled_date: date | None = None
    scheduled_time: time | None = None
    frequency: FollowUpFrequency | None = None
    frequency_end_date: date | None = None
    method: FollowUpMethod | None = None
    status: FollowUpStatus | None = None
    assigned_to: UUIDStr | None = None
    reminder_minutes_before: int | None = Field(default=None, ge=0)


class FollowUpComplete(BaseModel):
    completed_notes: str | None = None
    schedule_next: bool | None = None
    next_scheduled_date: date | None = None


class FollowUpReschedule(BaseModel):
    scheduled_date: date
    scheduled_time: time | None = None


class FollowUpFilters(BaseModel):
    entity_type: FollowUpEntityType | None = None
    entity_id: str | None = None
    status: str | None = None  # a FollowUpStatus value or "overdue"
    assigned_to: str | None = None
    date_from: date | None = None
    date_to: date | None = None
    overdue_only: bool = False
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)


# ── Responses ───────────────────────────────────────────────────────────────


class FollowUpRead(BaseModel):
    id: str
    organization_id: str
    entity_type: FollowUpEntityType
    entity_id: str
    title: str
    description: str | None = None
    scheduled_date: date
    scheduled_time: time | None = None
    frequency: FollowUpFrequency
    frequency_end_date: date | None = None
    method: FollowUpMethod | None = None
    status: FollowUpStatus
    assigned_to: str | None = None
    reminder_minutes_before: int | None = None
    completed_date: datetime | None = None
    completed_notes: str | None = None
    created_by: str | None = None
    modified_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class FollowUpPage(BaseModel):
    data: list[FollowUpRead]
    pagination: Pagination


class FollowUpSummary(BaseModel):
    total: int = 0
    scheduled: int = 0
    completed: int = 0
    cancelled: int = 0
    overdue: int = 0
    due_today: int = 0
    due_this_week: int = 0


class FollowUpNotificationRead(BaseModel):
    id: str
    follow_up_id: str
    scheduled_for: datetime
    status: NotificationStatus
    attempt_count: int = 0
    recipient_email: str | None = None
    sent_at: datetime | None = None
    error_message: str | None = None


class ClaimedFollowUpNotification(BaseModel):
    id: str
    follow_up_id: str
    organization_id: str
    recipient_email: str | None = None
    attempt_count: int
