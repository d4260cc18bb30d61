"""Pydantic schemas for outgoing webhooks."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class WebhookEventType(str, Enum):
    CONTACT_CREATED = "contact.created"
    CONTACT_UPDATED = "contact.updated"
    CONTACT_DELETED = "contact.deleted"
    DONATION_CREATED = "donation.created"
    DONATION_UPDATED = "donation.updated"
    DONATION_DELETED = "donation.deleted"
    EVENT_CREATED = "event.created"
    EVENT_UPDATED = "event.updated"
    EVENT_DELETED = "event.deleted"
    EVENT_REGISTRATION_CREATED = "event.registration.created"
    EVENT_REGISTRATION_CANCELED = "event.registration.canceled"
    VOLUNTEER_CREATED = "volunteer.created"
    VOLUNTEER_UPDATED = "volunteer.updated"
    VOLUNTEER_HOURS_LOGGED = "volunteer.hours_logged"
    TASK_CREATED = "task.created"
    TASK_COMPLETED = "task.completed"
    TASK_OVERDUE = "task.overdue"
    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REFUNDED = "payment.refunded"


class WebhookDeliveryStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    RETRYING = "retrying"


# ── Endpoints ───────────────────────────────────────────────────────────────


class WebhookEndpointCreate(BaseModel):
    url: str = Field(..., min_length=1, max_length=2048)
    description: str | None = None
    events: list[WebhookEventType] = Field(..., min_length=1)


class WebhookEndpointUpdate(BaseModel):
    url: str | None = Field(default=None, min_length=1, max_length=2048)
    description: str | None = None
    events: list[WebhookEventType] | None = Field(default=None, min_length=1)
    is_active: bool | None = None


class WebhookEndpointRead(BaseModel):
    id: str
    organization_id: str
    user_id: str | None = None
    url: str
    description: str | None = None
    secret: str
    events: list[str] = Field(default_factory=list)
    is_active: bool = True
    last_delivery_at: datetime | None = None
    last_delivery_status: WebhookDeliveryStatus | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class WebhookEndpointWithStats(WebhookEndpointRead):
    total_deliveries: int = 0
    successful_deliveries: int = 0
    failed_deliveries: int = 0
    success_rate: float = 100.0


class WebhookSecretRead(BaseModel):
    secret: str


# ── Deliveries ──────────────────────────────────────────────────────────────


class WebhookDeliveryRead(BaseModel):
    id: str
    webhook_endpoint_id: str
    event_type: str
    payload: dict[str, Any]
    status: WebhookDeliveryStatus
    response_status: int | None = None
    response_body: str | None = None
    attempts: int = 0
    next_retry_at: datetime | None = None
    delivered_at: datetime | None = None
    created_at: datetime | None = None


class ClaimedWebhookDelivery(BaseModel):
    """A retrying delivery claimed by the worker, with its endpoint's target."""

    id: str
    webhook_endpoint_id: str
    event_type: str
    payload: dict[str, Any]
    attempts: int
    url: str
    secret: str


class DeliveryAttempt(BaseModel):
    """Outcome of one HTTP POST to an endpoint."""

    success: bool
    status_code: int | None = None
    body: str | None = None


class WebhookTestResult(BaseModel):
    success: bool
    status_code: int | None = None
    response_time_ms: int
    error: str | None = None


class WebhookEventInfo(BaseModel):
    type: WebhookEventType
    name: str
    description: str
    category: str
