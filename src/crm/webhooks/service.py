"""Outgoing webhook management and delivery.

Deliveries are signed JSON POSTs. A non-2xx response or transport error
schedules a retry on a fixed backoff table; the fifth failed attempt marks
the delivery ``failed``. Retries re-POST the stored payload into the same
delivery row.
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from datetime import datetime, timedelta
from typing import Any

import httpx
import structlog

from src.crm.config import Environment, Settings
from src.crm.core.errors import NotFoundError
from src.crm.core.timeutils import utcnow
from src.crm.webhooks.repository import WebhookRepository
from src.crm.webhooks.schemas import (
    ClaimedWebhookDelivery,
    DeliveryAttempt,
    WebhookDeliveryRead,
    WebhookDeliveryStatus,
    WebhookEndpointCreate,
    WebhookEndpointRead,
    WebhookEndpointUpdate,
    WebhookEndpointWithStats,
    WebhookEventInfo,
    WebhookEventType,
    WebhookSecretRead,
    WebhookTestResult,
)
from src.crm.webhooks.signing import generate_secret, sign_payload
from src.crm.webhooks.urls import validate_webhook_url

logger = structlog.get_logger(__name__)

MAX_ATTEMPTS = 5
RETRY_DELAYS = (60, 300, 900, 3600, 7200)  # seconds
RESPONSE_BODY_LIMIT = 1000

EVENT_CATALOG: tuple[tuple[WebhookEventType, str, str], ...] = (
    (WebhookEventType.CONTACT_CREATED, "Contact Created", "When a new contact is added"),
    (WebhookEventType.CONTACT_UPDATED, "Contact Updated", "When a contact is modified"),
    (WebhookEventType.CONTACT_DELETED, "Contact Deleted", "When a contact is removed"),
    (WebhookEventType.DONATION_CREATED, "Donation Created", "When a new donation is recorded"),
    (WebhookEventType.DONATION_UPDATED, "Donation Updated", "When a donation is modified"),
    (WebhookEventType.DONATION_DELETED, "Donation Deleted", "When a donation is removed"),
    (WebhookEventType.EVENT_CREATED, "Event Created", "When a new event is created"),
    (WebhookEventType.EVENT_UPDATED, "Event Updated", "When an event is modified"),
    (WebhookEventType.EVENT_DELETED, "Event Deleted", "When an event is removed"),
    (
        WebhookEventType.EVENT_REGISTRATION_CREATED,
        "Event Registration",
        "When someone registers for an event",
    ),
    (
        WebhookEventType.EVENT_REGISTRATION_CANCELED,
        "Registration Canceled",
        "When a registration is canceled",
    ),
    (WebhookEventType.VOLUNTEER_CREATED, "Volunteer Created", "When a new volunteer is added"),
    (WebhookEventType.VOLUNTEER_UPDATED, "Volunteer Updated", "When a volunteer is modified"),
    (WebhookEventType.VOLUNTEER_HOURS_LOGGED, "Hours Logged", "When volunteer hours are recorded"),
    (WebhookEventType.TASK_CREATED, "Task Created", "When a new task is created"),
    (WebhookEventType.TASK_COMPLETED, "Task Completed", "When a task is marked complete"),
    (WebhookEventType.TASK_OVERDUE, "Task Overdue", "When a task becomes overdue"),
    (WebhookEventType.PAYMENT_SUCCEEDED, "Payment Succeeded", "When a payment is successful"),
    (WebhookEventType.PAYMENT_FAILED, "Payment Failed", "When a payment fails"),
    (WebhookEventType.PAYMENT_REFUNDED, "Payment Refunded", "When a payment is refunded"),
)


def plan_failure(
    previous_attempts: int, now: datetime
) -> tuple[WebhookDeliveryStatus, int, datetime | None]:
    """Status, new attempt count and next retry time after a failed attempt."""
    attempts = previous_attempts + 1
    if attempts >= MAX_ATTEMPTS:
        return WebhookDeliveryStatus.FAILED, attempts, None
    delay = RETRY_DELAYS[min(attempts - 1, len(RETRY_DELAYS) - 1)]
    return WebhookDeliveryStatus.RETRYING, attempts, now + timedelta(seconds=delay)


def build_payload(
    event_type: str,
    data: dict[str, Any],
    previous_attributes: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    body: dict[str, Any] = {"object": data}
    if previous_attributes:
        body["previousAttributes"] = previous_attributes
    return {
        "id": str(uuid.uuid4()),
        "type": event_type,
        "createdAt": (now or utcnow()).isoformat().replace("+00:00", "Z"),
        "data": body,
    }


class WebhookService:
    """Organization-scoped webhook endpoint management and signed delivery.

    Args:
        repository: WebhookRepository for persistence.
        timeout: Per-request timeout in seconds.
        user_agent: User-Agent header sent with every delivery.
        require_https: Reject plain-http endpoint URLs.
        transport: Optional httpx transport (tests).
    """

    def __init__(
        self,
        repository: WebhookRepository,
        timeout: float = 30.0,
        user_agent: str = "NonprofitManager-Webhook/1.0",
        require_https: bool = False,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._repo = repository
        self._timeout = timeout
        self._user_agent = user_agent
        self._require_https = require_https
        self._transport = transport

    @classmethod
    def from_settings(cls, repository: WebhookRepository, settings: Settings) -> WebhookService:
        return cls(
            repository,
            timeout=settings.WEBHOOK_TIMEOUT_SECONDS,
            user_agent=settings.WEBHOOK_USER_AGENT,
            require_https=settings.ENVIRONMENT == Environment.production,
        )

    # ── Endpoint Management ─────────────────────────────────────────────────

    @staticmethod
    def available_events() -> list[WebhookEventInfo]:
        return [
            WebhookEventInfo(
                type=event_type,
                name=name,
                description=description,
                category=event_type.value.split(".", 1)[0],
            )
            for event_type, name, description in EVENT_CATALOG
        ]

    async def list_endpoints(self, organization_id: str) -> list[WebhookEndpointWithStats]:
        return await self._repo.list_endpoints(organization_id)

    async def get_endpoint(self, organization_id: str, endpoint_id: str) -> WebhookEndpointRead:
        endpoint = await self._repo.get_endpoint(organization_id, endpoint_id)
        if endpoint is None:
            raise NotFoundError("Webhook endpoint not found")
        return endpoint

    async def create_endpoint(
        self, organization_id: str, user_id: str, data: WebhookEndpointCreate
    ) -> WebhookEndpointRead:
        url = await validate_webhook_url(data.url, require_https=self._require_https)
        endpoint = await self._repo.create_endpoint(
            organization_id,
            user_id,
            url=url,
            description=data.description,
            events=[event.value for event in dict.fromkeys(data.events)],
            secret=generate_secret(),
        )
        logger.info(
            "webhooks.endpoint_created",
            endpoint_id=endpoint.id,
            events=len(endpoint.events),
        )
        return endpoint

    async def update_endpoint(
        self, organization_id: str, endpoint_id: str, data: WebhookEndpointUpdate
    ) -> WebhookEndpointRead:
        fields: dict[str, Any] = {}
        if data.url is not None:
            fields["url"] = await validate_webhook_url(data.url, require_https=self._require_https)
        if "description" in data.model_fields_set:
            fields["description"] = data.description
        if data.events is not None:
            fields["events"] = [event.value for event in dict.fromkeys(data.events)]
        if data.is_active is not None:
            fields["is_active"] = data.is_active

        if not fields:
            return await self.get_endpoint(organization_id, endpoint_id)
        endpoint = await self._repo.update_endpoint(organization_id, endpoint_id, fields, utcnow())
        if endpoint is None:
            raise NotFoundError("Webhook endpoint not found")
        return endpoint

    async def delete_endpoint(self, organization_id: str, endpoint_id: str) -> None:
        if not await self._repo.delete_endpoint(organization_id, endpoint_id):
            raise NotFoundError("Webhook endpoint not found")
        logger.info("webhooks.endpoint_deleted", endpoint_id=endpoint_id)

    async def regenerate_secret(self, organization_id: str, endpoint_id: str) -> WebhookSecretRead:
        secret = generate_secret()
        endpoint = await self._repo.update_endpoint(
            organization_id, endpoint_id, {"secret": secret}, utcnow()
        )
        if endpoint is None:
            raise NotFoundError("Webhook endpoint not found")
        logger.info("webhooks.secret_regenerated", endpoint_id=endpoint_id)
        return WebhookSecretRead(secret=secret)

    async def list_deliveries(
        self, organization_id: str, endpoint_id: str, limit: int = 50
    ) -> list[WebhookDeliveryRead]:
        await self.get_endpoint(organization_id, endpoint_id)
        return await self._repo.list_deliveries(endpoint_id, limit)

    async def test_endpoint(self, organization_id: str, endpoint_id: str) -> WebhookTestResult:
        """POST a sample ``contact.created`` payload; nothing is recorded."""
        endpoint = await self.get_endpoint(organization_id, endpoint_id)
        payload = build_payload(
            WebhookEventType.CONTACT_CREATED.value,
            {
                "id": "test_contact_123",
                "first_name": "Test",
                "last_name": "User",
                "email": "test@example.com",
                "_test": True,
            },
        )
        started = time.perf_counter()
        attempt = await self._post(
            endpoint.url, endpoint.secret, payload, extra_headers={"X-Webhook-Test": "true"}
        )
        elapsed_ms = int((time.perf_counter() - started) * 1000)

        if attempt.status_code is None:
            error = attempt.body or "Unknown error"
        else:
            error = None if attempt.success else f"HTTP {attempt.status_code}"
        return WebhookTestResult(
            success=attempt.success,
            status_code=attempt.status_code,
            response_time_ms=elapsed_ms,
            error=error,
        )

    # ── Delivery ────────────────────────────────────────────────────────────

    async def trigger(
        self,
        organization_id: str,
        event_type: WebhookEventType,
        data: dict[str, Any],
        previous_attributes: dict[str, Any] | None = None,
    ) -> int:
        """Deliver an event to every subscribed endpoint; returns the endpoint count.

        One endpoint failing never affects delivery to the others.
        """
        endpoints = await self._repo.list_subscribers(organization_id, event_type.value)
        if not endpoints:
            return 0

        payload = build_payload(event_type.value, data, previous_attributes)
        results = await asyncio.gather(
            *(self._deliver_new(endpoint, payload) for endpoint in endpoints),
            return_exceptions=True,
        )
        for endpoint, outcome in zip(endpoints, results):
            if isinstance(outcome, Exception):
                logger.error(
                    "webhooks.trigger_failed",
                    endpoint_id=endpoint.id,
                    event_type=event_type.value,
                    error=str(outcome),
                )
        return len(endpoints)

    async def _deliver_new(
        self, endpoint: WebhookEndpointRead, payload: dict[str, Any]
    ) -> WebhookDeliveryStatus:
        delivery_id = await self._repo.create_delivery(endpoint.id, payload["type"], payload)
        return await self.deliver(
            delivery_id, endpoint.id, endpoint.url, endpoint.secret, payload, previous_attempts=0
        )

    async def retry(self, claimed: ClaimedWebhookDelivery) -> WebhookDeliveryStatus:
        return await self.deliver(
            claimed.id,
            claimed.webhook_endpoint_id,
            claimed.url,
            claimed.secret,
            claimed.payload,
            previous_attempts=claimed.attempts,
        )

    async def deliver(
        self,
        delivery_id: str,
        endpoint_id: str,
        url: str,
        secret: str,
        payload: dict[str, Any],
        previous_attempts: int,
    ) -> WebhookDeliveryStatus:
        """POST ``payload`` once and record the outcome on the delivery row."""
        attempt = await self._post(url, secret, payload)
        if attempt.success:
            await self._repo.mark_delivery(
                delivery_id,
                endpoint_id,
                status=WebhookDeliveryStatus.SUCCESS,
                attempts=previous_attempts,
                response_status=attempt.status_code,
                response_body=attempt.body,
                next_retry_at=None,
                now=utcnow(),
            )
            logger.info("webhooks.delivered", delivery_id=delivery_id, endpoint_id=endpoint_id)
            return WebhookDeliveryStatus.SUCCESS

        return await self.record_failure(
            delivery_id, endpoint_id, previous_attempts, attempt.status_code, attempt.body
        )

    async def record_failure(
        self,
        delivery_id: str,
        endpoint_id: str,
        previous_attempts: int,
        status_code: int | None,
        body: str | None,
    ) -> WebhookDeliveryStatus:
        now = utcnow()
        status, attempts, next_retry_at = plan_failure(previous_attempts, now)
        await self._repo.mark_delivery(
            delivery_id,
            endpoint_id,
            status=status,
            attempts=attempts,
            response_status=status_code,
            response_body=body[:RESPONSE_BODY_LIMIT] if body else None,
            next_retry_at=next_retry_at,
            now=now,
        )
        logger.warning(
            "webhooks.delivery_failed",
            delivery_id=delivery_id,
            endpoint_id=endpoint_id,
            status=status.value,
            attempts=attempts,
            response_status=status_code,
        )
        return status

    async def _post(
        self,
        url: str,
        secret: str,
        payload: dict[str, Any],
        extra_headers: dict[str, str] | None = None,
    ) -> DeliveryAttempt:
        body = json.dumps(payload, separators=(",", ":"))
        headers = {
            "Content-Type": "application/json",
            "X-Webhook-Signature": sign_payload(body, secret),
            "X-Webhook-Id": str(payload.get("id", "")),
            "X-Webhook-Event": str(payload.get("type", "")),
            "User-Agent": self._user_agent,
        }
        if extra_headers:
            headers.update(extra_headers)

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                response = await client.post(url, content=body, headers=headers)
        except httpx.HTTPError as exc:
            return DeliveryAttempt(success=False, body=str(exc) or type(exc).__name__)

        return DeliveryAttempt(
            success=response.is_success,
            status_code=response.status_code,
            body=response.text[:RESPONSE_BODY_LIMIT],
        )
