"""REST API endpoints for outgoing webhook endpoints and their deliveries."""

from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Depends, Query

from src.crm.api.deps import CurrentUser, get_current_user, get_webhook_service
from src.crm.webhooks.schemas import (
    WebhookDeliveryRead,
    WebhookEndpointCreate,
    WebhookEndpointRead,
    WebhookEndpointUpdate,
    WebhookEndpointWithStats,
    WebhookEventInfo,
    WebhookSecretRead,
    WebhookTestResult,
)
from src.crm.webhooks.service import WebhookService

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.get("/events", response_model=list[WebhookEventInfo])
async def list_webhook_events(
    user: CurrentUser = Depends(get_current_user),
) -> list[WebhookEventInfo]:
    """Catalog of subscribable event types."""
    return WebhookService.available_events()


@router.get("", response_model=list[WebhookEndpointWithStats])
async def list_webhook_endpoints(
    user: CurrentUser = Depends(get_current_user),
    service: Any = Depends(get_webhook_service),
) -> list[WebhookEndpointWithStats]:
    return await service.list_endpoints(user.organization_id)


@router.post("", response_model=WebhookEndpointRead, status_code=201)
async def create_webhook_endpoint(
    body: WebhookEndpointCreate,
    user: CurrentUser = Depends(get_current_user),
    service: Any = Depends(get_webhook_service),
) -> WebhookEndpointRead:
    """Register an endpoint. The response carries the signing secret."""
    return await service.create_endpoint(user.organization_id, user.id, body)


@router.get("/{endpoint_id}", response_model=WebhookEndpointRead)
async def get_webhook_endpoint(
    endpoint_id: uuid.UUID,
    user: CurrentUser = Depends(get_current_user),
    service: Any = Depends(get_webhook_service),
) -> WebhookEndpointRead:
    return await service.get_endpoint(user.organization_id, str(endpoint_id))


@router.put("/{endpoint_id}", response_model=WebhookEndpointRead)
async def update_webhook_endpoint(
    endpoint_id: uuid.UUID,
    body: WebhookEndpointUpdate,
    user: CurrentUser = Depends(get_current_user),
    service: Any = Depends(get_webhook_service),
) -> WebhookEndpointRead:
    return await service.update_endpoint(user.organization_id, str(endpoint_id), body)


@router.delete("/{endpoint_id}", status_code=204)
async def delete_webhook_endpoint(
    endpoint_id: uuid.UUID,
    user: CurrentUser = Depends(get_current_user),
    service: Any = Depends(get_webhook_service),
) -> None:
    await service.delete_endpoint(user.organization_id, str(endpoint_id))


@router.post("/{endpoint_id}/regenerate-secret", response_model=WebhookSecretRead)
async def regenerate_webhook_secret(
    endpoint_id: uuid.UUID,
    user: CurrentUser = Depends(get_current_user),
    service: Any = Depends(get_webhook_service),
) -> WebhookSecretRead:
    return await service.regenerate_secret(user.organization_id, str(endpoint_id))


@router.get("/{endpoint_id}/deliveries", response_model=list[WebhookDeliveryRead])
async def list_webhook_deliveries(
    endpoint_id: uuid.UUID,
    limit: int = Query(default=50, ge=1, le=200),
    user: CurrentUser = Depends(get_current_user),
    service: Any = Depends(get_webhook_service),
) -> list[WebhookDeliveryRead]:
    return await service.list_deliveries(user.organization_id, str(endpoint_id), limit)


@router.post("/{endpoint_id}/test", response_model=WebhookTestResult)
async def test_webhook_endpoint(
    endpoint_id: uuid.UUID,
    user: CurrentUser = Depends(get_current_user),
    service: Any = Depends(get_webhook_service),
) -> WebhookTestResult:
    """Send a signed test event to the endpoint and report the outcome."""
    return await service.test_endpoint(user.organization_id, str(endpoint_id))
