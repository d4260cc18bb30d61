"""REST API endpoints for scheduled report delivery."""

from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Depends, Query

from src.crm.api.deps import CurrentUser, get_current_user, get_scheduled_report_service
from src.crm.reports.schemas import (
    ScheduledReportCreate,
    ScheduledReportRead,
    ScheduledReportRunRead,
    ScheduledReportToggle,
    ScheduledReportUpdate,
)

router = APIRouter(prefix="/scheduled-reports", tags=["scheduled-reports"])


@router.get("", response_model=list[ScheduledReportRead])
async def list_scheduled_reports(
    user: CurrentUser = Depends(get_current_user),
    service: Any = Depends(get_scheduled_report_service),
) -> list[ScheduledReportRead]:
    return await service.list_reports(user.organization_id)


@router.post("", response_model=ScheduledReportRead, status_code=201)
async def create_scheduled_report(
    body: ScheduledReportCreate,
    user: CurrentUser = Depends(get_current_user),
    service: Any = Depends(get_scheduled_report_service),
) -> ScheduledReportRead:
    """Schedule delivery of a saved report the caller can access."""
    return await service.create(user.organization_id, user.id, body)


@router.get("/{report_id}", response_model=ScheduledReportRead)
async def get_scheduled_report(
    report_id: uuid.UUID,
    user: CurrentUser = Depends(get_current_user),
    service: Any = Depends(get_scheduled_report_service),
) -> ScheduledReportRead:
    return await service.get(user.organization_id, str(report_id))


@router.put("/{report_id}", response_model=ScheduledReportRead)
async def update_scheduled_report(
    report_id: uuid.UUID,
    body: ScheduledReportUpdate,
    user: CurrentUser = Depends(get_current_user),
    service: Any = Depends(get_scheduled_report_service),
) -> ScheduledReportRead:
    return await service.update(user.organization_id, str(report_id), user.id, body)


@router.patch("/{report_id}/toggle", response_model=ScheduledReportRead)
async def toggle_scheduled_report(
    report_id: uuid.UUID,
    body: ScheduledReportToggle | None = None,
    user: CurrentUser = Depends(get_current_user),
    service: Any = Depends(get_scheduled_report_service),
) -> ScheduledReportRead:
    """Set ``is_active``, or flip it when the body omits it."""
    is_active = body.is_active if body is not None else None
    return await service.toggle(user.organization_id, str(report_id), user.id, is_active)


@router.delete("/{report_id}", status_code=204)
async def delete_scheduled_report(
    report_id: uuid.UUID,
    user: CurrentUser = Depends(get_current_user),
    service: Any = Depends(get_scheduled_report_service),
) -> None:
    await service.delete(user.organization_id, str(report_id))


@router.get("/{report_id}/runs", response_model=list[ScheduledReportRunRead])
async def list_scheduled_report_runs(
    report_id: uuid.UUID,
    limit: int = Query(default=20, ge=1, le=100),
    user: CurrentUser = Depends(get_current_user),
    service: Any = Depends(get_scheduled_report_service),
) -> list[ScheduledReportRunRead]:
    return await service.list_runs(user.organization_id, str(report_id), limit)


@router.post("/{report_id}/run-now")
async def run_scheduled_report_now(
    report_id: uuid.UUID,
    user: CurrentUser = Depends(get_current_user),
    service: Any = Depends(get_scheduled_report_service),
) -> dict[str, Any]:
    """Generate and deliver the report immediately; the schedule still advances."""
    return await service.run_now(user.organization_id, str(report_id))
