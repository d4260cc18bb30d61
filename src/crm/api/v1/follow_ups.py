"""REST API endpoints for follow-up scheduling."""

from __future__ import annotations

import uuid
from datetime import date
from typing import Any

from fastapi import APIRouter, Depends, Query

from src.crm.api.deps import CurrentUser, get_current_user, get_follow_up_service
from src.crm.follow_ups.schemas import (
    FollowUpComplete,
    FollowUpCreate,
    FollowUpEntityType,
    FollowUpFilters,
    FollowUpPage,
    FollowUpRead,
    FollowUpReschedule,
    FollowUpSummary,
    FollowUpUpdate,
)

router = APIRouter(prefix="/follow-ups", tags=["follow-ups"])


def _filters(
    entity_type: FollowUpEntityType | None = None,
    entity_id: uuid.UUID | None = None,
    status: str | None = None,
    assigned_to: uuid.UUID | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    overdue_only: bool = False,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
) -> FollowUpFilters:
    return FollowUpFilters(
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id else None,
        status=status,
        assigned_to=str(assigned_to) if assigned_to else None,
        date_from=date_from,
        date_to=date_to,
        overdue_only=overdue_only,
        page=page,
        limit=limit,
    )


@router.get("", response_model=FollowUpPage)
async def list_follow_ups(
    filters: FollowUpFilters = Depends(_filters),
    user: CurrentUser = Depends(get_current_user),
    service: Any = Depends(get_follow_up_service),
) -> FollowUpPage:
    return await service.list_follow_ups(user.organization_id, filters)


@router.get("/summary", response_model=FollowUpSummary)
async def follow_up_summary(
    filters: FollowUpFilters = Depends(_filters),
    user: CurrentUser = Depends(get_current_user),
    service: Any = Depends(get_follow_up_service),
) -> FollowUpSummary:
    """Counts by status and by due-date window."""
    return await service.summary(user.organization_id, filters)


@router.get("/upcoming", response_model=list[FollowUpRead])
async def upcoming_follow_ups(
    limit: int = Query(default=10, ge=1, le=100),
    user: CurrentUser = Depends(get_current_user),
    service: Any = Depends(get_follow_up_service),
) -> list[FollowUpRead]:
    return await service.upcoming(user.organization_id, limit)


@router.get("/entity/{entity_type}/{entity_id}", response_model=list[FollowUpRead])
async def follow_ups_for_entity(
    entity_type: FollowUpEntityType,
    entity_id: uuid.UUID,
    user: CurrentUser = Depends(get_current_user),
    service: Any = Depends(get_follow_up_service),
) -> list[FollowUpRead]:
    return await service.for_entity(user.organization_id, entity_type, str(entity_id))


@router.post("", response_model=FollowUpRead, status_code=201)
async def create_follow_up(
    body: FollowUpCreate,
    user: CurrentUser = Depends(get_current_user),
    service: Any = Depends(get_follow_up_service),
) -> FollowUpRead:
    return await service.create(user.organization_id, user.id, body)


@router.get("/{follow_up_id}", response_model=FollowUpRead)
async def get_follow_up(
    follow_up_id: uuid.UUID,
    user: CurrentUser = Depends(get_current_user),
    service: Any = Depends(get_follow_up_service),
) -> FollowUpRead:
    return await service.get(user.organization_id, str(follow_up_id))


@router.put("/{follow_up_id}", response_model=FollowUpRead)
async def update_follow_up(
    follow_up_id: uuid.UUID,
    body: FollowUpUpdate,
    user: CurrentUser = Depends(get_current_user),
    service: Any = Depends(get_follow_up_service),
) -> FollowUpRead:
    return await service.update(user.organization_id, str(follow_up_id), user.id, body)


@router.post("/{follow_up_id}/complete", response_model=FollowUpRead)
async def complete_follow_up(
    follow_up_id: uuid.UUID,
    body: FollowUpComplete,
    user: CurrentUser = Depends(get_current_user),
    service: Any = Depends(get_follow_up_service),
) -> FollowUpRead:
    """Complete a follow-up; recurring ones schedule their next occurrence."""
    return await service.complete(user.organization_id, str(follow_up_id), user.id, body)


@router.post("/{follow_up_id}/cancel", response_model=FollowUpRead)
async def cancel_follow_up(
    follow_up_id: uuid.UUID,
    user: CurrentUser = Depends(get_current_user),
    service: Any = Depends(get_follow_up_service),
) -> FollowUpRead:
    return await service.cancel(user.organization_id, str(follow_up_id), user.id)


@router.post("/{follow_up_id}/reschedule", response_model=FollowUpRead)
async def reschedule_follow_up(
    follow_up_id: uuid.UUID,
    body: FollowUpReschedule,
    user: CurrentUser = Depends(get_current_user),
    service: Any = Depends(get_follow_up_service),
) -> FollowUpRead:
    return await service.reschedule(user.organization_id, str(follow_up_id), user.id, body)


@router.delete("/{follow_up_id}", status_code=204)
async def delete_follow_up(
    follow_up_id: uuid.UUID,
    user: CurrentUser = Depends(get_current_user),
    service: Any = Depends(get_follow_up_service),
) -> None:
    await service.delete(user.organization_id, str(follow_up_id))
