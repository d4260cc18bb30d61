"""Follow-up scheduling: CRUD, completion with recurrence, and summaries."""

from __future__ import annotations

from typing import Any

import structlog

from src.crm.core.errors import NotFoundError, ValidationError
from src.crm.core.timeutils import utcnow
from src.crm.follow_ups.repository import FollowUpRepository
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

logger = structlog.get_logger(__name__)

NOT_FOUND = "Follow-up not found"


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


class FollowUpService:
    """Organization-scoped follow-up operations."""

    def __init__(self, repository: FollowUpRepository) -> None:
        self._repo = repository

    async def list_follow_ups(self, organization_id: str, filters: FollowUpFilters) -> FollowUpPage:
        data, pagination = await self._repo.list_follow_ups(organization_id, filters, utcnow())
        return FollowUpPage(data=data, pagination=pagination)

    async def summary(self, organization_id: str, filters: FollowUpFilters) -> FollowUpSummary:
        return await self._repo.summary(organization_id, filters, utcnow())

    async def upcoming(self, organization_id: str, limit: int = 10) -> list[FollowUpRead]:
        return await self._repo.upcoming(organization_id, limit)

    async def for_entity(
        self, organization_id: str, entity_type: FollowUpEntityType, entity_id: str
    ) -> list[FollowUpRead]:
        return await self._repo.for_entity(organization_id, entity_type.value, entity_id)

    async def get(self, organization_id: str, follow_up_id: str) -> FollowUpRead:
        follow_up = await self._repo.get(organization_id, follow_up_id)
        if follow_up is None:
            raise NotFoundError(NOT_FOUND)
        return follow_up

    async def create(
        self, organization_id: str, user_id: str, data: FollowUpCreate
    ) -> FollowUpRead:
        if data.frequency_end_date is not None and data.frequency_end_date < data.scheduled_date:
            raise ValidationError("frequency_end_date must not be before scheduled_date")
        fields = {key: _enum_value(value) for key, value in data.model_dump().items()}
        follow_up = await self._repo.create(organization_id, user_id, fields)
        logger.info(
            "follow_ups.created",
            follow_up_id=follow_up.id,
            entity_type=follow_up.entity_type.value,
            frequency=follow_up.frequency.value,
        )
        return follow_up

    async def update(
        self, organization_id: str, follow_up_id: str, user_id: str, data: FollowUpUpdate
    ) -> FollowUpRead:
        fields = {
            key: _enum_value(value)
            for key, value in data.model_dump(exclude_unset=True).items()
        }
        if not fields:
            return await self.get(organization_id, follow_up_id)
        follow_up = await self._repo.update(organization_id, follow_up_id, user_id, fields, utcnow())
        if follow_up is None:
            raise NotFoundError(NOT_FOUND)
        return follow_up

    async def complete(
        self, organization_id: str, follow_up_id: str, user_id: str, data: FollowUpComplete
    ) -> FollowUpRead:
        result = await self._repo.complete(organization_id, follow_up_id, user_id, data, utcnow())
        if result is None:
            raise NotFoundError(NOT_FOUND)
        completed, following = result
        logger.info(
            "follow_ups.completed",
            follow_up_id=completed.id,
            next_follow_up_id=following.id if following else None,
        )
        return completed

    async def cancel(self, organization_id: str, follow_up_id: str, user_id: str) -> FollowUpRead:
        follow_up = await self._repo.cancel(organization_id, follow_up_id, user_id, utcnow())
        if follow_up is None:
            raise NotFoundError(NOT_FOUND)
        return follow_up

    async def reschedule(
        self, organization_id: str, follow_up_id: str, user_id: str, data: FollowUpReschedule
    ) -> FollowUpRead:
        follow_up = await self._repo.reschedule(
            organization_id,
            follow_up_id,
            user_id,
            data.scheduled_date,
            data.scheduled_time,
            utcnow(),
        )
        if follow_up is None:
            raise NotFoundError(NOT_FOUND)
        return follow_up

    async def delete(self, organization_id: str, follow_up_id: str) -> None:
        if not await self._repo.delete(organization_id, follow_up_id):
            raise NotFoundError(NOT_FOUND)
