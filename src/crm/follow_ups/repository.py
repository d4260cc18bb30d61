"""Follow-up repository -- follow-ups, reminder notifications, and claims.

Every write that can change when (or whether) a reminder is due re-syncs the
follow-up's single notification row inside the same transaction.
"""

from __future__ import annotations

import math
import uuid
from datetime import date, datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import and_, case, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.crm.core.database import SessionFactory
from src.crm.core.timeutils import as_utc
from src.crm.follow_ups.schedule import END_OF_DAY, next_occurrence, reminder_time
from src.crm.follow_ups.schemas import (
    ClaimedFollowUpNotification,
    FollowUpComplete,
    FollowUpFilters,
    FollowUpNotificationRead,
    FollowUpRead,
    FollowUpStatus,
    FollowUpSummary,
    NotificationStatus,
    Pagination,
)
from src.crm.models.follow_ups import FollowUpModel, FollowUpNotificationModel
from src.crm.models.shared import User
from src.crm.scheduling.claims import claim_rows

logger = structlog.get_logger(__name__)

OPEN_NOTIFICATION_STATUSES = (NotificationStatus.PENDING.value, NotificationStatus.PROCESSING.value)


# ── Serialization Helpers ───────────────────────────────────────────────────


def _column_values(fields: dict[str, Any]) -> dict[str, Any]:
    values = dict(fields)
    for key in ("entity_id", "assigned_to"):
        if key in values:
            values[key] = uuid.UUID(values[key]) if values[key] else None
    return values


def _model_to_follow_up(model: FollowUpModel) -> FollowUpRead:
    return FollowUpRead(
        id=str(model.id),
        organization_id=str(model.organization_id),
        entity_type=model.entity_type,
        entity_id=str(model.entity_id),
        title=model.title,
        description=model.description,
        scheduled_date=model.scheduled_date,
        scheduled_time=model.scheduled_time,
        frequency=model.frequency,
        frequency_end_date=model.frequency_end_date,
        method=model.method,
        status=model.status,
        assigned_to=str(model.assigned_to) if model.assigned_to else None,
        reminder_minutes_before=model.reminder_minutes_before,
        completed_date=as_utc(model.completed_date),
        completed_notes=model.completed_notes,
        created_by=str(model.created_by) if model.created_by else None,
        modified_by=str(model.modified_by) if model.modified_by else None,
        created_at=as_utc(model.created_at),
        updated_at=as_utc(model.updated_at),
    )


def _model_to_notification(model: FollowUpNotificationModel) -> FollowUpNotificationRead:
    return FollowUpNotificationRead(
        id=str(model.id),
        follow_up_id=str(model.follow_up_id),
        scheduled_for=as_utc(model.scheduled_for),
        status=model.status,
        attempt_count=model.attempt_count,
        recipient_email=model.recipient_email,
        sent_at=as_utc(model.sent_at),
        error_message=model.error_message,
    )


def overdue_clause(now: datetime):
    """Scheduled follow-ups whose date/time (end of day if no time) has passed."""
    today = now.date()
    current_time = now.time().replace(tzinfo=None)
    same_day_passed = FollowUpModel.scheduled_time < current_time
    if current_time > END_OF_DAY:
        same_day_passed = or_(same_day_passed, FollowUpModel.scheduled_time.is_(None))
    return and_(
        FollowUpModel.status == FollowUpStatus.SCHEDULED.value,
        or_(
            FollowUpModel.scheduled_date < today,
            and_(FollowUpModel.scheduled_date == today, same_day_passed),
        ),
    )


_ORDERING = (
    FollowUpModel.scheduled_date.asc(),
    FollowUpModel.scheduled_time.asc().nulls_last(),
)


# ── Repository ──────────────────────────────────────────────────────────────


class FollowUpRepository:
    """Async persistence for follow-ups and follow-up notifications.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    # ── Queries ─────────────────────────────────────────────────────────────

    def _filter_conditions(self, organization_id: str, filters: FollowUpFilters, now: datetime):
        conditions = [FollowUpModel.organization_id == uuid.UUID(organization_id)]
        if filters.entity_type is not None:
            conditions.append(FollowUpModel.entity_type == filters.entity_type.value)
        if filters.entity_id:
            conditions.append(FollowUpModel.entity_id == uuid.UUID(filters.entity_id))
        if filters.status and filters.status != "overdue":
            conditions.append(FollowUpModel.status == filters.status)
        if filters.assigned_to:
            conditions.append(FollowUpModel.assigned_to == uuid.UUID(filters.assigned_to))
        if filters.date_from:
            conditions.append(FollowUpModel.scheduled_date >= filters.date_from)
        if filters.date_to:
            conditions.append(FollowUpModel.scheduled_date <= filters.date_to)
        if filters.status == "overdue" or filters.overdue_only:
            conditions.append(overdue_clause(now))
        return conditions

    async def list_follow_ups(
        self, organization_id: str, filters: FollowUpFilters, now: datetime
    ) -> tuple[list[FollowUpRead], Pagination]:
        conditions = self._filter_conditions(organization_id, filters, now)
        async for session in self._session_factory():
            total = (
                await session.execute(select(func.count(FollowUpModel.id)).where(*conditions))
            ).scalar_one()
            result = await session.execute(
                select(FollowUpModel)
                .where(*conditions)
                .order_by(*_ORDERING, FollowUpModel.created_at.desc())
                .limit(filters.limit)
                .offset((filters.page - 1) * filters.limit)
            )
            rows = [_model_to_follow_up(m) for m in result.scalars().all()]
            pagination = Pagination(
                page=filters.page,
                limit=filters.limit,
                total=total,
                pages=math.ceil(total / filters.limit),
            )
            return rows, pagination

    async def summary(
        self, organization_id: str, filters: FollowUpFilters, now: datetime
    ) -> FollowUpSummary:
        filters = filters.model_copy(update={"status": None, "overdue_only": False})
        conditions = self._filter_conditions(organization_id, filters, now)
        today = now.date()
        scheduled = FollowUpModel.status == FollowUpStatus.SCHEDULED.value

        def count_where(condition):
            return func.count(case((condition, FollowUpModel.id)))

        async for session in self._session_factory():
            row = (
                await session.execute(
                    select(
                        func.count(FollowUpModel.id),
                        count_where(scheduled),
                        count_where(FollowUpModel.status == FollowUpStatus.COMPLETED.value),
                        count_where(FollowUpModel.status == FollowUpStatus.CANCELLED.value),
                        count_where(overdue_clause(now)),
                        count_where(and_(scheduled, FollowUpModel.scheduled_date == today)),
                        count_where(
                            and_(
                                scheduled,
                                FollowUpModel.scheduled_date >= today,
                                FollowUpModel.scheduled_date <= today + timedelta(days=7),
                            )
                        ),
                    ).where(*conditions)
                )
            ).one()
            return FollowUpSummary(
                total=row[0],
                scheduled=row[1],
                completed=row[2],
                cancelled=row[3],
                overdue=row[4],
                due_today=row[5],
                due_this_week=row[6],
            )

    async def upcoming(self, organization_id: str, limit: int = 10) -> list[FollowUpRead]:
        async for session in self._session_factory():
            result = await session.execute(
                select(FollowUpModel)
                .where(
                    FollowUpModel.organization_id == uuid.UUID(organization_id),
                    FollowUpModel.status == FollowUpStatus.SCHEDULED.value,
                )
                .order_by(*_ORDERING)
                .limit(limit)
            )
            return [_model_to_follow_up(m) for m in result.scalars().all()]

    async def for_entity(
        self, organization_id: str, entity_type: str, entity_id: str
    ) -> list[FollowUpRead]:
        async for session in self._session_factory():
            result = await session.execute(
                select(FollowUpModel)
                .where(
                    FollowUpModel.organization_id == uuid.UUID(organization_id),
                    FollowUpModel.entity_type == entity_type,
                    FollowUpModel.entity_id == uuid.UUID(entity_id),
                )
                .order_by(*_ORDERING, FollowUpModel.created_at.desc())
            )
            return [_model_to_follow_up(m) for m in result.scalars().all()]

    async def get(self, organization_id: str, follow_up_id: str) -> FollowUpRead | None:
        async for session in self._session_factory():
            model = await self._load(session, organization_id, follow_up_id)
            return _model_to_follow_up(model) if model is not None else None

    async def get_by_id(self, follow_up_id: str) -> FollowUpRead | None:
        """Unscoped lookup for the reminder worker."""
        async for session in self._session_factory():
            model = await session.get(FollowUpModel, uuid.UUID(follow_up_id))
            return _model_to_follow_up(model) if model is not None else None

    async def get_notification(self, follow_up_id: str) -> FollowUpNotificationRead | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(FollowUpNotificationModel).where(
                    FollowUpNotificationModel.follow_up_id == uuid.UUID(follow_up_id)
                )
            )
            model = result.scalar_one_or_none()
            return _model_to_notification(model) if model is not None else None

    async def _load(
        self, session: AsyncSession, organization_id: str, follow_up_id: str
    ) -> FollowUpModel | None:
        result = await session.execute(
            select(FollowUpModel).where(
                FollowUpModel.id == uuid.UUID(follow_up_id),
                FollowUpModel.organization_id == uuid.UUID(organization_id),
            )
        )
        return result.scalar_one_or_none()

    # ── Notification Sync ───────────────────────────────────────────────────

    async def _remove_open_notification(self, session: AsyncSession, follow_up_id: uuid.UUID) -> None:
        await session.execute(
            delete(FollowUpNotificationModel).where(
                FollowUpNotificationModel.follow_up_id == follow_up_id,
                FollowUpNotificationModel.status.in_(OPEN_NOTIFICATION_STATUSES),
            )
        )

    async def _sync_notification(self, session: AsyncSession, follow_up: FollowUpModel) -> None:
        """Upsert or remove the reminder row so it matches ``follow_up``.

        Upserting resets the row to ``pending`` and clears any claim or error.
        """
        if (
            follow_up.status != FollowUpStatus.SCHEDULED.value
            or follow_up.reminder_minutes_before is None
        ):
            await self._remove_open_notification(session, follow_up.id)
            return

        scheduled_for = reminder_time(
            follow_up.scheduled_date, follow_up.scheduled_time, follow_up.reminder_minutes_before
        )
        recipient_email = None
        if follow_up.assigned_to is not None:
            assignee = await session.get(User, follow_up.assigned_to)
            recipient_email = assignee.email if assignee is not None else None

        result = await session.execute(
            select(FollowUpNotificationModel).where(
                FollowUpNotificationModel.follow_up_id == follow_up.id
            )
        )
        notification = result.scalar_one_or_none()
        if notification is None:
            session.add(
                FollowUpNotificationModel(
                    organization_id=follow_up.organization_id,
                    follow_up_id=follow_up.id,
                    scheduled_for=scheduled_for,
                    status=NotificationStatus.PENDING.value,
                    recipient_email=recipient_email,
                )
            )
            return

        notification.scheduled_for = scheduled_for
        notification.status = NotificationStatus.PENDING.value
        notification.processing_started_at = None
        notification.recipient_email = recipient_email
        notification.error_message = None

    # ── Writes ──────────────────────────────────────────────────────────────

    async def create(
        self, organization_id: str, user_id: str, fields: dict[str, Any]
    ) -> FollowUpRead:
        async for session in self._session_factory():
            model = FollowUpModel(
                organization_id=uuid.UUID(organization_id),
                status=FollowUpStatus.SCHEDULED.value,
                created_by=uuid.UUID(user_id),
                modified_by=uuid.UUID(user_id),
                **_column_values(fields),
            )
            session.add(model)
            await session.flush()
            await self._sync_notification(session, model)
            await session.commit()
            await session.refresh(model)
            return _model_to_follow_up(model)

    async def update(
        self,
        organization_id: str,
        follow_up_id: str,
        user_id: str,
        fields: dict[str, Any],
        now: datetime,
    ) -> FollowUpRead | None:
        async for session in self._session_factory():
            model = await self._load(session, organization_id, follow_up_id)
            if model is None:
                return None
            for key, value in _column_values(fields).items():
                setattr(model, key, value)
            model.modified_by = uuid.UUID(user_id)
            model.updated_at = now
            await self._sync_notification(session, model)
            await session.commit()
            await session.refresh(model)
            return _model_to_follow_up(model)

    async def reschedule(
        self,
        organization_id: str,
        follow_up_id: str,
        user_id: str,
        scheduled_date: date,
        scheduled_time,
        now: datetime,
    ) -> FollowUpRead | None:
        return await self.update(
            organization_id,
            follow_up_id,
            user_id,
            {
                "scheduled_date": scheduled_date,
                "scheduled_time": scheduled_time,
                "status": FollowUpStatus.SCHEDULED.value,
                "completed_date": None,
                "completed_notes": None,
            },
            now,
        )

    async def cancel(
        self, organization_id: str, follow_up_id: str, user_id: str, now: datetime
    ) -> FollowUpRead | None:
        return await self.update(
            organization_id,
            follow_up_id,
            user_id,
            {"status": FollowUpStatus.CANCELLED.value},
            now,
        )

    async def complete(
        self,
        organization_id: str,
        follow_up_id: str,
        user_id: str,
        data: FollowUpComplete,
        now: datetime,
    ) -> tuple[FollowUpRead, FollowUpRead | None] | None:
        """Complete a follow-up and create its next occurrence in one transaction.

        Returns (completed, next occurrence or None), or None when not found.
        """
        async for session in self._session_factory():
            current = await self._load(session, organization_id, follow_up_id)
            if current is None:
                return None

            current.status = FollowUpStatus.COMPLETED.value
            current.completed_date = now
            current.completed_notes = data.completed_notes
            current.modified_by = uuid.UUID(user_id)
            current.updated_at = now
            await self._remove_open_notification(session, current.id)

            next_date = next_occurrence(
                current.scheduled_date,
                current.frequency,
                current.frequency_end_date,
                data.schedule_next,
                data.next_scheduled_date,
            )
            following = None
            if next_date is not None:
                following = FollowUpModel(
                    organization_id=current.organization_id,
                    entity_type=current.entity_type,
                    entity_id=current.entity_id,
                    title=current.title,
                    description=current.description,
                    scheduled_date=next_date,
                    scheduled_time=current.scheduled_time,
                    frequency=current.frequency,
                    frequency_end_date=current.frequency_end_date,
                    method=current.method,
                    status=FollowUpStatus.SCHEDULED.value,
                    assigned_to=current.assigned_to,
                    reminder_minutes_before=current.reminder_minutes_before,
                    created_by=uuid.UUID(user_id),
                    modified_by=uuid.UUID(user_id),
                )
                session.add(following)
                await session.flush()
                await self._sync_notification(session, following)

            await session.commit()
            await session.refresh(current)
            completed = _model_to_follow_up(current)
            if following is None:
                return completed, None
            await session.refresh(following)
            return completed, _model_to_follow_up(following)

    async def delete(self, organization_id: str, follow_up_id: str) -> bool:
        async for session in self._session_factory():
            model = await self._load(session, organization_id, follow_up_id)
            if model is None:
                return False
            await session.execute(
                delete(FollowUpNotificationModel).where(
                    FollowUpNotificationModel.follow_up_id == model.id
                )
            )
            await session.delete(model)
            await session.commit()
            return True

    # ── Worker Claims ───────────────────────────────────────────────────────

    async def claim_due_notifications(
        self, limit: int, now: datetime, stale_after: timedelta
    ) -> list[ClaimedFollowUpNotification]:
        """Claim pending (or stale processing) notifications due at ``now``."""
        model_cls = FollowUpNotificationModel
        claim_guard = and_(
            model_cls.scheduled_for <= now,
            or_(
                model_cls.status == NotificationStatus.PENDING.value,
                and_(
                    model_cls.status == NotificationStatus.PROCESSING.value,
                    model_cls.processing_started_at < now - stale_after,
                ),
            ),
        )

        async for session in self._session_factory():
            candidate_ids = list(
                (
                    await session.execute(
                        select(model_cls.id)
                        .where(claim_guard)
                        .order_by(model_cls.scheduled_for)
                        .limit(limit)
                        .with_for_update(skip_locked=True)
                    )
                ).scalars().all()
            )
            if not candidate_ids:
                await session.rollback()
                return []

            claimed_ids = await claim_rows(
                session,
                model_cls,
                candidate_ids,
                guard=claim_guard,
                values={
                    "status": NotificationStatus.PROCESSING.value,
                    "processing_started_at": now,
                    "attempt_count": model_cls.attempt_count + 1,
                    "updated_at": now,
                },
            )
            if not claimed_ids:
                return []

            result = await session.execute(
                select(model_cls)
                .where(model_cls.id.in_(claimed_ids))
                .order_by(model_cls.scheduled_for)
                .execution_options(populate_existing=True)
            )
            claimed = [
                ClaimedFollowUpNotification(
                    id=str(model.id),
                    follow_up_id=str(model.follow_up_id),
                    organization_id=str(model.organization_id),
                    recipient_email=model.recipient_email,
                    attempt_count=model.attempt_count,
                )
                for model in result.scalars().all()
            ]

        logger.info("follow_ups.notifications_claimed", count=len(claimed))
        return claimed

    async def mark_notification_result(
        self,
        notification_id: str,
        status: NotificationStatus,
        error_message: str | None,
        now: datetime,
    ) -> None:
        values: dict[str, Any] = {
            "status": status.value,
            "processing_started_at": None,
            "error_message": error_message,
            "updated_at": now,
        }
        if status in (NotificationStatus.SENT, NotificationStatus.SKIPPED):
            values["sent_at"] = now
        async for session in self._session_factory():
            await session.execute(
                update(FollowUpNotificationModel)
                .where(FollowUpNotificationModel.id == uuid.UUID(notification_id))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
