"""Event reminder repository -- automations, recipients, delivery log, and claims.

Uses the session_factory callable pattern: each method opens one session,
does its work, and returns Pydantic read schemas (never ORM instances).
Datetimes read back from the database are normalized to UTC.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import and_, select, update

from src.crm.core.database import SessionFactory
from src.crm.core.timeutils import as_utc
from src.crm.events.schemas import (
    AttemptResult,
    ClaimedReminderAutomation,
    EventReminderAutomationRead,
    EventSummary,
    ReminderAttemptStatus,
    ReminderDeliveryCreate,
    ReminderRecipient,
    ReminderTimingType,
)
from src.crm.models.events import (
    EventModel,
    EventRegistrationModel,
    EventReminderAutomationModel,
    EventReminderDeliveryModel,
)
from src.crm.models.shared import Contact
from src.crm.scheduling.claims import claim_rows, claimable

logger = structlog.get_logger(__name__)

CLOSED_EVENT_STATUSES = ("cancelled", "completed")
INACTIVE_REGISTRATION_STATUSES = ("cancelled", "waitlisted", "no_show")


# ── Serialization Helpers ───────────────────────────────────────────────────


def _str_or_none(value: uuid.UUID | None) -> str | None:
    return str(value) if value is not None else None


def _model_to_automation(model: EventReminderAutomationModel) -> EventReminderAutomationRead:
    return EventReminderAutomationRead(
        id=str(model.id),
        event_id=str(model.event_id),
        timing_type=model.timing_type,
        relative_minutes_before=model.relative_minutes_before,
        absolute_send_at=as_utc(model.absolute_send_at),
        send_email=model.send_email,
        send_sms=model.send_sms,
        custom_message=model.custom_message,
        timezone=model.timezone,
        is_active=model.is_active,
        due_at=as_utc(model.due_at),
        processing_started_at=as_utc(model.processing_started_at),
        attempted_at=as_utc(model.attempted_at),
        attempt_status=model.attempt_status,
        attempt_summary=model.attempt_summary,
        last_error=model.last_error,
        created_by=_str_or_none(model.created_by),
        modified_by=_str_or_none(model.modified_by),
        created_at=as_utc(model.created_at),
        updated_at=as_utc(model.updated_at),
    )


def _model_to_event(model: EventModel) -> EventSummary:
    return EventSummary(
        id=str(model.id),
        organization_id=str(model.organization_id),
        name=model.name,
        start_date=as_utc(model.start_date),
        end_date=as_utc(model.end_date),
        location_name=model.location_name,
        status=model.status,
    )


def compute_due_at(
    timing_type: str,
    relative_minutes_before: int | None,
    absolute_send_at: datetime | None,
    event_start: datetime,
) -> datetime | None:
    """When an automation should fire; None if its timing fields are unusable."""
    if timing_type == ReminderTimingType.ABSOLUTE.value:
        return as_utc(absolute_send_at)
    if relative_minutes_before and relative_minutes_before > 0:
        return as_utc(event_start) - timedelta(minutes=relative_minutes_before)
    return None


def _scheduled_due_at(model: EventReminderAutomationModel, event_start: datetime) -> datetime | None:
    return compute_due_at(
        model.timing_type, model.relative_minutes_before, model.absolute_send_at, event_start
    )


# ── Repository ──────────────────────────────────────────────────────────────


class EventReminderRepository:
    """Async persistence for event reminder automations and their deliveries.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    # ── Events & Recipients ─────────────────────────────────────────────────

    async def get_event(self, organization_id: str, event_id: str) -> EventSummary | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(EventModel).where(
                    EventModel.id == uuid.UUID(event_id),
                    EventModel.organization_id == uuid.UUID(organization_id),
                )
            )
            model = result.scalar_one_or_none()
            return _model_to_event(model) if model is not None else None

    async def get_event_by_id(self, event_id: str) -> EventSummary | None:
        """Unscoped lookup for background workers."""
        async for session in self._session_factory():
            model = await session.get(EventModel, uuid.UUID(event_id))
            return _model_to_event(model) if model is not None else None

    async def list_recipients(self, event_id: str) -> list[ReminderRecipient]:
        """Active registrants of an event with their current contact preferences."""
        async for session in self._session_factory():
            stmt = (
                select(EventRegistrationModel, Contact)
                .join(Contact, Contact.id == EventRegistrationModel.contact_id)
                .where(
                    EventRegistrationModel.event_id == uuid.UUID(event_id),
                    EventRegistrationModel.registration_status.notin_(
                        INACTIVE_REGISTRATION_STATUSES
                    ),
                )
                .order_by(EventRegistrationModel.created_at)
            )
            result = await session.execute(stmt)
            return [
                ReminderRecipient(
                    registration_id=str(registration.id),
                    contact_id=str(contact.id),
                    name=contact.full_name,
                    email=contact.email,
                    phone=contact.mobile_phone or contact.phone,
                    do_not_email=bool(contact.do_not_email),
                    do_not_text=bool(contact.do_not_text),
                )
                for registration, contact in result.all()
            ]

    async def record_deliveries(self, deliveries: list[ReminderDeliveryCreate]) -> None:
        if not deliveries:
            return
        async for session in self._session_factory():
            for item in deliveries:
                session.add(
                    EventReminderDeliveryModel(
                        event_id=uuid.UUID(item.event_id),
                        registration_id=uuid.UUID(item.registration_id),
                        channel=item.channel,
                        recipient=item.recipient,
                        delivery_status=item.delivery_status,
                        error_message=item.error_message,
                        message_preview=item.message_preview,
                        trigger_type=item.trigger_type.value,
                        automation_id=uuid.UUID(item.automation_id) if item.automation_id else None,
                        sent_by=uuid.UUID(item.sent_by) if item.sent_by else None,
                    )
                )
            await session.commit()

    # ── Automations ─────────────────────────────────────────────────────────

    async def list_automations(self, event_id: str) -> list[EventReminderAutomationRead]:
        async for session in self._session_factory():
            result = await session.execute(
                select(EventReminderAutomationModel)
                .where(EventReminderAutomationModel.event_id == uuid.UUID(event_id))
                .order_by(EventReminderAutomationModel.created_at)
            )
            return [_model_to_automation(m) for m in result.scalars().all()]

    async def get_automation(
        self, event_id: str, automation_id: str
    ) -> EventReminderAutomationRead | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(EventReminderAutomationModel).where(
                    EventReminderAutomationModel.id == uuid.UUID(automation_id),
                    EventReminderAutomationModel.event_id == uuid.UUID(event_id),
                )
            )
            model = result.scalar_one_or_none()
            return _model_to_automation(model) if model is not None else None

    async def create_automation(
        self, event_id: str, fields: dict[str, Any], user_id: str
    ) -> EventReminderAutomationRead:
        """Insert an active automation from already-normalized ``fields``."""
        async for session in self._session_factory():
            event = await session.get(EventModel, uuid.UUID(event_id))
            model = EventReminderAutomationModel(
                event_id=uuid.UUID(event_id),
                is_active=True,
                created_by=uuid.UUID(user_id),
                modified_by=uuid.UUID(user_id),
                **fields,
            )
            model.due_at = _scheduled_due_at(model, event.start_date)
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_automation(model)

    async def update_automation(
        self,
        event_id: str,
        automation_id: str,
        fields: dict[str, Any],
        user_id: str,
        now: datetime,
    ) -> EventReminderAutomationRead | None:
        """Apply ``fields`` unless the automation was attempted meanwhile."""
        return await self._update_unattempted(
            event_id,
            automation_id,
            {**fields, "modified_by": uuid.UUID(user_id), "updated_at": now},
        )

    async def cancel_automation(
        self, event_id: str, automation_id: str, user_id: str, now: datetime
    ) -> EventReminderAutomationRead | None:
        return await self._update_unattempted(
            event_id,
            automation_id,
            {
                "is_active": False,
                "attempt_status": ReminderAttemptStatus.CANCELLED.value,
                "modified_by": uuid.UUID(user_id),
                "updated_at": now,
            },
        )

    async def _update_unattempted(
        self, event_id: str, automation_id: str, values: dict[str, Any]
    ) -> EventReminderAutomationRead | None:
        model_cls = EventReminderAutomationModel
        async for session in self._session_factory():
            result = await session.execute(
                update(model_cls)
                .where(
                    model_cls.id == uuid.UUID(automation_id),
                    model_cls.event_id == uuid.UUID(event_id),
                    model_cls.attempted_at.is_(None),
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                return None
            model = await session.get(model_cls, uuid.UUID(automation_id), populate_existing=True)
            event = await session.get(EventModel, model.event_id)
            model.due_at = _scheduled_due_at(model, event.start_date)
            await session.commit()
            await session.refresh(model)
            return _model_to_automation(model)

    async def cancel_pending(self, event_id: str, user_id: str, now: datetime) -> int:
        """Cancel every still-pending automation of an event; returns the count."""
        model_cls = EventReminderAutomationModel
        async for session in self._session_factory():
            result = await session.execute(
                update(model_cls)
                .where(
                    model_cls.event_id == uuid.UUID(event_id),
                    model_cls.attempted_at.is_(None),
                    model_cls.is_active.is_(True),
                )
                .values(
                    is_active=False,
                    attempt_status=ReminderAttemptStatus.CANCELLED.value,
                    modified_by=uuid.UUID(user_id),
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount

    async def refresh_due_times(self, event_id: str) -> int:
        """Recompute ``due_at`` of an event's pending automations from its current start."""
        model_cls = EventReminderAutomationModel
        async for session in self._session_factory():
            event = await session.get(EventModel, uuid.UUID(event_id))
            if event is None:
                return 0
            result = await session.execute(
                select(model_cls).where(
                    model_cls.event_id == event.id,
                    model_cls.attempted_at.is_(None),
                    model_cls.is_active.is_(True),
                )
            )
            pending = result.scalars().all()
            for model in pending:
                model.due_at = _scheduled_due_at(model, event.start_date)
            await session.commit()
            return len(pending)

    # ── Worker Claims ───────────────────────────────────────────────────────

    async def claim_due(
        self, limit: int, now: datetime, stale_after: timedelta
    ) -> list[ClaimedReminderAutomation]:
        """Claim up to ``limit`` due automations, earliest due time first.

        Due means: active, never attempted, not claimed (or claim is stale),
        the event is neither cancelled nor completed and has not started, and
        the stored ``due_at`` is at or before ``now``. Only those rows are
        selected and locked. A candidate whose due time no longer matches its
        event's start is corrected instead of claimed.
        """
        model_cls = EventReminderAutomationModel
        stale_before = now - stale_after
        claim_guard = and_(
            model_cls.is_active.is_(True),
            model_cls.attempted_at.is_(None),
            claimable(model_cls.processing_started_at, stale_before),
        )

        async for session in self._session_factory():
            stmt = (
                select(
                    model_cls.id,
                    model_cls.timing_type,
                    model_cls.relative_minutes_before,
                    model_cls.absolute_send_at,
                    EventModel.start_date,
                )
                .join(EventModel, EventModel.id == model_cls.event_id)
                .where(
                    claim_guard,
                    EventModel.status.notin_(CLOSED_EVENT_STATUSES),
                    EventModel.start_date > now,
                    model_cls.due_at <= now,
                )
                .order_by(model_cls.due_at)
                .limit(limit)
                .with_for_update(of=model_cls, skip_locked=True)
            )
            rows = (await session.execute(stmt)).all()

            due: list[tuple[datetime, uuid.UUID]] = []
            moved = 0
            for row in rows:
                due_at = compute_due_at(
                    row.timing_type, row.relative_minutes_before, row.absolute_send_at, row.start_date
                )
                if due_at is not None and due_at <= now:
                    due.append((due_at, row.id))
                    continue
                # The event start moved after the due time was stored
                await session.execute(
                    update(model_cls)
                    .where(model_cls.id == row.id)
                    .values(due_at=due_at)
                    .execution_options(synchronize_session=False)
                )
                moved += 1
            if moved:
                logger.info("event_reminders.due_times_corrected", count=moved)
            if not due:
                await session.commit()
                return []

            claimed_ids = await claim_rows(
                session,
                model_cls,
                [row_id for _, row_id in due],
                guard=claim_guard,
                values={"processing_started_at": now, "updated_at": now},
            )
            if not claimed_ids:
                return []

            result = await session.execute(
                select(model_cls, EventModel.start_date, EventModel.status)
                .join(EventModel, EventModel.id == model_cls.event_id)
                .where(model_cls.id.in_(claimed_ids))
                .execution_options(populate_existing=True)
            )
            by_id = {model.id: (model, start, status) for model, start, status in result.all()}

        claimed: list[ClaimedReminderAutomation] = []
        for due_at, row_id in due:
            if row_id not in by_id:
                continue
            model, start_date, event_status = by_id[row_id]
            claimed.append(
                ClaimedReminderAutomation(
                    **_model_to_automation(model).model_dump(exclude={"due_at"}),
                    due_at=due_at,
                    event_start_date=as_utc(start_date),
                    event_status=event_status,
                )
            )

        if claimed:
            logger.info("event_reminders.claimed", count=len(claimed))
        return claimed

    async def mark_attempt_result(
        self, automation_id: str, result: AttemptResult, now: datetime
    ) -> None:
        """Record the single attempt, deactivate the automation, release the claim."""
        async for session in self._session_factory():
            await session.execute(
                update(EventReminderAutomationModel)
                .where(EventReminderAutomationModel.id == uuid.UUID(automation_id))
                .values(
                    attempted_at=now,
                    attempt_status=result.status.value,
                    attempt_summary=result.summary,
                    last_error=result.error,
                    processing_started_at=None,
                    is_active=False,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
