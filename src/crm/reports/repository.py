"""Scheduled report repository -- saved report lookup, schedules, runs, claims."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.crm.core.database import SessionFactory
from src.crm.core.timeutils import as_utc
from src.crm.models.reports import (
    SavedReportModel,
    ScheduledReportModel,
    ScheduledReportRunModel,
)
from src.crm.reports.schemas import (
    RunStatus,
    SavedReportRead,
    ScheduledReportRead,
    ScheduledReportRunRead,
)
from src.crm.scheduling.claims import claim_rows, claimable

logger = structlog.get_logger(__name__)


def _model_to_saved_report(model: SavedReportModel) -> SavedReportRead:
    return SavedReportRead(
        id=str(model.id),
        organization_id=str(model.organization_id),
        name=model.name,
        entity=model.entity,
        report_definition=model.report_definition or {},
        is_public=bool(model.is_public),
        created_by=str(model.created_by) if model.created_by else None,
    )


def _model_to_scheduled(model: ScheduledReportModel) -> ScheduledReportRead:
    return ScheduledReportRead(
        id=str(model.id),
        organization_id=str(model.organization_id),
        saved_report_id=str(model.saved_report_id),
        name=model.name,
        recipients=list(model.recipients or []),
        format=model.format,
        frequency=model.frequency,
        timezone=model.timezone,
        hour=model.hour,
        minute=model.minute,
        day_of_week=model.day_of_week,
        day_of_month=model.day_of_month,
        is_active=model.is_active,
        next_run_at=as_utc(model.next_run_at),
        last_run_at=as_utc(model.last_run_at),
        processing_started_at=as_utc(model.processing_started_at),
        last_error=model.last_error,
        created_by=str(model.created_by) if model.created_by else None,
        modified_by=str(model.modified_by) if model.modified_by else None,
        created_at=as_utc(model.created_at),
        updated_at=as_utc(model.updated_at),
    )


def _model_to_run(model: ScheduledReportRunModel) -> ScheduledReportRunRead:
    return ScheduledReportRunRead(
        id=str(model.id),
        scheduled_report_id=str(model.scheduled_report_id),
        status=model.status,
        recipients=list(model.recipients or []),
        rows_count=model.rows_count,
        file_format=model.file_format,
        file_name=model.file_name,
        error_message=model.error_message,
        metadata=model.run_metadata or {},
        started_at=as_utc(model.started_at),
        completed_at=as_utc(model.completed_at),
        created_at=as_utc(model.created_at),
    )


class ScheduledReportRepository:
    """Async persistence for scheduled report delivery.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    # ── Saved Reports ───────────────────────────────────────────────────────

    async def get_accessible_saved_report(
        self, organization_id: str, saved_report_id: str, user_id: str
    ) -> SavedReportRead | None:
        """A saved report the user created, or one shared with the organization."""
        async for session in self._session_factory():
            result = await session.execute(
                select(SavedReportModel).where(
                    SavedReportModel.id == uuid.UUID(saved_report_id),
                    SavedReportModel.organization_id == uuid.UUID(organization_id),
                    or_(
                        SavedReportModel.created_by == uuid.UUID(user_id),
                        SavedReportModel.is_public.is_(True),
                    ),
                )
            )
            model = result.scalar_one_or_none()
            return _model_to_saved_report(model) if model is not None else None

    async def get_saved_report(
        self, organization_id: str, saved_report_id: str
    ) -> SavedReportRead | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(SavedReportModel).where(
                    SavedReportModel.id == uuid.UUID(saved_report_id),
                    SavedReportModel.organization_id == uuid.UUID(organization_id),
                )
            )
            model = result.scalar_one_or_none()
            return _model_to_saved_report(model) if model is not None else None

    # ── Schedules ───────────────────────────────────────────────────────────

    async def list_reports(self, organization_id: str) -> list[ScheduledReportRead]:
        async for session in self._session_factory():
            result = await session.execute(
                select(ScheduledReportModel)
                .where(ScheduledReportModel.organization_id == uuid.UUID(organization_id))
                .order_by(ScheduledReportModel.created_at.desc())
            )
            return [_model_to_scheduled(m) for m in result.scalars().all()]

    async def get(self, organization_id: str, report_id: str) -> ScheduledReportRead | None:
        async for session in self._session_factory():
            model = await self._load(session, organization_id, report_id)
            return _model_to_scheduled(model) if model is not None else None

    async def _load(
        self, session: AsyncSession, organization_id: str, report_id: str
    ) -> ScheduledReportModel | None:
        result = await session.execute(
            select(ScheduledReportModel).where(
                ScheduledReportModel.id == uuid.UUID(report_id),
                ScheduledReportModel.organization_id == uuid.UUID(organization_id),
            )
        )
        return result.scalar_one_or_none()

    async def create(
        self, organization_id: str, user_id: str, fields: dict[str, Any]
    ) -> ScheduledReportRead:
        values = dict(fields)
        values["saved_report_id"] = uuid.UUID(values["saved_report_id"])
        async for session in self._session_factory():
            model = ScheduledReportModel(
                organization_id=uuid.UUID(organization_id),
                created_by=uuid.UUID(user_id),
                modified_by=uuid.UUID(user_id),
                **values,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            logger.info("scheduled_reports.created", report_id=str(model.id))
            return _model_to_scheduled(model)

    async def update(
        self,
        organization_id: str,
        report_id: str,
        user_id: str,
        fields: dict[str, Any],
        now: datetime,
    ) -> ScheduledReportRead | None:
        async for session in self._session_factory():
            model = await self._load(session, organization_id, report_id)
            if model is None:
                return None
            for key, value in fields.items():
                setattr(model, key, value)
            model.modified_by = uuid.UUID(user_id)
            model.updated_at = now
            await session.commit()
            await session.refresh(model)
            return _model_to_scheduled(model)

    async def delete(self, organization_id: str, report_id: str) -> bool:
        async for session in self._session_factory():
            model = await self._load(session, organization_id, report_id)
            if model is None:
                return False
            await session.execute(
                delete(ScheduledReportRunModel).where(
                    ScheduledReportRunModel.scheduled_report_id == model.id
                )
            )
            await session.delete(model)
            await session.commit()
            return True

    # ── Runs ────────────────────────────────────────────────────────────────

    async def create_run(
        self, report_id: str, recipients: list[str], file_format: str, now: datetime
    ) -> str:
        async for session in self._session_factory():
            run = ScheduledReportRunModel(
                scheduled_report_id=uuid.UUID(report_id),
                status=RunStatus.RUNNING.value,
                recipients=list(recipients),
                file_format=file_format,
                run_metadata={},
                started_at=now,
            )
            session.add(run)
            await session.commit()
            return str(run.id)

    async def mark_run(
        self,
        run_id: str,
        status: RunStatus,
        now: datetime,
        *,
        rows_count: int | None = None,
        file_name: str | None = None,
        error_message: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        values: dict[str, Any] = {
            "status": status.value,
            "completed_at": now,
            "error_message": error_message,
        }
        if rows_count is not None:
            values["rows_count"] = rows_count
        if file_name is not None:
            values["file_name"] = file_name
        if metadata is not None:
            values["run_metadata"] = metadata
        async for session in self._session_factory():
            await session.execute(
                update(ScheduledReportRunModel)
                .where(ScheduledReportRunModel.id == uuid.UUID(run_id))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def list_runs(
        self, organization_id: str, report_id: str, limit: int = 20
    ) -> list[ScheduledReportRunRead]:
        async for session in self._session_factory():
            result = await session.execute(
                select(ScheduledReportRunModel)
                .join(
                    ScheduledReportModel,
                    ScheduledReportModel.id == ScheduledReportRunModel.scheduled_report_id,
                )
                .where(
                    ScheduledReportRunModel.scheduled_report_id == uuid.UUID(report_id),
                    ScheduledReportModel.organization_id == uuid.UUID(organization_id),
                )
                .order_by(ScheduledReportRunModel.started_at.desc())
                .limit(limit)
            )
            return [_model_to_run(m) for m in result.scalars().all()]

    # ── Worker Claims ───────────────────────────────────────────────────────

    async def claim_due(
        self, limit: int, now: datetime, stale_after: timedelta
    ) -> list[ScheduledReportRead]:
        """Claim active schedules whose next run is due and that are not in flight."""
        model_cls = ScheduledReportModel
        claim_guard = and_(
            model_cls.is_active.is_(True),
            model_cls.next_run_at <= now,
            claimable(model_cls.processing_started_at, now - stale_after),
        )

        async for session in self._session_factory():
            candidate_ids = list(
                (
                    await session.execute(
                        select(model_cls.id)
                        .where(claim_guard)
                        .order_by(model_cls.next_run_at)
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
                values={"processing_started_at": now},
            )
            if not claimed_ids:
                return []

            result = await session.execute(
                select(model_cls)
                .where(model_cls.id.in_(claimed_ids))
                .order_by(model_cls.next_run_at)
                .execution_options(populate_existing=True)
            )
            claimed = [_model_to_scheduled(m) for m in result.scalars().all()]

        logger.info("scheduled_reports.claimed", count=len(claimed))
        return claimed

    async def finish_success(self, report_id: str, next_run_at: datetime, now: datetime) -> None:
        await self._finish(
            report_id,
            {
                "next_run_at": next_run_at,
                "last_run_at": now,
                "last_error": None,
                "processing_started_at": None,
                "updated_at": now,
            },
        )

    async def finish_failure(self, report_id: str, error: str, now: datetime) -> None:
        await self._finish(
            report_id,
            {"last_error": error, "processing_started_at": None, "updated_at": now},
        )

    async def _finish(self, report_id: str, values: dict[str, Any]) -> None:
        async for session in self._session_factory():
            await session.execute(
                update(ScheduledReportModel)
                .where(ScheduledReportModel.id == uuid.UUID(report_id))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
