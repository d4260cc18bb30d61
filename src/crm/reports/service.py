"""Scheduled report service -- schedule management and report execution."""

from __future__ import annotations

from typing import Any

import structlog

from src.crm.core.errors import NotFoundError, ValidationError
from src.crm.core.timeutils import utcnow
from src.crm.notifications.email import EmailAttachment, EmailSender
from src.crm.reports.generator import MIME_TYPES, ReportGenerator, export_report
from src.crm.reports.repository import ScheduledReportRepository
from src.crm.reports.schedule import (
    compute_next_run_at,
    validate_schedule_fields,
    validate_timezone,
)
from src.crm.reports.schemas import (
    ReportDefinition,
    ReportFormat,
    RunStatus,
    ScheduledReportCreate,
    ScheduledReportRead,
    ScheduledReportRunRead,
    ScheduledReportUpdate,
)

logger = structlog.get_logger(__name__)

SCHEDULE_FIELDS = ("frequency", "timezone", "hour", "minute", "day_of_week", "day_of_month")


def report_file_name(entity: str, fmt: ReportFormat, when) -> str:
    return f"{entity}_report_{when.strftime('%Y-%m-%d')}.{fmt.value}"


class ScheduledReportService:
    """Manage report schedules and run them, on demand or from the worker."""

    def __init__(
        self,
        repository: ScheduledReportRepository,
        generator: ReportGenerator,
        email_sender: EmailSender,
    ) -> None:
        self._repo = repository
        self._generator = generator
        self._email = email_sender

    # ── Schedule Management ─────────────────────────────────────────────────

    async def list_reports(self, organization_id: str) -> list[ScheduledReportRead]:
        return await self._repo.list_reports(organization_id)

    async def get(self, organization_id: str, report_id: str) -> ScheduledReportRead:
        report = await self._repo.get(organization_id, report_id)
        if report is None:
            raise NotFoundError("Scheduled report not found")
        return report

    async def create(
        self, organization_id: str, user_id: str, data: ScheduledReportCreate
    ) -> ScheduledReportRead:
        saved = await self._repo.get_accessible_saved_report(
            organization_id, data.saved_report_id, user_id
        )
        if saved is None:
            raise NotFoundError("Saved report not found or inaccessible")

        tz_name = data.timezone or "UTC"
        validate_timezone(tz_name)
        validate_schedule_fields(data.frequency, data.day_of_week, data.day_of_month)
        hour = 9 if data.hour is None else data.hour
        minute = 0 if data.minute is None else data.minute

        fields = {
            "saved_report_id": data.saved_report_id,
            "name": data.name or saved.name,
            "recipients": list(data.recipients),
            "format": data.format.value,
            "frequency": data.frequency.value,
            "timezone": tz_name,
            "hour": hour,
            "minute": minute,
            "day_of_week": data.day_of_week,
            "day_of_month": data.day_of_month,
            "is_active": True if data.is_active is None else data.is_active,
            "next_run_at": compute_next_run_at(
                data.frequency, tz_name, hour, minute, data.day_of_week, data.day_of_month
            ),
        }
        return await self._repo.create(organization_id, user_id, fields)

    async def update(
        self,
        organization_id: str,
        report_id: str,
        user_id: str,
        data: ScheduledReportUpdate,
    ) -> ScheduledReportRead:
        existing = await self.get(organization_id, report_id)
        changes: dict[str, Any] = data.model_dump(exclude_unset=True)
        changes = {key: value for key, value in changes.items() if value is not None}
        if "name" in changes and not changes["name"].strip():
            raise ValidationError("Name cannot be empty")

        merged = existing.model_copy(update=changes)
        validate_timezone(merged.timezone)
        validate_schedule_fields(merged.frequency, merged.day_of_week, merged.day_of_month)

        fields: dict[str, Any] = {}
        for key, value in changes.items():
            fields[key] = value.value if hasattr(value, "value") else value
        if any(key in changes for key in SCHEDULE_FIELDS) or "is_active" in changes:
            fields["next_run_at"] = compute_next_run_at(
                merged.frequency,
                merged.timezone,
                merged.hour,
                merged.minute,
                merged.day_of_week,
                merged.day_of_month,
            )

        updated = await self._repo.update(organization_id, report_id, user_id, fields, utcnow())
        if updated is None:
            raise NotFoundError("Scheduled report not found")
        return updated

    async def toggle(
        self, organization_id: str, report_id: str, user_id: str, is_active: bool | None = None
    ) -> ScheduledReportRead:
        existing = await self.get(organization_id, report_id)
        target = (not existing.is_active) if is_active is None else is_active
        return await self.update(
            organization_id, report_id, user_id, ScheduledReportUpdate(is_active=target)
        )

    async def delete(self, organization_id: str, report_id: str) -> None:
        if not await self._repo.delete(organization_id, report_id):
            raise NotFoundError("Scheduled report not found")

    async def list_runs(
        self, organization_id: str, report_id: str, limit: int = 20
    ) -> list[ScheduledReportRunRead]:
        await self.get(organization_id, report_id)
        return await self._repo.list_runs(organization_id, report_id, limit)

    async def run_now(self, organization_id: str, report_id: str) -> dict[str, Any]:
        report = await self.get(organization_id, report_id)
        return await self.execute(report, manual=True)

    # ── Execution ───────────────────────────────────────────────────────────

    async def execute(self, report: ScheduledReportRead, manual: bool = False) -> dict[str, Any]:
        """Generate, export and email one report; record the run.

        Always advances ``next_run_at`` on completion. On error the run is
        marked failed, ``last_error`` is stored, and the error is re-raised.
        """
        started = utcnow()
        run_id = await self._repo.create_run(
            report.id, report.recipients, report.format.value, started
        )
        try:
            saved = await self._repo.get_saved_report(
                report.organization_id, report.saved_report_id
            )
            if saved is None or not saved.report_definition:
                raise ValidationError("Saved report definition not found")

            definition = ReportDefinition.model_validate(
                {"name": saved.name, **saved.report_definition, "entity": saved.entity}
            )
            result = await self._generator.generate(report.organization_id, definition)
            content = export_report(result, report.format)
            file_name = report_file_name(definition.entity.value, report.format, started)
            rows_count = len(result.data)
            metadata = {"recipientsCount": len(report.recipients), "manual": manual}

            if not report.recipients:
                status, error = RunStatus.SKIPPED, "No recipients configured"
            else:
                sent = await self._email.send(
                    report.recipients,
                    f"Scheduled Report: {report.name}",
                    f"Your scheduled report \"{report.name}\" is attached.\n\nRows: {rows_count}",
                    attachments=[
                        EmailAttachment(file_name, content, MIME_TYPES[report.format])
                    ],
                )
                status, error = (
                    (RunStatus.SUCCESS, None) if sent else (RunStatus.FAILED, "Email delivery failed")
                )

            finished = utcnow()
            await self._repo.mark_run(
                run_id,
                status,
                finished,
                rows_count=rows_count,
                file_name=file_name,
                error_message=error,
                metadata=metadata,
            )
            next_run_at = compute_next_run_at(
                report.frequency,
                report.timezone,
                report.hour,
                report.minute,
                report.day_of_week,
                report.day_of_month,
                now=finished,
            )
            await self._repo.finish_success(report.id, next_run_at, finished)
        except Exception as exc:
            failed_at = utcnow()
            await self._repo.mark_run(run_id, RunStatus.FAILED, failed_at, error_message=str(exc))
            await self._repo.finish_failure(report.id, str(exc), failed_at)
            raise

        logger.info(
            "scheduled_reports.executed",
            report_id=report.id,
            run_id=run_id,
            status=status.value,
            rows=rows_count,
            manual=manual,
        )
        return {
            "run_id": run_id,
            "status": status.value,
            "rows_count": rows_count,
            "file_name": file_name,
            "error": error,
        }
