"""Tests for report generation, export, and scheduled report delivery."""

from __future__ import annotations

import csv
import io
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from openpyxl import load_workbook

from src.crm.core.errors import NotFoundError, ValidationError
from src.crm.models.payments import DonationModel
from src.crm.models.reports import SavedReportModel, ScheduledReportModel
from src.crm.reports.generator import ReportGenerator, export_report
from src.crm.reports.repository import ScheduledReportRepository
from src.crm.reports.schedule import compute_next_run_at, validate_timezone
from src.crm.reports.schemas import (
    ReportDefinition,
    ReportFormat,
    RunStatus,
    ScheduledReportCreate,
    ScheduledReportUpdate,
)
from src.crm.reports.service import ScheduledReportService
from src.crm.reports.worker import ScheduledReportWorker
from tests.helpers import RecordingEmailSender, make_contact, seed

ORG = uuid.uuid4()
ORG_ID = str(ORG)
USER = uuid.uuid4()
USER_ID = str(USER)

CONTACT_REPORT = {
    "fields": ["first_name", "email"],
    "sort": [{"field": "first_name", "direction": "asc"}],
}


# ── Schedule ─────────────────────────────────────────────────────────────────


class TestComputeNextRunAt:
    # 2030-03-10 is a Sunday
    NOW = datetime(2030, 3, 10, 8, 0, tzinfo=timezone.utc)

    def test_daily_later_today(self):
        assert compute_next_run_at("daily", "UTC", 9, 0, now=self.NOW) == datetime(
            2030, 3, 10, 9, 0, tzinfo=timezone.utc
        )

    def test_daily_already_passed(self):
        assert compute_next_run_at("daily", "UTC", 7, 30, now=self.NOW) == datetime(
            2030, 3, 11, 7, 30, tzinfo=timezone.utc
        )

    def test_weekly_defaults_to_monday(self):
        assert compute_next_run_at("weekly", "UTC", 9, 0, now=self.NOW) == datetime(
            2030, 3, 11, 9, 0, tzinfo=timezone.utc
        )

    def test_weekly_same_weekday_passed_moves_a_week(self):
        assert compute_next_run_at("weekly", "UTC", 7, 0, day_of_week=0, now=self.NOW) == datetime(
            2030, 3, 17, 7, 0, tzinfo=timezone.utc
        )

    def test_monthly(self):
        now = datetime(2030, 3, 20, 12, 0, tzinfo=timezone.utc)
        assert compute_next_run_at("monthly", "UTC", 9, 0, day_of_month=15, now=now) == datetime(
            2030, 4, 15, 9, 0, tzinfo=timezone.utc
        )

    def test_local_wall_clock_across_dst(self):
        # 10:00 EST on the day before clocks spring forward
        now = datetime(2030, 3, 9, 15, 0, tzinfo=timezone.utc)
        next_run = compute_next_run_at("daily", "America/New_York", 9, 0, now=now)
        assert next_run == datetime(2030, 3, 10, 13, 0, tzinfo=timezone.utc)

    def test_invalid_timezone(self):
        with pytest.raises(ValidationError):
            validate_timezone("Mars/Olympus_Mons")


# ── Generator & Export ───────────────────────────────────────────────────────


async def _seed_contacts(session_factory):
    await seed(
        session_factory,
        make_contact(ORG, first_name="Grace", email="grace@example.org"),
        make_contact(ORG, first_name="Ada", email="ada, countess@example.org"),
        make_contact(uuid.uuid4(), first_name="Other", email="other@example.org"),
    )


class TestReportGenerator:
    @pytest.mark.asyncio
    async def test_fields_are_scoped_and_sorted(self, session_factory):
        await _seed_contacts(session_factory)
        definition = ReportDefinition.model_validate({"entity": "contacts", **CONTACT_REPORT})

        result = await ReportGenerator(session_factory).generate(ORG_ID, definition)

        assert result.total_count == 2
        assert [row["first_name"] for row in result.data] == ["Ada", "Grace"]

    @pytest.mark.asyncio
    async def test_group_by_with_aggregation(self, session_factory):
        now = datetime.now(timezone.utc)
        await seed(
            session_factory,
            *(
                DonationModel(
                    organization_id=ORG,
                    donation_number=f"DON-{index}",
                    amount=Decimal("25.00"),
                    donation_date=now,
                    payment_status=status,
                )
                for index, status in enumerate(["completed", "completed", "pending"])
            ),
        )
        definition = ReportDefinition.model_validate(
            {
                "entity": "donations",
                "groupBy": ["payment_status"],
                "aggregations": [{"field": "id", "function": "count", "alias": "donations"}],
                "sort": [{"field": "payment_status"}],
            }
        )

        result = await ReportGenerator(session_factory).generate(ORG_ID, definition)

        assert result.data == [
            {"payment_status": "completed", "donations": 2},
            {"payment_status": "pending", "donations": 1},
        ]
        assert result.total_count == 2

    @pytest.mark.asyncio
    async def test_filters(self, session_factory):
        await _seed_contacts(session_factory)
        definition = ReportDefinition.model_validate(
            {
                "entity": "contacts",
                "fields": ["first_name"],
                "filters": [{"field": "first_name", "operator": "in", "value": "Grace, Nobody"}],
            }
        )
        result = await ReportGenerator(session_factory).generate(ORG_ID, definition)
        assert result.data == [{"first_name": "Grace"}]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "definition",
        [
            {"entity": "contacts", "fields": ["password_hash"]},
            {"entity": "contacts", "fields": []},
            {"entity": "contacts", "fields": ["email"], "sort": [{"field": "ssn"}]},
            {"entity": "contacts", "fields": ["email"], "filters": [{"field": "email", "operator": "regex", "value": "x"}]},
        ],
    )
    async def test_rejects_unknown_fields_and_operators(self, session_factory, definition):
        with pytest.raises(ValidationError):
            await ReportGenerator(session_factory).generate(
                ORG_ID, ReportDefinition.model_validate(definition)
            )

    @pytest.mark.asyncio
    async def test_csv_export_quotes_values(self, session_factory):
        await _seed_contacts(session_factory)
        definition = ReportDefinition.model_validate({"entity": "contacts", **CONTACT_REPORT})
        result = await ReportGenerator(session_factory).generate(ORG_ID, definition)

        content = export_report(result, ReportFormat.CSV).decode()

        rows = list(csv.reader(io.StringIO(content)))
        assert rows == [
            ["first_name", "email"],
            ["Ada", "ada, countess@example.org"],
            ["Grace", "grace@example.org"],
        ]

    @pytest.mark.asyncio
    async def test_xlsx_export_uses_labels(self, session_factory):
        await _seed_contacts(session_factory)
        definition = ReportDefinition.model_validate(
            {"name": "Contacts: All", "entity": "contacts", **CONTACT_REPORT}
        )
        result = await ReportGenerator(session_factory).generate(ORG_ID, definition)

        workbook = load_workbook(io.BytesIO(export_report(result, ReportFormat.XLSX)))
        sheet = workbook.active
        assert sheet.title == "Contacts  All"
        assert [cell.value for cell in sheet[1]] == ["First Name", "Email"]
        assert sheet["A2"].value == "Ada"
        assert sheet.max_row == 3


# ── Scheduled Report Service ─────────────────────────────────────────────────


async def _saved_report(session_factory, definition=None, created_by=USER, is_public=False):
    saved = SavedReportModel(
        id=uuid.uuid4(),
        organization_id=ORG,
        name="Contact list",
        entity="contacts",
        report_definition=definition or CONTACT_REPORT,
        is_public=is_public,
        created_by=created_by,
    )
    await seed(session_factory, saved)
    return str(saved.id)


def _service(session_factory, email=None):
    email = email or RecordingEmailSender()
    repo = ScheduledReportRepository(session_factory)
    return repo, ScheduledReportService(repo, ReportGenerator(session_factory), email), email


async def _make_due(session_factory, report_id: str) -> None:
    async for session in session_factory():
        model = await session.get(ScheduledReportModel, uuid.UUID(report_id))
        model.next_run_at = datetime.now(timezone.utc) - timedelta(minutes=1)
        await session.commit()


class TestScheduledReportService:
    @pytest.mark.asyncio
    async def test_create_uses_defaults(self, session_factory):
        saved_id = await _saved_report(session_factory)
        _, service, _ = _service(session_factory)

        report = await service.create(
            ORG_ID, USER_ID, ScheduledReportCreate(saved_report_id=saved_id, frequency="daily")
        )

        assert report.name == "Contact list"
        assert report.timezone == "UTC"
        assert (report.hour, report.minute) == (9, 0)
        assert report.is_active
        assert report.next_run_at > datetime.now(timezone.utc)

    @pytest.mark.asyncio
    async def test_private_saved_report_of_another_user_is_inaccessible(self, session_factory):
        saved_id = await _saved_report(session_factory, created_by=uuid.uuid4())
        _, service, _ = _service(session_factory)

        with pytest.raises(NotFoundError):
            await service.create(
                ORG_ID, USER_ID, ScheduledReportCreate(saved_report_id=saved_id, frequency="daily")
            )

    @pytest.mark.asyncio
    async def test_create_validates_schedule(self, session_factory):
        saved_id = await _saved_report(session_factory)
        _, service, _ = _service(session_factory)

        with pytest.raises(ValidationError):
            await service.create(
                ORG_ID,
                USER_ID,
                ScheduledReportCreate(saved_report_id=saved_id, frequency="weekly", day_of_week=7),
            )
        with pytest.raises(ValidationError):
            await service.create(
                ORG_ID,
                USER_ID,
                ScheduledReportCreate(saved_report_id=saved_id, frequency="daily", timezone="Nowhere"),
            )

    @pytest.mark.asyncio
    async def test_update_and_toggle(self, session_factory):
        saved_id = await _saved_report(session_factory)
        _, service, _ = _service(session_factory)
        report = await service.create(
            ORG_ID, USER_ID, ScheduledReportCreate(saved_report_id=saved_id, frequency="daily")
        )

        updated = await service.update(
            ORG_ID, report.id, USER_ID, ScheduledReportUpdate(frequency="monthly", day_of_month=1)
        )
        assert updated.frequency == "monthly"
        assert updated.next_run_at.day == 1

        with pytest.raises(ValidationError):
            await service.update(ORG_ID, report.id, USER_ID, ScheduledReportUpdate(name="  "))

        toggled = await service.toggle(ORG_ID, report.id, USER_ID)
        assert not toggled.is_active
        assert (await service.toggle(ORG_ID, report.id, USER_ID, is_active=True)).is_active

    @pytest.mark.asyncio
    async def test_run_now_emails_attachment(self, session_factory):
        await _seed_contacts(session_factory)
        saved_id = await _saved_report(session_factory)
        _, service, email = _service(session_factory)
        report = await service.create(
            ORG_ID,
            USER_ID,
            ScheduledReportCreate(
                saved_report_id=saved_id, frequency="daily", recipients=["board@example.org"]
            ),
        )

        outcome = await service.run_now(ORG_ID, report.id)

        assert outcome["status"] == "success"
        assert outcome["rows_count"] == 2
        assert outcome["file_name"].startswith("contacts_report_")
        [sent] = email.sent
        assert sent.to == ["board@example.org"]
        assert sent.subject == "Scheduled Report: Contact list"
        assert sent.attachments[0].mime_type == "text/csv"

        [run] = await service.list_runs(ORG_ID, report.id)
        assert run.status == RunStatus.SUCCESS
        assert run.metadata == {"recipientsCount": 1, "manual": True}
        refreshed = await service.get(ORG_ID, report.id)
        assert refreshed.last_run_at is not None
        assert refreshed.processing_started_at is None

    @pytest.mark.asyncio
    async def test_no_recipients_is_skipped(self, session_factory):
        saved_id = await _saved_report(session_factory)
        _, service, email = _service(session_factory)
        report = await service.create(
            ORG_ID, USER_ID, ScheduledReportCreate(saved_report_id=saved_id, frequency="daily")
        )

        outcome = await service.run_now(ORG_ID, report.id)

        assert outcome["status"] == "skipped"
        assert outcome["error"] == "No recipients configured"
        assert email.sent == []

    @pytest.mark.asyncio
    async def test_generation_failure_is_recorded_and_raised(self, session_factory):
        saved_id = await _saved_report(session_factory, definition={"fields": ["not_a_field"]})
        _, service, _ = _service(session_factory)
        report = await service.create(
            ORG_ID,
            USER_ID,
            ScheduledReportCreate(saved_report_id=saved_id, frequency="daily", recipients=["a@example.org"]),
        )

        with pytest.raises(ValidationError):
            await service.run_now(ORG_ID, report.id)

        [run] = await service.list_runs(ORG_ID, report.id)
        assert run.status == RunStatus.FAILED
        assert "not_a_field" in run.error_message
        assert "not_a_field" in (await service.get(ORG_ID, report.id)).last_error


class TestScheduledReportWorker:
    @pytest.mark.asyncio
    async def test_due_report_runs_once_and_advances(self, session_factory):
        saved_id = await _saved_report(session_factory)
        repo, service, email = _service(session_factory)
        report = await service.create(
            ORG_ID,
            USER_ID,
            ScheduledReportCreate(saved_report_id=saved_id, frequency="daily", recipients=["a@example.org"]),
        )
        worker = ScheduledReportWorker(repo, service)

        assert await worker.run_batch() == 0

        await _make_due(session_factory, report.id)
        assert await worker.run_batch() == 1
        assert await worker.run_batch() == 0

        assert len(email.sent) == 1
        refreshed = await service.get(ORG_ID, report.id)
        assert refreshed.next_run_at > datetime.now(timezone.utc)

    @pytest.mark.asyncio
    async def test_inactive_report_is_not_claimed(self, session_factory):
        saved_id = await _saved_report(session_factory)
        repo, service, _ = _service(session_factory)
        report = await service.create(
            ORG_ID,
            USER_ID,
            ScheduledReportCreate(saved_report_id=saved_id, frequency="daily", is_active=False),
        )
        await _make_due(session_factory, report.id)

        assert await ScheduledReportWorker(repo, service).run_batch() == 0

    @pytest.mark.asyncio
    async def test_failure_releases_claim(self, session_factory):
        saved_id = await _saved_report(session_factory, definition={"fields": ["bogus"]})
        repo, service, _ = _service(session_factory)
        report = await service.create(
            ORG_ID, USER_ID, ScheduledReportCreate(saved_report_id=saved_id, frequency="daily")
        )
        await _make_due(session_factory, report.id)

        assert await ScheduledReportWorker(repo, service).run_batch() == 1

        refreshed = await service.get(ORG_ID, report.id)
        assert refreshed.processing_started_at is None
        assert refreshed.last_error is not None

    @pytest.mark.asyncio
    async def test_failing_report_does_not_abort_batch(self, session_factory):
        broken_saved = await _saved_report(session_factory, definition={"fields": ["bogus"]})
        healthy_saved = await _saved_report(session_factory)
        repo, service, email = _service(session_factory)
        broken = await service.create(
            ORG_ID,
            USER_ID,
            ScheduledReportCreate(saved_report_id=broken_saved, frequency="daily", recipients=["a@example.org"]),
        )
        healthy = await service.create(
            ORG_ID,
            USER_ID,
            ScheduledReportCreate(saved_report_id=healthy_saved, frequency="daily", recipients=["b@example.org"]),
        )
        await _make_due(session_factory, broken.id)
        await _make_due(session_factory, healthy.id)

        assert await ScheduledReportWorker(repo, service).run_batch() == 2

        assert [sent.to for sent in email.sent] == [["b@example.org"]]
        assert "bogus" in (await service.get(ORG_ID, broken.id)).last_error
        delivered = await service.get(ORG_ID, healthy.id)
        assert delivered.last_error is None
        assert delivered.next_run_at > datetime.now(timezone.utc)
