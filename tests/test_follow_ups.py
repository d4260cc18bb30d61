"""Tests for follow-up scheduling, recurrence, summaries, and reminder emails."""

from __future__ import annotations

import uuid
from datetime import date, datetime, time, timedelta, timezone

import pytest

from src.crm.core.errors import NotFoundError, ValidationError
from src.crm.follow_ups.repository import FollowUpRepository
from src.crm.follow_ups.schedule import (
    add_month,
    combine_date_time,
    compute_next_scheduled_date,
    is_overdue,
    next_occurrence,
    reminder_time,
)
from src.crm.follow_ups.schemas import (
    FollowUpComplete,
    FollowUpCreate,
    FollowUpEntityType,
    FollowUpFilters,
    FollowUpFrequency,
    FollowUpRead,
    FollowUpReschedule,
    FollowUpStatus,
    NotificationStatus,
)
from src.crm.follow_ups.service import FollowUpService
from src.crm.follow_ups.worker import FollowUpReminderWorker, build_reminder_email
from tests.helpers import RecordingEmailSender, make_user, seed

ORG = uuid.uuid4()
ORG_ID = str(ORG)
USER_ID = str(uuid.uuid4())
CASE_ID = str(uuid.uuid4())


def _today() -> date:
    return datetime.now(timezone.utc).date()


def _create(**overrides) -> FollowUpCreate:
    values = {
        "entity_type": FollowUpEntityType.CASE,
        "entity_id": CASE_ID,
        "title": "Check in with family",
        "scheduled_date": _today() + timedelta(days=1),
    }
    values.update(overrides)
    return FollowUpCreate(**values)


# ── Schedule ─────────────────────────────────────────────────────────────────


class TestSchedule:
    def test_missing_time_means_end_of_day(self):
        assert combine_date_time(date(2030, 5, 1), None) == datetime(
            2030, 5, 1, 23, 59, 59, tzinfo=timezone.utc
        )

    def test_reminder_time(self):
        assert reminder_time(date(2030, 5, 1), time(9, 0), 30) == datetime(
            2030, 5, 1, 8, 30, tzinfo=timezone.utc
        )

    @pytest.mark.parametrize(
        "day, expected",
        [
            (date(2030, 1, 31), date(2030, 2, 28)),
            (date(2032, 1, 31), date(2032, 2, 29)),
            (date(2030, 12, 15), date(2031, 1, 15)),
        ],
    )
    def test_add_month_clamps_to_month_end(self, day, expected):
        assert add_month(day) == expected

    def test_next_scheduled_date_by_frequency(self):
        day = date(2030, 3, 10)
        assert compute_next_scheduled_date(day, "once") is None
        assert compute_next_scheduled_date(day, "daily") == date(2030, 3, 11)
        assert compute_next_scheduled_date(day, FollowUpFrequency.WEEKLY) == date(2030, 3, 17)
        assert compute_next_scheduled_date(day, "biweekly") == date(2030, 3, 24)
        assert compute_next_scheduled_date(day, "monthly") == date(2030, 4, 10)

    def test_next_occurrence_rules(self):
        day = date(2030, 3, 10)
        assert next_occurrence(day, "once", None, None, None) is None
        assert next_occurrence(day, "once", None, None, date(2030, 4, 1)) == date(2030, 4, 1)
        assert next_occurrence(day, "weekly", None, None, None) == date(2030, 3, 17)
        assert next_occurrence(day, "weekly", None, False, None) is None
        assert next_occurrence(day, "weekly", date(2030, 3, 15), None, None) is None

    def test_is_overdue(self):
        now = datetime(2030, 3, 10, 12, 0, tzinfo=timezone.utc)
        assert is_overdue(date(2030, 3, 10), time(11, 0), now)
        assert not is_overdue(date(2030, 3, 10), None, now)


# ── Service ──────────────────────────────────────────────────────────────────


class TestFollowUpService:
    @pytest.mark.asyncio
    async def test_end_date_before_start_is_rejected(self, session_factory):
        service = FollowUpService(FollowUpRepository(session_factory))
        with pytest.raises(ValidationError):
            await service.create(
                ORG_ID,
                USER_ID,
                _create(frequency="weekly", frequency_end_date=_today() - timedelta(days=1)),
            )

    @pytest.mark.asyncio
    async def test_scoped_to_organization(self, session_factory):
        service = FollowUpService(FollowUpRepository(session_factory))
        follow_up = await service.create(ORG_ID, USER_ID, _create())

        with pytest.raises(NotFoundError):
            await service.get(str(uuid.uuid4()), follow_up.id)
        with pytest.raises(NotFoundError):
            await service.cancel(str(uuid.uuid4()), follow_up.id, USER_ID)

    @pytest.mark.asyncio
    async def test_completing_recurring_follow_up_creates_next(self, session_factory):
        repo = FollowUpRepository(session_factory)
        service = FollowUpService(repo)
        start = _today()
        follow_up = await service.create(
            ORG_ID,
            USER_ID,
            _create(scheduled_date=start, frequency="weekly", reminder_minutes_before=60),
        )

        completed = await service.complete(
            ORG_ID, follow_up.id, USER_ID, FollowUpComplete(completed_notes="Spoke by phone")
        )
        assert completed.status == FollowUpStatus.COMPLETED
        assert completed.completed_notes == "Spoke by phone"
        assert completed.completed_date is not None
        assert await repo.get_notification(follow_up.id) is None

        history = await service.for_entity(ORG_ID, FollowUpEntityType.CASE, CASE_ID)
        [following] = [item for item in history if item.id != follow_up.id]
        assert following.scheduled_date == start + timedelta(days=7)
        assert following.status == FollowUpStatus.SCHEDULED
        notification = await repo.get_notification(following.id)
        assert notification.status == NotificationStatus.PENDING

    @pytest.mark.asyncio
    async def test_complete_one_off_with_explicit_next_date(self, session_factory):
        service = FollowUpService(FollowUpRepository(session_factory))
        follow_up = await service.create(ORG_ID, USER_ID, _create())
        requested = _today() + timedelta(days=20)

        await service.complete(
            ORG_ID, follow_up.id, USER_ID, FollowUpComplete(next_scheduled_date=requested)
        )

        upcoming = await service.upcoming(ORG_ID)
        assert [item.scheduled_date for item in upcoming] == [requested]

    @pytest.mark.asyncio
    async def test_cancel_and_reschedule_sync_the_reminder(self, session_factory):
        repo = FollowUpRepository(session_factory)
        service = FollowUpService(repo)
        follow_up = await service.create(
            ORG_ID, USER_ID, _create(scheduled_time=time(10, 0), reminder_minutes_before=15)
        )
        assert (await repo.get_notification(follow_up.id)).status == NotificationStatus.PENDING

        await service.cancel(ORG_ID, follow_up.id, USER_ID)
        assert await repo.get_notification(follow_up.id) is None

        new_date = _today() + timedelta(days=5)
        rescheduled = await service.reschedule(
            ORG_ID, follow_up.id, USER_ID, FollowUpReschedule(scheduled_date=new_date, scheduled_time=time(14, 0))
        )
        assert rescheduled.status == FollowUpStatus.SCHEDULED
        notification = await repo.get_notification(follow_up.id)
        assert notification.scheduled_for == datetime.combine(
            new_date, time(13, 45), tzinfo=timezone.utc
        )

    @pytest.mark.asyncio
    async def test_summary_and_overdue_filter(self, session_factory):
        service = FollowUpService(FollowUpRepository(session_factory))
        today = _today()
        overdue = await service.create(ORG_ID, USER_ID, _create(scheduled_date=today - timedelta(days=1)))
        await service.create(ORG_ID, USER_ID, _create(scheduled_date=today))
        await service.create(ORG_ID, USER_ID, _create(scheduled_date=today + timedelta(days=3)))
        later = await service.create(ORG_ID, USER_ID, _create(scheduled_date=today + timedelta(days=30)))
        await service.cancel(ORG_ID, later.id, USER_ID)

        summary = await service.summary(ORG_ID, FollowUpFilters())
        assert summary.total == 4
        assert summary.scheduled == 3
        assert summary.cancelled == 1
        assert summary.overdue == 1
        assert summary.due_today == 1
        assert summary.due_this_week == 2

        page = await service.list_follow_ups(ORG_ID, FollowUpFilters(status="overdue"))
        assert [item.id for item in page.data] == [overdue.id]

        page = await service.list_follow_ups(ORG_ID, FollowUpFilters(limit=3))
        assert len(page.data) == 3
        assert page.pagination.total == 4
        assert page.pagination.pages == 2


# ── Reminder Worker ──────────────────────────────────────────────────────────


async def _due_follow_up(session_factory, service, assigned_to=None):
    return await service.create(
        ORG_ID,
        USER_ID,
        _create(
            scheduled_date=_today() - timedelta(days=1),
            scheduled_time=time(9, 0),
            reminder_minutes_before=30,
            assigned_to=assigned_to,
        ),
    )


class TestFollowUpReminderWorker:
    @pytest.mark.asyncio
    async def test_due_reminder_is_emailed_once(self, session_factory):
        user = make_user(ORG, email="caseworker@example.org")
        await seed(session_factory, user)
        repo = FollowUpRepository(session_factory)
        follow_up = await _due_follow_up(session_factory, FollowUpService(repo), str(user.id))
        email = RecordingEmailSender()
        worker = FollowUpReminderWorker(repo, email)

        assert await worker.run_batch() == 1
        assert await worker.run_batch() == 0

        [sent] = email.sent
        assert sent.to == "caseworker@example.org"
        assert sent.subject == "Follow-up reminder: Check in with family"
        notification = await repo.get_notification(follow_up.id)
        assert notification.status == NotificationStatus.SENT
        assert notification.attempt_count == 1
        assert notification.sent_at is not None

    @pytest.mark.asyncio
    async def test_unassigned_reminder_is_skipped(self, session_factory):
        repo = FollowUpRepository(session_factory)
        follow_up = await _due_follow_up(session_factory, FollowUpService(repo))
        email = RecordingEmailSender()

        assert await FollowUpReminderWorker(repo, email).run_batch() == 1

        notification = await repo.get_notification(follow_up.id)
        assert notification.status == NotificationStatus.SKIPPED
        assert notification.error_message == "No recipient email"
        assert email.sent == []

    @pytest.mark.asyncio
    async def test_failed_email_marks_notification_failed(self, session_factory):
        user = make_user(ORG)
        await seed(session_factory, user)
        repo = FollowUpRepository(session_factory)
        follow_up = await _due_follow_up(session_factory, FollowUpService(repo), str(user.id))

        await FollowUpReminderWorker(repo, RecordingEmailSender(result=False)).run_batch()

        notification = await repo.get_notification(follow_up.id)
        assert notification.status == NotificationStatus.FAILED
        assert notification.error_message == "Email delivery failed"

    @pytest.mark.asyncio
    async def test_raising_reminder_does_not_abort_batch(self, session_factory, monkeypatch):
        user = make_user(ORG, email="caseworker@example.org")
        await seed(session_factory, user)
        repo = FollowUpRepository(session_factory)
        service = FollowUpService(repo)
        broken = await _due_follow_up(session_factory, service, str(user.id))
        healthy = await _due_follow_up(session_factory, service, str(user.id))
        load = repo.get_by_id

        async def get_by_id(follow_up_id):
            if follow_up_id == broken.id:
                raise RuntimeError("database connection lost")
            return await load(follow_up_id)

        monkeypatch.setattr(repo, "get_by_id", get_by_id)
        email = RecordingEmailSender()

        assert await FollowUpReminderWorker(repo, email).run_batch() == 2

        failed = await repo.get_notification(broken.id)
        assert failed.status == NotificationStatus.FAILED
        assert failed.error_message == "database connection lost"
        assert (await repo.get_notification(healthy.id)).status == NotificationStatus.SENT
        assert len(email.sent) == 1

    @pytest.mark.asyncio
    async def test_unrecorded_result_does_not_abort_batch(self, session_factory, monkeypatch):
        user = make_user(ORG)
        await seed(session_factory, user)
        repo = FollowUpRepository(session_factory)
        service = FollowUpService(repo)
        first = await _due_follow_up(session_factory, service, str(user.id))
        second = await _due_follow_up(session_factory, service, str(user.id))
        record = repo.mark_notification_result
        calls = []

        async def mark_notification_result(notification_id, status, error, now):
            calls.append(notification_id)
            if len(calls) == 1:
                raise RuntimeError("deadlock detected")
            await record(notification_id, status, error, now)

        monkeypatch.setattr(repo, "mark_notification_result", mark_notification_result)
        email = RecordingEmailSender()

        assert await FollowUpReminderWorker(repo, email).run_batch() == 2

        assert len(email.sent) == 2
        statuses = {
            (await repo.get_notification(item.id)).status for item in (first, second)
        }
        assert statuses == {NotificationStatus.PROCESSING, NotificationStatus.SENT}

    def test_reminder_email_body(self):
        follow_up = FollowUpRead(
            id=str(uuid.uuid4()),
            organization_id=ORG_ID,
            entity_type="task",
            entity_id=CASE_ID,
            title="Call donor",
            description="Thank them for the gift.",
            scheduled_date=date(2030, 5, 1),
            scheduled_time=time(15, 30),
            frequency="once",
            method="video_call",
            status="scheduled",
        )
        subject, body = build_reminder_email(follow_up)
        assert subject == "Follow-up reminder: Call donor"
        assert "due 2030-05-01 15:30 UTC" in body
        assert "Method: video call" in body
        assert body.endswith("Thank them for the gift.")
