"""Tests for IntervalBatchRunner, BackgroundJobs and the claim helpers."""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from src.crm.config import Settings
from src.crm.models.webhooks import WebhookDeliveryModel, WebhookEndpointModel
from src.crm.scheduling.claims import claim_rows, claimable
from src.crm.scheduling.jobs import BackgroundJobs, build_runners
from src.crm.scheduling.runner import IntervalBatchRunner
from tests.helpers import seed


# ── IntervalBatchRunner ──────────────────────────────────────────────────────


class TestIntervalBatchRunner:
    @pytest.mark.asyncio
    async def test_concurrent_ticks_never_overlap(self):
        release = asyncio.Event()
        calls = 0
        active = 0
        max_active = 0

        async def run_batch() -> int:
            nonlocal calls, active, max_active
            calls += 1
            active += 1
            max_active = max(max_active, active)
            await release.wait()
            active -= 1
            return 3

        runner = IntervalBatchRunner("test", run_batch, interval_seconds=60)
        first = asyncio.create_task(runner.tick())
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert runner.in_flight

        skipped = await runner.tick()
        assert skipped == 0

        release.set()
        assert await first == 3
        assert calls == 1
        assert max_active == 1
        assert not runner.in_flight

    @pytest.mark.asyncio
    async def test_failing_batch_is_swallowed(self):
        async def run_batch() -> int:
            raise RuntimeError("database unavailable")

        runner = IntervalBatchRunner("failing", run_batch, interval_seconds=60)
        assert await runner.tick() == 0
        assert not runner.in_flight

    @pytest.mark.asyncio
    async def test_start_runs_immediately_and_stop_halts(self):
        calls = 0

        async def run_batch() -> int:
            nonlocal calls
            calls += 1
            return 0

        runner = IntervalBatchRunner("loop", run_batch, interval_seconds=0.01)
        runner.start()
        await asyncio.sleep(0.05)
        runner.stop()
        await runner.wait_idle()
        assert not runner.running
        seen = calls
        assert seen >= 1

        await asyncio.sleep(0.05)
        assert calls == seen

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self):
        async def run_batch() -> int:
            return 0

        runner = IntervalBatchRunner("once", run_batch, interval_seconds=60)
        runner.start()
        task = runner._loop_task
        runner.start()
        assert runner._loop_task is task
        runner.stop()

    @pytest.mark.asyncio
    async def test_stop_lets_in_flight_batch_finish(self):
        release = asyncio.Event()
        finished = False

        async def run_batch() -> int:
            nonlocal finished
            await release.wait()
            finished = True
            return 1

        runner = IntervalBatchRunner("slow", run_batch, interval_seconds=60)
        runner.start()
        await asyncio.sleep(0.01)
        assert runner.in_flight
        runner.stop()

        release.set()
        await runner.wait_idle()
        assert finished


class TestBackgroundJobs:
    @pytest.mark.asyncio
    async def test_build_runners_uses_configured_intervals(self):
        class Worker:
            async def run_batch(self) -> int:
                return 0

        settings = Settings(
            EVENT_REMINDER_INTERVAL_SECONDS=5,
            WEBHOOK_RETRY_INTERVAL_SECONDS=6,
            FOLLOW_UP_REMINDER_INTERVAL_SECONDS=7,
            SCHEDULED_REPORT_INTERVAL_SECONDS=8,
        )
        runners = build_runners(
            settings,
            event_reminders=Worker(),
            webhook_retries=Worker(),
            follow_up_reminders=Worker(),
            scheduled_reports=Worker(),
        )
        assert [r.name for r in runners] == [
            "event_reminders",
            "webhook_retries",
            "follow_up_reminders",
            "scheduled_reports",
        ]
        assert [r._interval for r in runners] == [5, 6, 7, 8]

    @pytest.mark.asyncio
    async def test_start_and_stop_manage_runners_and_cron(self):
        class Cron:
            started = False
            stopped = False

            def start(self) -> bool:
                self.started = True
                return True

            def stop(self) -> None:
                self.stopped = True

        async def run_batch() -> int:
            return 0

        cron = Cron()
        runner = IntervalBatchRunner("job", run_batch, interval_seconds=60)
        jobs = BackgroundJobs([runner], cron=cron)
        jobs.start()
        assert runner.running
        assert cron.started

        await jobs.stop()
        assert not runner.running
        assert cron.stopped


# ── Claims ───────────────────────────────────────────────────────────────────


async def _seed_deliveries(session_factory, count: int, processing_started_at=None):
    endpoint = WebhookEndpointModel(
        id=uuid.uuid4(),
        organization_id=uuid.uuid4(),
        url="https://hooks.example.org/crm",
        secret="whsec_test",
        events=["contact.created"],
    )
    deliveries = [
        WebhookDeliveryModel(
            id=uuid.uuid4(),
            webhook_endpoint_id=endpoint.id,
            event_type="contact.created",
            payload={"n": n},
            status="retrying",
            processing_started_at=processing_started_at,
        )
        for n in range(count)
    ]
    await seed(session_factory, endpoint, *deliveries)
    return [d.id for d in deliveries]


class TestClaims:
    @pytest.mark.asyncio
    async def test_racing_claimers_never_share_a_row(self, session_factory):
        ids = await _seed_deliveries(session_factory, 3)
        now = datetime.now(timezone.utc)
        model = WebhookDeliveryModel
        guard = claimable(model.processing_started_at, now - timedelta(minutes=5))

        # Both pollers saw the same candidates before either claimed
        claimed: list[list[uuid.UUID]] = []
        for _ in range(2):
            async for session in session_factory():
                claimed.append(
                    await claim_rows(
                        session, model, ids, guard=guard, values={"processing_started_at": now}
                    )
                )

        assert claimed[0] == ids
        assert claimed[1] == []

    @pytest.mark.asyncio
    async def test_stale_claim_becomes_claimable(self, session_factory):
        now = datetime.now(timezone.utc)
        stale_ids = await _seed_deliveries(
            session_factory, 1, processing_started_at=now - timedelta(minutes=30)
        )
        fresh_ids = await _seed_deliveries(
            session_factory, 1, processing_started_at=now - timedelta(minutes=1)
        )
        model = WebhookDeliveryModel
        guard = claimable(model.processing_started_at, now - timedelta(minutes=10))

        async for session in session_factory():
            claimed = await claim_rows(
                session,
                model,
                stale_ids + fresh_ids,
                guard=guard,
                values={"processing_started_at": now},
            )
        assert claimed == stale_ids

        async for session in session_factory():
            rows = (await session.execute(select(model).where(model.id.in_(stale_ids)))).scalars()
            assert all(row.processing_started_at is not None for row in rows)
