"""Background job wiring: one IntervalBatchRunner per worker plus the daily cron."""

from __future__ import annotations

from collections.abc import Awaitable
from typing import Protocol

import structlog

from src.crm.config import Settings
from src.crm.scheduling.runner import IntervalBatchRunner

logger = structlog.get_logger(__name__)


class BatchWorker(Protocol):
    def run_batch(self) -> Awaitable[int]: ...


class CronScheduler(Protocol):
    def start(self) -> bool: ...

    def stop(self) -> None: ...


def build_runners(
    settings: Settings,
    *,
    event_reminders: BatchWorker,
    webhook_retries: BatchWorker,
    follow_up_reminders: BatchWorker,
    scheduled_reports: BatchWorker,
) -> list[IntervalBatchRunner]:
    return [
        IntervalBatchRunner(
            "event_reminders",
            event_reminders.run_batch,
            settings.EVENT_REMINDER_INTERVAL_SECONDS,
        ),
        IntervalBatchRunner(
            "webhook_retries",
            webhook_retries.run_batch,
            settings.WEBHOOK_RETRY_INTERVAL_SECONDS,
        ),
        IntervalBatchRunner(
            "follow_up_reminders",
            follow_up_reminders.run_batch,
            settings.FOLLOW_UP_REMINDER_INTERVAL_SECONDS,
        ),
        IntervalBatchRunner(
            "scheduled_reports",
            scheduled_reports.run_batch,
            settings.SCHEDULED_REPORT_INTERVAL_SECONDS,
        ),
    ]


class BackgroundJobs:
    """Start and stop every background runner together."""

    def __init__(
        self, runners: list[IntervalBatchRunner], cron: CronScheduler | None = None
    ) -> None:
        self.runners = runners
        self._cron = cron

    def start(self) -> None:
        for runner in self.runners:
            runner.start()
        if self._cron is not None:
            self._cron.start()
        logger.info("background_jobs.started", runners=[r.name for r in self.runners])

    async def stop(self) -> None:
        """Cancel every timer, then wait for in-flight batches to finish."""
        for runner in self.runners:
            runner.stop()
        if self._cron is not None:
            self._cron.stop()
        for runner in self.runners:
            await runner.wait_idle()
        logger.info("background_jobs.stopped")
