"""Daily automatic reconciliation.

Wraps an AsyncIOScheduler with one cron job that reconciles the previous
UTC day. The job is not registered when Stripe is not configured.
"""

from __future__ import annotations

from datetime import datetime, time, timedelta, timezone

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from src.crm.reconciliation.schemas import ReconciliationCreate, ReconciliationType
from src.crm.reconciliation.service import ReconciliationService

logger = structlog.get_logger(__name__)


def previous_day_range(now: datetime) -> tuple[datetime, datetime]:
    """[00:00, 23:59:59.999999] of the UTC day before ``now``."""
    day = now.astimezone(timezone.utc).date() - timedelta(days=1)
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    end = datetime.combine(day, time.max, tzinfo=timezone.utc)
    return start, end


class ReconciliationScheduler:
    """Run a scheduled reconciliation every day at ``hour``:00 UTC.

    Args:
        service: ReconciliationService used for the run.
        hour: UTC hour of the daily run.
    """

    def __init__(self, service: ReconciliationService, hour: int = 3) -> None:
        self._service = service
        self._hour = hour
        self._scheduler: AsyncIOScheduler | None = None
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    def start(self) -> bool:
        """Start the scheduler. Returns False when Stripe is not configured."""
        if not self._service.stripe_configured:
            logger.info("reconciliation_scheduler.skipped", reason="stripe_not_configured")
            return False

        self._scheduler = AsyncIOScheduler(timezone=timezone.utc)
        self._scheduler.add_job(
            self.run_daily,
            trigger=CronTrigger(hour=self._hour, minute=0, timezone=timezone.utc),
            id="daily_payment_reconciliation",
            name="Reconcile the previous UTC day's Stripe transactions",
            misfire_grace_time=3600,
            coalesce=True,
        )
        self._scheduler.start()
        self._started = True
        logger.info("reconciliation_scheduler.started", schedule=f"Daily {self._hour:02d}:00 UTC")
        return True

    def stop(self) -> None:
        if self._scheduler is not None and self._started:
            self._scheduler.shutdown(wait=False)
            self._started = False
            logger.info("reconciliation_scheduler.stopped")

    async def run_daily(self, now: datetime | None = None) -> None:
        start, end = previous_day_range(now or datetime.now(timezone.utc))
        logger.info("reconciliation_scheduler.triggered", start=start.isoformat(), end=end.isoformat())
        try:
            await self._service.create(
                ReconciliationCreate(
                    start_date=start,
                    end_date=end,
                    reconciliation_type=ReconciliationType.SCHEDULED,
                    notes="Automatic daily reconciliation",
                )
            )
        except Exception as exc:
            # the run row already records the failure
            logger.warning("reconciliation_scheduler.run_failed", error=str(exc))
