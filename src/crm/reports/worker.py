"""Background worker that delivers due scheduled reports."""

from __future__ import annotations

from datetime import timedelta

import structlog

from src.crm.core.timeutils import utcnow
from src.crm.reports.repository import ScheduledReportRepository
from src.crm.reports.service import ScheduledReportService

logger = structlog.get_logger(__name__)

STALE_AFTER = timedelta(minutes=15)


class ScheduledReportWorker:
    def __init__(
        self,
        repository: ScheduledReportRepository,
        service: ScheduledReportService,
        batch_size: int = 10,
    ) -> None:
        self._repo = repository
        self._service = service
        self._batch_size = batch_size

    async def run_batch(self) -> int:
        claimed = await self._repo.claim_due(self._batch_size, utcnow(), STALE_AFTER)
        for report in claimed:
            try:
                await self._service.execute(report)
            except Exception:
                # execute() has already recorded the failure and released the claim
                logger.error("scheduled_reports.run_failed", report_id=report.id, exc_info=True)
        return len(claimed)
