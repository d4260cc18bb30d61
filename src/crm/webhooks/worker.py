"""Background worker that re-sends webhook deliveries awaiting retry."""

from __future__ import annotations

from datetime import timedelta

import structlog

from src.crm.core.timeutils import utcnow
from src.crm.webhooks.repository import WebhookRepository
from src.crm.webhooks.service import WebhookService

logger = structlog.get_logger(__name__)

STALE_AFTER = timedelta(minutes=10)


class WebhookRetryWorker:
    """Claim due ``retrying`` deliveries and POST each one again."""

    def __init__(
        self, repository: WebhookRepository, service: WebhookService, batch_size: int = 100
    ) -> None:
        self._repo = repository
        self._service = service
        self._batch_size = batch_size

    async def run_batch(self) -> int:
        claimed = await self._repo.claim_due_retries(self._batch_size, utcnow(), STALE_AFTER)
        for delivery in claimed:
            try:
                await self._service.retry(delivery)
            except Exception as exc:
                logger.error(
                    "webhooks.retry_failed",
                    delivery_id=delivery.id,
                    endpoint_id=delivery.webhook_endpoint_id,
                    exc_info=True,
                )
                try:
                    await self._service.record_failure(
                        delivery.id,
                        delivery.webhook_endpoint_id,
                        delivery.attempts,
                        None,
                        str(exc),
                    )
                except Exception:
                    logger.error(
                        "webhooks.retry_result_not_recorded", delivery_id=delivery.id, exc_info=True
                    )
        return len(claimed)
