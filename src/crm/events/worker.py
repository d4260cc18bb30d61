"""Background worker that fires due event reminder automations."""

from __future__ import annotations

from datetime import timedelta

import structlog

from src.crm.core.timeutils import utcnow
from src.crm.events.reminders import EventReminderSender, attempt_status_for
from src.crm.events.repository import CLOSED_EVENT_STATUSES, EventReminderRepository
from src.crm.events.schemas import (
    AttemptResult,
    ClaimedReminderAutomation,
    ReminderAttemptStatus,
    ReminderTriggerType,
)

logger = structlog.get_logger(__name__)

STALE_AFTER = timedelta(minutes=10)


class EventReminderWorker:
    """Claim due automations and send each one exactly once.

    Every claimed automation ends with a terminal attempt status, even when
    sending raises; one bad automation never aborts the rest of the batch.
    """

    def __init__(
        self,
        repository: EventReminderRepository,
        sender: EventReminderSender,
        batch_size: int = 25,
    ) -> None:
        self._repo = repository
        self._sender = sender
        self._batch_size = batch_size

    async def run_batch(self) -> int:
        claimed = await self._repo.claim_due(self._batch_size, utcnow(), STALE_AFTER)
        for automation in claimed:
            try:
                result = await self._process(automation)
            except Exception as exc:
                logger.error(
                    "event_reminders.automation_failed",
                    automation_id=automation.id,
                    event_id=automation.event_id,
                    exc_info=True,
                )
                result = AttemptResult(status=ReminderAttemptStatus.FAILED, error=str(exc))
            try:
                await self._repo.mark_attempt_result(automation.id, result, utcnow())
            except Exception:
                # The claim goes stale and the automation is picked up again
                logger.error(
                    "event_reminders.result_not_recorded",
                    automation_id=automation.id,
                    status=result.status.value,
                    exc_info=True,
                )
        return len(claimed)

    async def _process(self, automation: ClaimedReminderAutomation) -> AttemptResult:
        event = await self._repo.get_event_by_id(automation.event_id)
        if event is None or event.status in CLOSED_EVENT_STATUSES:
            return AttemptResult(
                status=ReminderAttemptStatus.SKIPPED,
                error="Event is no longer open for reminders",
            )

        summary = await self._sender.send_event_reminders(
            event,
            trigger_type=ReminderTriggerType.AUTOMATED,
            send_email=automation.send_email,
            send_sms=automation.send_sms,
            custom_message=automation.custom_message,
            timezone=automation.timezone,
            automation_id=automation.id,
        )
        status = attempt_status_for(summary)
        error = "; ".join(summary.errors[:5]) if summary.errors else None
        logger.info(
            "event_reminders.automation_attempted",
            automation_id=automation.id,
            event_id=event.id,
            status=status.value,
        )
        return AttemptResult(status=status, summary=summary.model_dump(mode="json"), error=error)
