"""Background worker that emails follow-up reminders to assignees."""

from __future__ import annotations

from datetime import timedelta

import structlog

from src.crm.core.timeutils import utcnow
from src.crm.follow_ups.repository import FollowUpRepository
from src.crm.follow_ups.schedule import combine_date_time
from src.crm.follow_ups.schemas import (
    ClaimedFollowUpNotification,
    FollowUpRead,
    FollowUpStatus,
    NotificationStatus,
)
from src.crm.notifications.email import EmailSender

logger = structlog.get_logger(__name__)

STALE_AFTER = timedelta(minutes=10)


def build_reminder_email(follow_up: FollowUpRead) -> tuple[str, str]:
    due = combine_date_time(follow_up.scheduled_date, follow_up.scheduled_time)
    when = due.strftime("%Y-%m-%d %H:%M UTC") if follow_up.scheduled_time else (
        follow_up.scheduled_date.isoformat()
    )
    subject = f"Follow-up reminder: {follow_up.title}"
    lines = [
        f"A follow-up assigned to you is due {when}.",
        "",
        f"Title: {follow_up.title}",
        f"Related {follow_up.entity_type.value}: {follow_up.entity_id}",
    ]
    if follow_up.method is not None:
        lines.append(f"Method: {follow_up.method.value.replace('_', ' ')}")
    if follow_up.description:
        lines.extend(["", follow_up.description])
    return subject, "\n".join(lines)


class FollowUpReminderWorker:
    """Claim due follow-up notifications and email each assignee once."""

    def __init__(
        self, repository: FollowUpRepository, email_sender: EmailSender, batch_size: int = 50
    ) -> None:
        self._repo = repository
        self._email = email_sender
        self._batch_size = batch_size

    async def run_batch(self) -> int:
        claimed = await self._repo.claim_due_notifications(self._batch_size, utcnow(), STALE_AFTER)
        for notification in claimed:
            try:
                status, error = await self._process(notification)
            except Exception as exc:
                logger.error(
                    "follow_ups.reminder_failed",
                    notification_id=notification.id,
                    follow_up_id=notification.follow_up_id,
                    exc_info=True,
                )
                status, error = NotificationStatus.FAILED, str(exc)
            try:
                await self._repo.mark_notification_result(notification.id, status, error, utcnow())
            except Exception:
                logger.error(
                    "follow_ups.reminder_result_not_recorded",
                    notification_id=notification.id,
                    status=status.value,
                    exc_info=True,
                )
        return len(claimed)

    async def _process(
        self, notification: ClaimedFollowUpNotification
    ) -> tuple[NotificationStatus, str | None]:
        follow_up = await self._repo.get_by_id(notification.follow_up_id)
        if follow_up is None or follow_up.status != FollowUpStatus.SCHEDULED:
            return NotificationStatus.SKIPPED, "Follow-up is no longer scheduled"
        if not notification.recipient_email:
            return NotificationStatus.SKIPPED, "No recipient email"
        if not self._email.configured:
            return NotificationStatus.SKIPPED, "SMTP is not configured"

        subject, body = build_reminder_email(follow_up)
        if not await self._email.send(notification.recipient_email, subject, body):
            return NotificationStatus.FAILED, "Email delivery failed"

        logger.info(
            "follow_ups.reminder_sent",
            notification_id=notification.id,
            follow_up_id=follow_up.id,
        )
        return NotificationStatus.SENT, None
