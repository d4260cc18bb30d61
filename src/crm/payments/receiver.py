"""Stripe webhook receiver.

Once a payload's signature is verified the provider always gets a 200 with
one of four fixed acknowledgement bodies, so Stripe never retries an event
we have already seen, rejected as stale, or failed to apply.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any

import structlog

from src.crm.core.errors import ValidationError
from src.crm.core.timeutils import utcnow
from src.crm.payments.repository import PROVIDER_STRIPE, PaymentRepository
from src.crm.payments.schemas import PaymentStatus, ReceiptStatus, StripeEvent
from src.crm.payments.stripe_client import StripeGateway, WebhookVerificationError

logger = structlog.get_logger(__name__)

ACK_RECEIVED: dict[str, bool] = {"received": True}
ACK_REJECTED: dict[str, bool] = {"received": True, "rejected": True}
ACK_DUPLICATE: dict[str, bool] = {"received": True, "duplicate": True}
ACK_PROCESSING_ERROR: dict[str, bool] = {"received": True, "processingError": True}


class StripeWebhookReceiver:
    def __init__(
        self,
        repository: PaymentRepository,
        gateway: StripeGateway,
        max_age_seconds: int = 300,
    ) -> None:
        self._repo = repository
        self._gateway = gateway
        self._max_age = timedelta(seconds=max_age_seconds)

    async def handle(self, payload: bytes, signature: str | None) -> dict[str, bool]:
        """Verify, de-duplicate and apply one webhook delivery.

        Raises:
            ValidationError: Missing signature header or failed verification.
        """
        if not signature:
            raise ValidationError("Missing stripe-signature header")
        try:
            event = self._gateway.construct_event(payload, signature)
        except WebhookVerificationError as exc:
            logger.warning("stripe_webhook.verification_failed", error=str(exc))
            raise ValidationError("Webhook error")

        age = utcnow() - event.created
        if age > self._max_age:
            logger.warning(
                "stripe_webhook.rejected_stale",
                event_id=event.id,
                event_type=event.type,
                age_seconds=int(age.total_seconds()),
            )
            return dict(ACK_REJECTED)

        if not await self._repo.register_receipt(PROVIDER_STRIPE, event.id, event.type):
            logger.info("stripe_webhook.duplicate", event_id=event.id, event_type=event.type)
            return dict(ACK_DUPLICATE)

        try:
            await self._apply(event)
        except Exception as exc:
            await self._repo.mark_receipt(
                PROVIDER_STRIPE, event.id, ReceiptStatus.FAILED, utcnow(), str(exc)
            )
            logger.error(
                "stripe_webhook.processing_failed",
                event_id=event.id,
                event_type=event.type,
                exc_info=True,
            )
            return dict(ACK_PROCESSING_ERROR)

        await self._repo.mark_receipt(PROVIDER_STRIPE, event.id, ReceiptStatus.PROCESSED, utcnow())
        return dict(ACK_RECEIVED)

    async def _apply(self, event: StripeEvent) -> None:
        obj: dict[str, Any] = event.data_object
        now = utcnow()
        logger.info("stripe_webhook.received", event_id=event.id, event_type=event.type)

        if event.type == "payment_intent.succeeded":
            donation_id = (obj.get("metadata") or {}).get("donationId")
            if donation_id:
                await self._repo.set_donation_status(
                    donation_id, PaymentStatus.COMPLETED, now, payment_intent_id=obj.get("id")
                )
            logger.info("stripe_webhook.payment_succeeded", payment_intent_id=obj.get("id"))
        elif event.type == "payment_intent.payment_failed":
            donation_id = (obj.get("metadata") or {}).get("donationId")
            if donation_id:
                await self._repo.set_donation_status(donation_id, PaymentStatus.FAILED, now)
            logger.warning("stripe_webhook.payment_failed", payment_intent_id=obj.get("id"))
        elif event.type == "charge.refunded":
            updated = 0
            if obj.get("refunded"):
                updated = await self._repo.mark_refunded(obj.get("payment_intent"), obj.get("id"), now)
            logger.info(
                "stripe_webhook.charge_refunded",
                payment_intent_id=obj.get("payment_intent"),
                amount_refunded=obj.get("amount_refunded"),
                donations_updated=updated,
            )
        else:
            logger.debug("stripe_webhook.unhandled_type", event_type=event.type)
