"""Payment repository -- webhook receipts and donation status updates."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError

from src.crm.core.database import SessionFactory
from src.crm.models.payments import DonationModel, PaymentWebhookReceiptModel
from src.crm.payments.schemas import PaymentStatus, ReceiptStatus

logger = structlog.get_logger(__name__)

PROVIDER_STRIPE = "stripe"
ERROR_MESSAGE_LIMIT = 1000


def _parse_uuid(value: str | None) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(value)) if value else None
    except ValueError:
        return None


class PaymentRepository:
    """Async persistence for the payment webhook receiver.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def register_receipt(self, provider: str, event_id: str, event_type: str) -> bool:
        """Record a webhook event. Returns False if (provider, event_id) was already seen."""
        async for session in self._session_factory():
            session.add(
                PaymentWebhookReceiptModel(
                    provider=provider,
                    event_id=event_id,
                    event_type=event_type,
                    processing_status=ReceiptStatus.RECEIVED.value,
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
            return True

    async def mark_receipt(
        self,
        provider: str,
        event_id: str,
        status: ReceiptStatus,
        now: datetime,
        error_message: str | None = None,
    ) -> None:
        values: dict[str, Any] = {
            "processing_status": status.value,
            "error_message": (error_message or "")[:ERROR_MESSAGE_LIMIT] or None,
        }
        if status == ReceiptStatus.PROCESSED:
            values["processed_at"] = now
            values["error_message"] = None
        async for session in self._session_factory():
            await session.execute(
                update(PaymentWebhookReceiptModel)
                .where(
                    PaymentWebhookReceiptModel.provider == provider,
                    PaymentWebhookReceiptModel.event_id == event_id,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def set_donation_status(
        self,
        donation_id: str,
        status: PaymentStatus,
        now: datetime,
        payment_intent_id: str | None = None,
    ) -> int:
        parsed = _parse_uuid(donation_id)
        if parsed is None:
            logger.warning("payments.invalid_donation_reference", donation_id=donation_id)
            return 0
        values: dict[str, Any] = {"payment_status": status.value, "updated_at": now}
        if payment_intent_id:
            values["stripe_payment_intent_id"] = payment_intent_id
        async for session in self._session_factory():
            result = await session.execute(
                update(DonationModel)
                .where(DonationModel.id == parsed)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount

    async def mark_refunded(
        self, payment_intent_id: str | None, charge_id: str | None, now: datetime
    ) -> int:
        conditions = []
        if payment_intent_id:
            conditions.append(DonationModel.stripe_payment_intent_id == payment_intent_id)
        if charge_id:
            conditions.append(DonationModel.stripe_charge_id == charge_id)
        if not conditions:
            return 0
        async for session in self._session_factory():
            result = await session.execute(
                update(DonationModel)
                .where(or_(*conditions))
                .values(payment_status=PaymentStatus.REFUNDED.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount
