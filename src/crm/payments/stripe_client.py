"""Stripe SDK wrapper.

The stripe SDK is synchronous; list calls run in a worker thread and are
retried with tenacity on connection errors. Webhook verification is pure
CPU work and runs inline.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import stripe
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.crm.config import Settings
from src.crm.payments.schemas import BalanceTransaction, StripeEvent

logger = structlog.get_logger(__name__)

_stripe_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((stripe.APIConnectionError, stripe.RateLimitError)),
    reraise=True,
)


class StripeNotConfiguredError(RuntimeError):
    pass


class WebhookVerificationError(Exception):
    """Raised when a webhook payload or its signature cannot be verified."""


def _from_cents(value: int | None) -> Decimal:
    return (Decimal(value or 0) / 100).quantize(Decimal("0.01"))


def _from_timestamp(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def balance_transaction_from_stripe(tx: Any) -> BalanceTransaction:
    """Convert a Stripe balance transaction object (or plain dict)."""
    source = _field(tx, "source")
    if source is not None and not isinstance(source, str):
        source = _field(source, "id")
    return BalanceTransaction(
        id=_field(tx, "id"),
        source=source,
        type=_field(tx, "type"),
        amount=_from_cents(_field(tx, "amount")),
        fee=_from_cents(_field(tx, "fee")),
        net=_from_cents(_field(tx, "net")),
        currency=(_field(tx, "currency") or "").upper(),
        status=_field(tx, "status"),
        description=_field(tx, "description"),
        created=_from_timestamp(_field(tx, "created")),
        available_on=_from_timestamp(_field(tx, "available_on")),
    )


class StripeGateway:
    """Balance transaction listing and webhook event verification."""

    def __init__(self, secret_key: str, webhook_secret: str = "") -> None:
        self._secret_key = secret_key
        self._webhook_secret = webhook_secret

    @classmethod
    def from_settings(cls, settings: Settings) -> StripeGateway:
        return cls(settings.STRIPE_SECRET_KEY, settings.STRIPE_WEBHOOK_SECRET)

    @property
    def configured(self) -> bool:
        return bool(self._secret_key)

    def _list_sync(self, start: datetime, end: datetime) -> list[BalanceTransaction]:
        page = stripe.BalanceTransaction.list(
            created={"gte": int(start.timestamp()), "lte": int(end.timestamp())},
            limit=100,
            api_key=self._secret_key,
        )
        return [balance_transaction_from_stripe(tx) for tx in page.auto_paging_iter()]

    @_stripe_retry
    async def list_balance_transactions(
        self, start: datetime, end: datetime
    ) -> list[BalanceTransaction]:
        if not self.configured:
            raise StripeNotConfiguredError("Stripe is not configured")
        transactions = await asyncio.to_thread(self._list_sync, start, end)
        logger.info(
            "stripe.balance_transactions_fetched",
            count=len(transactions),
            start=start.isoformat(),
            end=end.isoformat(),
        )
        return transactions

    def construct_event(self, payload: bytes, signature: str) -> StripeEvent:
        """Verify ``payload`` against the ``Stripe-Signature`` header."""
        if not self._webhook_secret:
            raise WebhookVerificationError("Stripe webhook secret is not configured")
        try:
            text = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(text, signature, self._webhook_secret)
            event = json.loads(text)
            return StripeEvent(
                id=event["id"],
                type=event["type"],
                created=_from_timestamp(event["created"]),
                data_object=(event.get("data") or {}).get("object") or {},
                livemode=bool(event.get("livemode", False)),
            )
        except stripe.SignatureVerificationError as exc:
            raise WebhookVerificationError(str(exc)) from exc
        except (UnicodeDecodeError, ValueError, KeyError, TypeError, AttributeError) as exc:
            raise WebhookVerificationError("Invalid webhook payload") from exc
