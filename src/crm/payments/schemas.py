"""Payment-side value objects shared by the webhook receiver and reconciliation."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ReceiptStatus(str, Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    FAILED = "failed"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class StripeEvent(BaseModel):
    """A verified Stripe webhook event."""

    id: str
    type: str
    created: datetime
    data_object: dict[str, Any] = Field(default_factory=dict)
    livemode: bool = False


class BalanceTransaction(BaseModel):
    """A Stripe balance transaction with amounts converted from minor units."""

    id: str
    source: str | None = None
    type: str
    amount: Decimal
    fee: Decimal = Decimal("0")
    net: Decimal = Decimal("0")
    currency: str
    status: str | None = None
    description: str | None = None
    created: datetime
    available_on: datetime | None = None
