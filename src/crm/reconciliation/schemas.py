"""Pydantic schemas for payment reconciliation."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field, model_validator

from src.crm.core.ids import UUIDStr


class ReconciliationStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class ReconciliationType(str, Enum):
    MANUAL = "manual"
    AUTOMATIC = "automatic"
    SCHEDULED = "scheduled"


class MatchStatus(str, Enum):
    MATCHED = "matched"
    AMOUNT_MISMATCH = "amount_mismatch"
    DATE_MISMATCH = "date_mismatch"
    UNMATCHED_DONATION = "unmatched_donation"
    UNMATCHED_STRIPE = "unmatched_stripe"


class MatchConfidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class DiscrepancySeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class DiscrepancyStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"
    CLOSED = "closed"
    IGNORED = "ignored"


# ── Inputs ──────────────────────────────────────────────────────────────────


class LedgerDonation(BaseModel):
    """The local donation fields reconciliation reads."""

    id: str
    amount: Decimal
    donation_date: datetime
    payment_status: str
    stripe_payment_intent_id: str | None = None
    stripe_charge_id: str | None = None


class ReconciliationCreate(BaseModel):
    start_date: datetime
    end_date: datetime
    reconciliation_type: ReconciliationType = ReconciliationType.MANUAL
    notes: str | None = None

    @model_validator(mode="after")
    def _check_range(self) -> ReconciliationCreate:
        if self.end_date < self.start_date:
            raise ValueError("end_date must be on or after start_date")
        return self


class ReconciliationFilters(BaseModel):
    status: ReconciliationStatus | None = None
    reconciliation_type: ReconciliationType | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)


class ManualMatchRequest(BaseModel):
    donation_id: UUIDStr
    stripe_payment_intent_id: str = Field(..., min_length=1)


class ResolveDiscrepancyRequest(BaseModel):
    status: DiscrepancyStatus
    resolution_notes: str = Field(..., min_length=1)

    @model_validator(mode="after")
    def _check_status(self) -> ResolveDiscrepancyRequest:
        if self.status == DiscrepancyStatus.OPEN:
            raise ValueError("Invalid status. Must be resolved, closed, or ignored")
        return self


# ── Outputs ─────────────────────────────────────────────────────────────────


class ReconciliationRead(BaseModel):
    id: str
    reconciliation_number: str
    reconciliation_type: ReconciliationType
    status: ReconciliationStatus
    start_date: datetime
    end_date: datetime
    stripe_balance_amount: Decimal | None = None
    stripe_charge_count: int = 0
    stripe_refund_count: int = 0
    stripe_total_fees: Decimal | None = None
    donations_total_amount: Decimal | None = None
    donations_count: int = 0
    matched_count: int = 0
    unmatched_stripe_count: int = 0
    unmatched_donations_count: int = 0
    discrepancy_count: int = 0
    error_message: str | None = None
    notes: str | None = None
    initiated_by: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None


class ReconciliationItemRead(BaseModel):
    id: str
    reconciliation_id: str
    donation_id: str | None = None
    stripe_payment_intent_id: str | None = None
    stripe_charge_id: str | None = None
    stripe_balance_transaction_id: str | None = None
    stripe_amount: Decimal | None = None
    stripe_fee: Decimal | None = None
    stripe_net: Decimal | None = None
    stripe_created_at: datetime | None = None
    stripe_status: str | None = None
    donation_amount: Decimal | None = None
    donation_date: datetime | None = None
    donation_status: str | None = None
    match_status: MatchStatus
    match_confidence: MatchConfidence | None = None
    has_discrepancy: bool = False
    discrepancy_type: str | None = None
    discrepancy_amount: Decimal | None = None


class DiscrepancyRead(BaseModel):
    id: str
    reconciliation_id: str
    reconciliation_item_id: str | None = None
    discrepancy_type: str
    severity: DiscrepancySeverity
    donation_id: str | None = None
    stripe_payment_intent_id: str | None = None
    stripe_charge_id: str | None = None
    expected_amount: Decimal | None = None
    actual_amount: Decimal | None = None
    difference_amount: Decimal | None = None
    description: str
    status: DiscrepancyStatus
    resolution_notes: str | None = None
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    created_at: datetime | None = None


class ReconciliationSummary(BaseModel):
    total_donations: int = 0
    total_donation_amount: Decimal = Decimal("0")
    total_stripe_charges: int = 0
    total_stripe_amount: Decimal = Decimal("0")
    total_stripe_fees: Decimal = Decimal("0")
    total_net_amount: Decimal = Decimal("0")
    matched_transactions: int = 0
    unmatched_donations: int = 0
    unmatched_stripe: int = 0
    discrepancies: int = 0
    open_discrepancies: int = 0
    resolved_discrepancies: int = 0


class Pagination(BaseModel):
    total: int
    page: int
    limit: int
    total_pages: int


class ReconciliationPage(BaseModel):
    reconciliations: list[ReconciliationRead]
    pagination: Pagination


class ReconciliationDetail(BaseModel):
    reconciliation: ReconciliationRead
    summary: ReconciliationSummary


class ReconciliationItemPage(BaseModel):
    items: list[ReconciliationItemRead]
    pagination: Pagination
