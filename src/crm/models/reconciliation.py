"""Payment reconciliation tables.

- StripeBalanceTransactionModel: local copy of processor balance transactions
- PaymentReconciliationModel: one reconciliation run over a date range
- ReconciliationItemModel: one matched pair or unmatched leftover per run
- PaymentDiscrepancyModel: items needing manual resolution
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.crm.core.database import Base


class StripeBalanceTransactionModel(Base):
    __tablename__ = "stripe_balance_transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    stripe_balance_transaction_id: Mapped[str] = mapped_column(
        String(255), nullable=False, unique=True
    )
    stripe_source_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stripe_source_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    net: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str | None] = mapped_column(String(30), nullable=True)
    transaction_type: Mapped[str] = mapped_column(String(50), nullable=False)
    stripe_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    stripe_created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    stripe_available_on: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reconciliation_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class PaymentReconciliationModel(Base):
    __tablename__ = "payment_reconciliations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    reconciliation_number: Mapped[str] = mapped_column(String(30), nullable=False, unique=True)
    reconciliation_type: Mapped[str] = mapped_column(
        String(20), default="manual", server_default=text("'manual'")
    )
    status: Mapped[str] = mapped_column(
        String(20), default="in_progress", server_default=text("'in_progress'")
    )
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    stripe_balance_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    stripe_charge_count: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    stripe_refund_count: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    stripe_total_fees: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    donations_total_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    donations_count: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    matched_count: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    unmatched_stripe_count: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    unmatched_donations_count: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    discrepancy_count: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    initiated_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class ReconciliationItemModel(Base):
    __tablename__ = "reconciliation_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    reconciliation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("payment_reconciliations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    donation_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    stripe_payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stripe_charge_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stripe_balance_transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stripe_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    stripe_fee: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    stripe_net: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    stripe_created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    stripe_status: Mapped[str | None] = mapped_column(String(30), nullable=True)
    donation_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    donation_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    donation_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    match_status: Mapped[str] = mapped_column(String(30), nullable=False)
    match_confidence: Mapped[str | None] = mapped_column(String(10), nullable=True)
    has_discrepancy: Mapped[bool] = mapped_column(Boolean, default=False, server_default=text("false"))
    discrepancy_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    discrepancy_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class PaymentDiscrepancyModel(Base):
    __tablename__ = "payment_discrepancies"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    reconciliation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("payment_reconciliations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    reconciliation_item_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    discrepancy_type: Mapped[str] = mapped_column(String(50), nullable=False)
    severity: Mapped[str] = mapped_column(String(10), nullable=False)
    donation_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    stripe_payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stripe_charge_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    expected_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    actual_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    difference_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="open", server_default=text("'open'"))
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    metadata_json: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
