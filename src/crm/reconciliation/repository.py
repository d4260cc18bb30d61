"""Reconciliation repository -- runs, balance transactions, items, discrepancies."""

from __future__ import annotations

import math
import uuid
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import case, func, select, update

from src.crm.core.database import SessionFactory
from src.crm.core.timeutils import as_utc
from src.crm.models.payments import DonationModel
from src.crm.models.reconciliation import (
    PaymentDiscrepancyModel,
    PaymentReconciliationModel,
    ReconciliationItemModel,
    StripeBalanceTransactionModel,
)
from src.crm.payments.schemas import BalanceTransaction
from src.crm.reconciliation.matching import MatchResult, discrepancy_details
from src.crm.reconciliation.schemas import (
    DiscrepancyRead,
    DiscrepancyStatus,
    LedgerDonation,
    MatchStatus,
    Pagination,
    ReconciliationFilters,
    ReconciliationItemRead,
    ReconciliationRead,
    ReconciliationStatus,
)

logger = structlog.get_logger(__name__)

RECONCILABLE_PAYMENT_STATUSES = ("completed", "pending")

_SEVERITY_RANK = case(
    (PaymentDiscrepancyModel.severity == "high", 3),
    (PaymentDiscrepancyModel.severity == "medium", 2),
    else_=1,
)


def _str_or_none(value: Any) -> str | None:
    return str(value) if value is not None else None


def _model_to_reconciliation(model: PaymentReconciliationModel) -> ReconciliationRead:
    return ReconciliationRead(
        id=str(model.id),
        reconciliation_number=model.reconciliation_number,
        reconciliation_type=model.reconciliation_type,
        status=model.status,
        start_date=as_utc(model.start_date),
        end_date=as_utc(model.end_date),
        stripe_balance_amount=model.stripe_balance_amount,
        stripe_charge_count=model.stripe_charge_count or 0,
        stripe_refund_count=model.stripe_refund_count or 0,
        stripe_total_fees=model.stripe_total_fees,
        donations_total_amount=model.donations_total_amount,
        donations_count=model.donations_count or 0,
        matched_count=model.matched_count or 0,
        unmatched_stripe_count=model.unmatched_stripe_count or 0,
        unmatched_donations_count=model.unmatched_donations_count or 0,
        discrepancy_count=model.discrepancy_count or 0,
        error_message=model.error_message,
        notes=model.notes,
        initiated_by=_str_or_none(model.initiated_by),
        started_at=as_utc(model.started_at),
        completed_at=as_utc(model.completed_at),
        created_at=as_utc(model.created_at),
    )


def _model_to_item(model: ReconciliationItemModel) -> ReconciliationItemRead:
    return ReconciliationItemRead(
        id=str(model.id),
        reconciliation_id=str(model.reconciliation_id),
        donation_id=_str_or_none(model.donation_id),
        stripe_payment_intent_id=model.stripe_payment_intent_id,
        stripe_charge_id=model.stripe_charge_id,
        stripe_balance_transaction_id=model.stripe_balance_transaction_id,
        stripe_amount=model.stripe_amount,
        stripe_fee=model.stripe_fee,
        stripe_net=model.stripe_net,
        stripe_created_at=as_utc(model.stripe_created_at),
        stripe_status=model.stripe_status,
        donation_amount=model.donation_amount,
        donation_date=as_utc(model.donation_date),
        donation_status=model.donation_status,
        match_status=model.match_status,
        match_confidence=model.match_confidence,
        has_discrepancy=bool(model.has_discrepancy),
        discrepancy_type=model.discrepancy_type,
        discrepancy_amount=model.discrepancy_amount,
    )


def _model_to_discrepancy(model: PaymentDiscrepancyModel) -> DiscrepancyRead:
    return DiscrepancyRead(
        id=str(model.id),
        reconciliation_id=str(model.reconciliation_id),
        reconciliation_item_id=_str_or_none(model.reconciliation_item_id),
        discrepancy_type=model.discrepancy_type,
        severity=model.severity,
        donation_id=_str_or_none(model.donation_id),
        stripe_payment_intent_id=model.stripe_payment_intent_id,
        stripe_charge_id=model.stripe_charge_id,
        expected_amount=model.expected_amount,
        actual_amount=model.actual_amount,
        difference_amount=model.difference_amount,
        description=model.description,
        status=model.status,
        resolution_notes=model.resolution_notes,
        resolved_at=as_utc(model.resolved_at),
        resolved_by=_str_or_none(model.resolved_by),
        created_at=as_utc(model.created_at),
    )


class ReconciliationRepository:
    """Async persistence for reconciliation runs.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    # ── Run Lifecycle ───────────────────────────────────────────────────────

    async def number_exists(self, reconciliation_number: str) -> bool:
        async for session in self._session_factory():
            result = await session.execute(
                select(PaymentReconciliationModel.id).where(
                    PaymentReconciliationModel.reconciliation_number == reconciliation_number
                )
            )
            return result.first() is not None

    async def start(
        self,
        reconciliation_number: str,
        reconciliation_type: str,
        start_date: datetime,
        end_date: datetime,
        initiated_by: str | None,
        notes: str | None,
        now: datetime,
    ) -> str:
        async for session in self._session_factory():
            model = PaymentReconciliationModel(
                reconciliation_number=reconciliation_number,
                reconciliation_type=reconciliation_type,
                status=ReconciliationStatus.IN_PROGRESS.value,
                start_date=start_date,
                end_date=end_date,
                initiated_by=uuid.UUID(initiated_by) if initiated_by else None,
                notes=notes,
                started_at=now,
            )
            session.add(model)
            await session.commit()
            return str(model.id)

    async def save_balance_transactions(
        self, transactions: list[BalanceTransaction], reconciliation_id: str, now: datetime
    ) -> None:
        """Insert new transactions; refresh amounts and status of known ones."""
        if not transactions:
            return
        rec_id = uuid.UUID(reconciliation_id)
        async for session in self._session_factory():
            existing = {
                model.stripe_balance_transaction_id: model
                for model in (
                    await session.execute(
                        select(StripeBalanceTransactionModel).where(
                            StripeBalanceTransactionModel.stripe_balance_transaction_id.in_(
                                [tx.id for tx in transactions]
                            )
                        )
                    )
                ).scalars().all()
            }
            for tx in transactions:
                model = existing.get(tx.id)
                if model is None:
                    model = StripeBalanceTransactionModel(
                        stripe_balance_transaction_id=tx.id,
                        stripe_source_id=tx.source,
                        stripe_source_type=tx.type,
                        currency=tx.currency,
                        transaction_type=tx.type,
                        stripe_description=tx.description,
                        stripe_created_at=tx.created,
                        stripe_available_on=tx.available_on,
                    )
                    session.add(model)
                    existing[tx.id] = model
                model.amount = tx.amount
                model.fee = tx.fee
                model.net = tx.net
                model.status = tx.status
                model.reconciliation_id = rec_id
                model.synced_at = now
            await session.commit()

    async def donations_in_range(self, start: datetime, end: datetime) -> list[LedgerDonation]:
        async for session in self._session_factory():
            result = await session.execute(
                select(DonationModel)
                .where(
                    DonationModel.donation_date >= start,
                    DonationModel.donation_date <= end,
                    DonationModel.payment_status.in_(RECONCILABLE_PAYMENT_STATUSES),
                )
                .order_by(DonationModel.donation_date.asc())
            )
            return [
                LedgerDonation(
                    id=str(model.id),
                    amount=model.amount,
                    donation_date=as_utc(model.donation_date),
                    payment_status=model.payment_status,
                    stripe_payment_intent_id=model.stripe_payment_intent_id,
                    stripe_charge_id=model.stripe_charge_id,
                )
                for model in result.scalars().all()
            ]

    async def complete(
        self,
        reconciliation_id: str,
        result: MatchResult,
        totals: dict[str, Any],
        now: datetime,
    ) -> ReconciliationRead:
        """Persist items, discrepancies and ledger updates; mark the run completed.

        Everything is written in one transaction.
        """
        rec_id = uuid.UUID(reconciliation_id)
        async for session in self._session_factory():
            for item in result.items:
                donation, tx = item.donation, item.transaction
                difference = item.amount_difference if item.has_discrepancy else None
                row = ReconciliationItemModel(
                    reconciliation_id=rec_id,
                    donation_id=uuid.UUID(donation.id) if donation else None,
                    stripe_payment_intent_id=donation.stripe_payment_intent_id if donation else None,
                    stripe_charge_id=(
                        (donation.stripe_charge_id if donation else None) or (tx.source if tx else None)
                    ),
                    stripe_balance_transaction_id=tx.id if tx else None,
                    stripe_amount=tx.amount if tx else None,
                    stripe_fee=tx.fee if tx else None,
                    stripe_net=tx.net if tx else None,
                    stripe_created_at=tx.created if tx else None,
                    stripe_status=tx.status if tx else None,
                    donation_amount=donation.amount if donation else None,
                    donation_date=donation.donation_date if donation else None,
                    donation_status=donation.payment_status if donation else None,
                    match_status=item.match_status.value,
                    match_confidence=item.confidence.value if item.confidence else None,
                    has_discrepancy=item.has_discrepancy,
                    discrepancy_type=item.discrepancy_type,
                    discrepancy_amount=difference,
                )
                session.add(row)
                await session.flush()

                details = discrepancy_details(item)
                if details is not None:
                    severity, description = details
                    session.add(
                        PaymentDiscrepancyModel(
                            reconciliation_id=rec_id,
                            reconciliation_item_id=row.id,
                            discrepancy_type=item.discrepancy_type,
                            severity=severity.value,
                            donation_id=row.donation_id,
                            stripe_payment_intent_id=row.stripe_payment_intent_id,
                            stripe_charge_id=row.stripe_charge_id,
                            expected_amount=row.donation_amount,
                            actual_amount=row.stripe_amount,
                            difference_amount=difference,
                            description=description,
                            status=DiscrepancyStatus.OPEN.value,
                            metadata_json={},
                        )
                    )

                if donation is not None and tx is not None:
                    await session.execute(
                        update(DonationModel)
                        .where(DonationModel.id == uuid.UUID(donation.id))
                        .values(
                            reconciliation_status=(
                                "matched" if item.match_status == MatchStatus.MATCHED else "discrepancy"
                            ),
                            stripe_fee=tx.fee,
                            net_amount=tx.net,
                            reconciled_at=now,
                            updated_at=now,
                        )
                        .execution_options(synchronize_session=False)
                    )

            await session.execute(
                update(PaymentReconciliationModel)
                .where(PaymentReconciliationModel.id == rec_id)
                .values(status=ReconciliationStatus.COMPLETED.value, completed_at=now, **totals)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            model = await session.get(PaymentReconciliationModel, rec_id, populate_existing=True)
            return _model_to_reconciliation(model)

    async def fail(self, reconciliation_id: str, error: str, now: datetime) -> None:
        async for session in self._session_factory():
            await session.execute(
                update(PaymentReconciliationModel)
                .where(PaymentReconciliationModel.id == uuid.UUID(reconciliation_id))
                .values(
                    status=ReconciliationStatus.FAILED.value,
                    error_message=error[:1000],
                    completed_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    # ── Queries ─────────────────────────────────────────────────────────────

    async def list_reconciliations(
        self, filters: ReconciliationFilters
    ) -> tuple[list[ReconciliationRead], Pagination]:
        conditions = []
        if filters.status is not None:
            conditions.append(PaymentReconciliationModel.status == filters.status.value)
        if filters.reconciliation_type is not None:
            conditions.append(
                PaymentReconciliationModel.reconciliation_type == filters.reconciliation_type.value
            )
        if filters.start_date is not None:
            conditions.append(PaymentReconciliationModel.start_date >= filters.start_date)
        if filters.end_date is not None:
            conditions.append(PaymentReconciliationModel.end_date <= filters.end_date)

        async for session in self._session_factory():
            total = (
                await session.execute(
                    select(func.count(PaymentReconciliationModel.id)).where(*conditions)
                )
            ).scalar_one()
            result = await session.execute(
                select(PaymentReconciliationModel)
                .where(*conditions)
                .order_by(PaymentReconciliationModel.created_at.desc())
                .limit(filters.limit)
                .offset((filters.page - 1) * filters.limit)
            )
            rows = [_model_to_reconciliation(m) for m in result.scalars().all()]
            return rows, Pagination(
                total=total,
                page=filters.page,
                limit=filters.limit,
                total_pages=math.ceil(total / filters.limit),
            )

    async def get(self, reconciliation_id: str) -> ReconciliationRead | None:
        async for session in self._session_factory():
            model = await session.get(PaymentReconciliationModel, uuid.UUID(reconciliation_id))
            return _model_to_reconciliation(model) if model is not None else None

    async def list_items(
        self, reconciliation_id: str, match_status: MatchStatus | None = None
    ) -> list[ReconciliationItemRead]:
        conditions = [ReconciliationItemModel.reconciliation_id == uuid.UUID(reconciliation_id)]
        if match_status is not None:
            conditions.append(ReconciliationItemModel.match_status == match_status.value)
        async for session in self._session_factory():
            result = await session.execute(
                select(ReconciliationItemModel)
                .where(*conditions)
                .order_by(ReconciliationItemModel.created_at.desc())
            )
            return [_model_to_item(m) for m in result.scalars().all()]

    async def list_discrepancies(self, reconciliation_id: str) -> list[DiscrepancyRead]:
        async for session in self._session_factory():
            result = await session.execute(
                select(PaymentDiscrepancyModel)
                .where(PaymentDiscrepancyModel.reconciliation_id == uuid.UUID(reconciliation_id))
                .order_by(_SEVERITY_RANK.desc(), PaymentDiscrepancyModel.created_at.desc())
            )
            return [_model_to_discrepancy(m) for m in result.scalars().all()]

    async def discrepancy_counts(self, reconciliation_id: str) -> tuple[int, int]:
        """(open, resolved-or-closed) discrepancy counts."""
        status = PaymentDiscrepancyModel.status
        async for session in self._session_factory():
            row = (
                await session.execute(
                    select(
                        func.count(case((status == DiscrepancyStatus.OPEN.value, 1))),
                        func.count(
                            case(
                                (
                                    status.in_(
                                        (DiscrepancyStatus.RESOLVED.value, DiscrepancyStatus.CLOSED.value)
                                    ),
                                    1,
                                )
                            )
                        ),
                    ).where(PaymentDiscrepancyModel.reconciliation_id == uuid.UUID(reconciliation_id))
                )
            ).one()
            return row[0], row[1]

    # ── Manual Actions ──────────────────────────────────────────────────────

    async def manual_match(
        self, donation_id: str, payment_intent_id: str, user_id: str | None, now: datetime
    ) -> bool:
        async for session in self._session_factory():
            result = await session.execute(
                update(DonationModel)
                .where(DonationModel.id == uuid.UUID(donation_id))
                .values(
                    stripe_payment_intent_id=payment_intent_id,
                    reconciliation_status="matched",
                    reconciled_at=now,
                    reconciled_by=uuid.UUID(user_id) if user_id else None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def resolve_discrepancy(
        self,
        discrepancy_id: str,
        status: DiscrepancyStatus,
        notes: str,
        user_id: str | None,
        now: datetime,
    ) -> bool:
        async for session in self._session_factory():
            result = await session.execute(
                update(PaymentDiscrepancyModel)
                .where(PaymentDiscrepancyModel.id == uuid.UUID(discrepancy_id))
                .values(
                    status=status.value,
                    resolution_notes=notes,
                    resolved_at=now,
                    resolved_by=uuid.UUID(user_id) if user_id else None,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

