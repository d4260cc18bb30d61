"""Reconciliation service -- runs the Stripe/donation comparison and its queries."""

from __future__ import annotations

import math
import random
from datetime import datetime

import structlog

from src.crm.core.errors import NotFoundError, ServiceUnavailableError
from src.crm.core.monitoring import record_reconciliation
from src.crm.core.timeutils import utcnow
from src.crm.payments.stripe_client import StripeGateway
from src.crm.reconciliation.matching import match_transactions, summarize_totals
from src.crm.reconciliation.repository import ReconciliationRepository
from src.crm.reconciliation.schemas import (
    DiscrepancyRead,
    ManualMatchRequest,
    MatchStatus,
    Pagination,
    ReconciliationCreate,
    ReconciliationDetail,
    ReconciliationFilters,
    ReconciliationItemPage,
    ReconciliationPage,
    ReconciliationRead,
    ReconciliationSummary,
    ResolveDiscrepancyRequest,
)

logger = structlog.get_logger(__name__)

_NUMBER_ATTEMPTS = 5


def generate_reconciliation_number(now: datetime, rng: random.Random | None = None) -> str:
    """``REC-YYMMDD-NNNN`` with a random four-digit suffix."""
    rng = rng or random.Random()
    return f"REC-{now.strftime('%y%m%d')}-{rng.randint(0, 9999):04d}"


class ReconciliationService:
    def __init__(self, repository: ReconciliationRepository, gateway: StripeGateway) -> None:
        self._repo = repository
        self._gateway = gateway

    @property
    def stripe_configured(self) -> bool:
        return self._gateway.configured

    async def _unused_number(self, now: datetime) -> str:
        number = generate_reconciliation_number(now)
        for _ in range(_NUMBER_ATTEMPTS - 1):
            if not await self._repo.number_exists(number):
                break
            number = generate_reconciliation_number(now)
        return number

    async def create(self, data: ReconciliationCreate, user_id: str | None = None) -> ReconciliationRead:
        """Fetch, match and persist one reconciliation run.

        On failure the run is marked ``failed`` with the error and the error
        is re-raised.
        """
        if not self._gateway.configured:
            raise ServiceUnavailableError("Stripe is not configured")

        now = utcnow()
        reconciliation_id = await self._repo.start(
            await self._unused_number(now),
            data.reconciliation_type.value,
            data.start_date,
            data.end_date,
            user_id,
            data.notes,
            now,
        )
        log = logger.bind(reconciliation_id=reconciliation_id)
        log.info(
            "reconciliation.started",
            start=data.start_date.isoformat(),
            end=data.end_date.isoformat(),
            type=data.reconciliation_type.value,
        )

        try:
            transactions = await self._gateway.list_balance_transactions(
                data.start_date, data.end_date
            )
            await self._repo.save_balance_transactions(transactions, reconciliation_id, utcnow())
            donations = await self._repo.donations_in_range(data.start_date, data.end_date)
            result = match_transactions(donations, transactions)
            totals = summarize_totals(transactions, donations, result)
            reconciliation = await self._repo.complete(reconciliation_id, result, totals, utcnow())
        except Exception as exc:
            await self._repo.fail(reconciliation_id, str(exc), utcnow())
            record_reconciliation("failed")
            log.error("reconciliation.failed", exc_info=True)
            raise

        record_reconciliation("completed")
        log.info(
            "reconciliation.completed",
            matched=totals["matched_count"],
            unmatched_donations=totals["unmatched_donations_count"],
            unmatched_stripe=totals["unmatched_stripe_count"],
            discrepancies=totals["discrepancy_count"],
        )
        return reconciliation

    async def list_reconciliations(self, filters: ReconciliationFilters) -> ReconciliationPage:
        rows, pagination = await self._repo.list_reconciliations(filters)
        return ReconciliationPage(reconciliations=rows, pagination=pagination)

    async def get(self, reconciliation_id: str) -> ReconciliationRead:
        reconciliation = await self._repo.get(reconciliation_id)
        if reconciliation is None:
            raise NotFoundError("Reconciliation not found")
        return reconciliation

    async def summary(self, reconciliation_id: str) -> ReconciliationSummary:
        rec = await self.get(reconciliation_id)
        open_count, resolved_count = await self._repo.discrepancy_counts(reconciliation_id)
        stripe_amount = rec.stripe_balance_amount or 0
        stripe_fees = rec.stripe_total_fees or 0
        return ReconciliationSummary(
            total_donations=rec.donations_count,
            total_donation_amount=rec.donations_total_amount or 0,
            total_stripe_charges=rec.stripe_charge_count,
            total_stripe_amount=stripe_amount,
            total_stripe_fees=stripe_fees,
            total_net_amount=stripe_amount - stripe_fees,
            matched_transactions=rec.matched_count,
            unmatched_donations=rec.unmatched_donations_count,
            unmatched_stripe=rec.unmatched_stripe_count,
            discrepancies=rec.discrepancy_count,
            open_discrepancies=open_count,
            resolved_discrepancies=resolved_count,
        )

    async def detail(self, reconciliation_id: str) -> ReconciliationDetail:
        return ReconciliationDetail(
            reconciliation=await self.get(reconciliation_id),
            summary=await self.summary(reconciliation_id),
        )

    async def items(
        self,
        reconciliation_id: str,
        match_status: MatchStatus | None = None,
        page: int = 1,
        limit: int = 50,
    ) -> ReconciliationItemPage:
        await self.get(reconciliation_id)
        items = await self._repo.list_items(reconciliation_id, match_status)
        offset = (page - 1) * limit
        return ReconciliationItemPage(
            items=items[offset : offset + limit],
            pagination=Pagination(
                total=len(items),
                page=page,
                limit=limit,
                total_pages=math.ceil(len(items) / limit),
            ),
        )

    async def discrepancies(self, reconciliation_id: str) -> list[DiscrepancyRead]:
        await self.get(reconciliation_id)
        return await self._repo.list_discrepancies(reconciliation_id)

    async def manual_match(self, data: ManualMatchRequest, user_id: str | None = None) -> None:
        if not await self._repo.manual_match(
            data.donation_id, data.stripe_payment_intent_id, user_id, utcnow()
        ):
            raise NotFoundError("Donation not found")
        logger.info(
            "reconciliation.manual_match",
            donation_id=data.donation_id,
            payment_intent_id=data.stripe_payment_intent_id,
            user_id=user_id,
        )

    async def resolve_discrepancy(
        self, discrepancy_id: str, data: ResolveDiscrepancyRequest, user_id: str | None = None
    ) -> None:
        if not await self._repo.resolve_discrepancy(
            discrepancy_id, data.status, data.resolution_notes, user_id, utcnow()
        ):
            raise NotFoundError("Discrepancy not found")
        logger.info(
            "reconciliation.discrepancy_resolved",
            discrepancy_id=discrepancy_id,
            status=data.status.value,
            user_id=user_id,
        )
