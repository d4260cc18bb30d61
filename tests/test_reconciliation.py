"""Tests for Stripe/donation matching and the reconciliation service."""

from __future__ import annotations

import random
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from src.crm.core.errors import NotFoundError, ServiceUnavailableError
from src.crm.models.payments import DonationModel
from src.crm.payments.schemas import BalanceTransaction
from src.crm.payments.stripe_client import balance_transaction_from_stripe
from src.crm.reconciliation.matching import (
    discrepancy_details,
    match_transactions,
    summarize_totals,
)
from src.crm.reconciliation.repository import ReconciliationRepository
from src.crm.reconciliation.scheduler import ReconciliationScheduler, previous_day_range
from src.crm.reconciliation.schemas import (
    DiscrepancySeverity,
    DiscrepancyStatus,
    LedgerDonation,
    ManualMatchRequest,
    MatchConfidence,
    MatchStatus,
    ReconciliationCreate,
    ReconciliationFilters,
    ReconciliationStatus,
    ReconciliationType,
    ResolveDiscrepancyRequest,
)
from src.crm.reconciliation.service import ReconciliationService, generate_reconciliation_number
from tests.helpers import seed

DAY = datetime(2030, 1, 15, tzinfo=timezone.utc)


def at(hour: int, minute: int = 0, days: int = 0) -> datetime:
    return DAY + timedelta(days=days, hours=hour, minutes=minute)


def tx(tx_id: str, amount: str, created: datetime, source: str | None = None, type_: str = "charge"):
    return BalanceTransaction(
        id=tx_id,
        source=source,
        type=type_,
        amount=Decimal(amount),
        fee=Decimal("1.00"),
        net=Decimal(amount) - Decimal("1.00"),
        currency="USD",
        status="available",
        created=created,
    )


def ledger(amount: str, when: datetime, intent: str | None = None, charge: str | None = None):
    return LedgerDonation(
        id=str(uuid.uuid4()),
        amount=Decimal(amount),
        donation_date=when,
        payment_status="completed",
        stripe_payment_intent_id=intent,
        stripe_charge_id=charge,
    )


# ── Matching ─────────────────────────────────────────────────────────────────


class TestMatching:
    def test_identifier_match_is_high_confidence(self):
        donation = ledger("50.00", at(10), intent="pi_1")
        result = match_transactions([donation], [tx("txn_1", "50.00", at(10, 5), source="pi_1")])

        [item] = result.items
        assert item.match_status == MatchStatus.MATCHED
        assert item.confidence == MatchConfidence.HIGH
        assert discrepancy_details(item) is None

    def test_charge_id_matches_transaction_id(self):
        donation = ledger("50.00", at(10), charge="ch_9")
        [item] = match_transactions([donation], [tx("ch_9", "50.00", at(10))]).items
        assert item.confidence == MatchConfidence.HIGH

    def test_amount_and_date_fallback_is_medium_confidence(self):
        donation = ledger("20.00", at(12))
        [item] = match_transactions([donation], [tx("txn_2", "20.00", at(13), source="ch_2")]).items
        assert item.match_status == MatchStatus.MATCHED
        assert item.confidence == MatchConfidence.MEDIUM

    def test_amount_mismatch_severity(self):
        big = ledger("100.00", at(9), intent="pi_big")
        small = ledger("30.00", at(9), intent="pi_small")
        result = match_transactions(
            [big, small],
            [
                tx("txn_big", "80.00", at(9), source="pi_big"),
                tx("txn_small", "25.00", at(9), source="pi_small"),
            ],
        )
        by_donation = {item.donation.id: item for item in result.items}
        assert by_donation[big.id].match_status == MatchStatus.AMOUNT_MISMATCH
        assert discrepancy_details(by_donation[big.id])[0] == DiscrepancySeverity.HIGH
        assert discrepancy_details(by_donation[small.id])[0] == DiscrepancySeverity.MEDIUM
        assert by_donation[big.id].amount_difference == Decimal("20.00")

    def test_date_mismatch_is_low_severity(self):
        donation = ledger("40.00", at(9), intent="pi_late")
        [item] = match_transactions([donation], [tx("txn_late", "40.00", at(9, days=3), source="pi_late")]).items
        assert item.match_status == MatchStatus.DATE_MISMATCH
        assert item.discrepancy_type == "date_mismatch"
        assert discrepancy_details(item)[0] == DiscrepancySeverity.LOW

    def test_only_charges_take_part_and_leftovers_are_unmatched(self):
        donation = ledger("15.00", at(8))
        refund = tx("txn_ref", "-15.00", at(8), type_="refund")
        orphan = tx("txn_orphan", "33.00", at(8), source="ch_orphan")

        result = match_transactions([donation], [refund, orphan])

        assert [i.match_status for i in result.items] == [
            MatchStatus.UNMATCHED_DONATION,
            MatchStatus.UNMATCHED_STRIPE,
        ]
        assert result.unmatched_donations[0].discrepancy_type == "missing_stripe_transaction"
        assert result.unmatched_stripe[0].discrepancy_type == "missing_donation"

        totals = summarize_totals([refund, orphan], [donation], result)
        assert totals["stripe_charge_count"] == 1
        assert totals["stripe_refund_count"] == 1
        assert totals["stripe_balance_amount"] == Decimal("33.00")
        assert totals["stripe_total_fees"] == Decimal("2.00")
        assert totals["matched_count"] == 0
        assert totals["discrepancy_count"] == 2

    def test_each_charge_is_used_once(self):
        first = ledger("10.00", at(7))
        second = ledger("10.00", at(7, 30))
        result = match_transactions([first, second], [tx("txn_only", "10.00", at(7, 10))])
        assert len(result.pairs) == 1
        assert len(result.unmatched_donations) == 1


def test_balance_transaction_from_stripe_converts_cents():
    converted = balance_transaction_from_stripe(
        {
            "id": "txn_1",
            "source": {"id": "ch_1"},
            "type": "charge",
            "amount": 2550,
            "fee": 104,
            "net": 2446,
            "currency": "usd",
            "created": 1_900_000_000,
        }
    )
    assert converted.source == "ch_1"
    assert converted.amount == Decimal("25.50")
    assert converted.fee == Decimal("1.04")
    assert converted.currency == "USD"
    assert converted.created == datetime.fromtimestamp(1_900_000_000, tz=timezone.utc)


def test_reconciliation_number_format():
    number = generate_reconciliation_number(DAY, random.Random(7))
    assert number.startswith("REC-300115-")
    assert len(number) == len("REC-300115-0000")


# ── Service ──────────────────────────────────────────────────────────────────


class FakeGateway:
    """StripeGateway double returning canned balance transactions."""

    def __init__(self, transactions=(), configured=True, error: Exception | None = None):
        self.transactions = list(transactions)
        self.configured = configured
        self.error = error
        self.calls: list[tuple[datetime, datetime]] = []

    async def list_balance_transactions(self, start, end):
        self.calls.append((start, end))
        if self.error is not None:
            raise self.error
        return self.transactions


def donation(amount: str, when: datetime, intent=None, status="completed") -> DonationModel:
    return DonationModel(
        id=uuid.uuid4(),
        donation_number=f"DON-{uuid.uuid4().hex[:6]}",
        amount=Decimal(amount),
        donation_date=when,
        payment_status=status,
        stripe_payment_intent_id=intent,
    )


def _window() -> ReconciliationCreate:
    return ReconciliationCreate(start_date=at(0), end_date=at(23, 59))


async def _reconcile(session_factory):
    matched = donation("50.00", at(10), intent="pi_1")
    fallback = donation("20.00", at(12))
    mismatched = donation("100.00", at(14), intent="pi_3")
    missing = donation("15.00", at(16))
    failed = donation("70.00", at(17), status="failed")
    outside = donation("50.00", at(10, days=2), intent="pi_out")
    await seed(session_factory, matched, fallback, mismatched, missing, failed, outside)

    gateway = FakeGateway(
        [
            tx("txn_1", "50.00", at(10, 5), source="pi_1"),
            tx("txn_2", "20.00", at(13), source="ch_2"),
            tx("txn_3", "80.00", at(14), source="pi_3"),
            tx("txn_4", "33.00", at(18), source="ch_4"),
            tx("txn_5", "-20.00", at(19), source="re_5", type_="refund"),
        ]
    )
    repo = ReconciliationRepository(session_factory)
    service = ReconciliationService(repo, gateway)
    user_id = str(uuid.uuid4())
    reconciliation = await service.create(_window(), user_id=user_id)
    return service, reconciliation, {"matched": matched, "mismatched": mismatched, "missing": missing}


async def _donation(session_factory, donation_id) -> DonationModel:
    async for session in session_factory():
        return await session.get(DonationModel, donation_id)


class TestReconciliationService:
    @pytest.mark.asyncio
    async def test_run_totals(self, session_factory):
        _, reconciliation, _ = await _reconcile(session_factory)

        assert reconciliation.status == ReconciliationStatus.COMPLETED
        assert reconciliation.reconciliation_type == ReconciliationType.MANUAL
        assert reconciliation.reconciliation_number.startswith("REC-")
        assert reconciliation.stripe_charge_count == 4
        assert reconciliation.stripe_refund_count == 1
        assert reconciliation.stripe_balance_amount == Decimal("183.00")
        assert reconciliation.stripe_total_fees == Decimal("5.00")
        assert reconciliation.donations_count == 4
        assert reconciliation.donations_total_amount == Decimal("185.00")
        assert reconciliation.matched_count == 3
        assert reconciliation.unmatched_donations_count == 1
        assert reconciliation.unmatched_stripe_count == 1
        assert reconciliation.discrepancy_count == 3
        assert reconciliation.completed_at is not None

    @pytest.mark.asyncio
    async def test_items_discrepancies_and_ledger_updates(self, session_factory):
        service, reconciliation, donations = await _reconcile(session_factory)

        items = await service.items(reconciliation.id)
        assert items.pagination.total == 5
        mismatches = await service.items(reconciliation.id, match_status=MatchStatus.AMOUNT_MISMATCH)
        [mismatch] = mismatches.items
        assert mismatch.discrepancy_amount == Decimal("20.00")
        assert mismatch.match_confidence == MatchConfidence.HIGH

        discrepancies = await service.discrepancies(reconciliation.id)
        assert {d.discrepancy_type for d in discrepancies} == {
            "amount_mismatch",
            "missing_stripe_transaction",
            "missing_donation",
        }
        assert all(d.status == DiscrepancyStatus.OPEN for d in discrepancies)

        matched = await _donation(session_factory, donations["matched"].id)
        assert matched.reconciliation_status == "matched"
        assert matched.stripe_fee == Decimal("1.00")
        assert matched.reconciled_at is not None
        mismatched = await _donation(session_factory, donations["mismatched"].id)
        assert mismatched.reconciliation_status == "discrepancy"
        missing = await _donation(session_factory, donations["missing"].id)
        assert missing.reconciliation_status == "unreconciled"

    @pytest.mark.asyncio
    async def test_resolve_discrepancy_updates_summary(self, session_factory):
        service, reconciliation, _ = await _reconcile(session_factory)
        [first, *_] = await service.discrepancies(reconciliation.id)

        await service.resolve_discrepancy(
            first.id,
            ResolveDiscrepancyRequest(status="resolved", resolution_notes="Refund issued by phone"),
        )

        detail = await service.detail(reconciliation.id)
        assert detail.summary.open_discrepancies == 2
        assert detail.summary.resolved_discrepancies == 1
        assert detail.summary.total_net_amount == Decimal("178.00")

        with pytest.raises(NotFoundError):
            await service.resolve_discrepancy(
                str(uuid.uuid4()),
                ResolveDiscrepancyRequest(status="ignored", resolution_notes="n/a"),
            )

    @pytest.mark.asyncio
    async def test_manual_match(self, session_factory):
        service, _, donations = await _reconcile(session_factory)
        missing = donations["missing"]

        await service.manual_match(
            ManualMatchRequest(donation_id=str(missing.id), stripe_payment_intent_id="pi_manual")
        )

        updated = await _donation(session_factory, missing.id)
        assert updated.reconciliation_status == "matched"
        assert updated.stripe_payment_intent_id == "pi_manual"

        with pytest.raises(NotFoundError):
            await service.manual_match(
                ManualMatchRequest(donation_id=str(uuid.uuid4()), stripe_payment_intent_id="pi_x")
            )

    @pytest.mark.asyncio
    async def test_stripe_not_configured(self, session_factory):
        repo = ReconciliationRepository(session_factory)
        service = ReconciliationService(repo, FakeGateway(configured=False))

        with pytest.raises(ServiceUnavailableError):
            await service.create(_window())
        page = await service.list_reconciliations(ReconciliationFilters())
        assert page.pagination.total == 0

    @pytest.mark.asyncio
    async def test_gateway_failure_marks_run_failed(self, session_factory):
        repo = ReconciliationRepository(session_factory)
        service = ReconciliationService(repo, FakeGateway(error=RuntimeError("stripe down")))

        with pytest.raises(RuntimeError):
            await service.create(_window())

        page = await service.list_reconciliations(ReconciliationFilters(status="failed"))
        [failed] = page.reconciliations
        assert failed.error_message == "stripe down"
        assert failed.completed_at is not None

    @pytest.mark.asyncio
    async def test_unknown_reconciliation(self, session_factory):
        service = ReconciliationService(ReconciliationRepository(session_factory), FakeGateway())
        with pytest.raises(NotFoundError):
            await service.detail(str(uuid.uuid4()))


# ── Scheduler ────────────────────────────────────────────────────────────────


class RecordingReconciliationService:
    def __init__(self, configured=True, error: Exception | None = None):
        self.stripe_configured = configured
        self.error = error
        self.requests: list[ReconciliationCreate] = []

    async def create(self, data, user_id=None):
        self.requests.append(data)
        if self.error is not None:
            raise self.error


class TestReconciliationScheduler:
    def test_previous_day_range(self):
        start, end = previous_day_range(datetime(2030, 3, 1, 2, 0, tzinfo=timezone.utc))
        assert start == datetime(2030, 2, 28, 0, 0, tzinfo=timezone.utc)
        assert end == datetime(2030, 2, 28, 23, 59, 59, 999999, tzinfo=timezone.utc)

    def test_not_started_without_stripe(self):
        scheduler = ReconciliationScheduler(RecordingReconciliationService(configured=False))
        assert scheduler.start() is False
        assert not scheduler.started
        scheduler.stop()

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        scheduler = ReconciliationScheduler(RecordingReconciliationService(), hour=4)
        assert scheduler.start() is True
        assert scheduler.started
        scheduler.stop()
        assert not scheduler.started

    @pytest.mark.asyncio
    async def test_run_daily_reconciles_previous_day(self):
        service = RecordingReconciliationService()
        await ReconciliationScheduler(service).run_daily(now=datetime(2030, 3, 1, 3, tzinfo=timezone.utc))

        [request] = service.requests
        assert request.reconciliation_type == ReconciliationType.SCHEDULED
        assert request.start_date == datetime(2030, 2, 28, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_run_daily_swallows_failures(self):
        service = RecordingReconciliationService(error=RuntimeError("boom"))
        await ReconciliationScheduler(service).run_daily()
        assert len(service.requests) == 1
