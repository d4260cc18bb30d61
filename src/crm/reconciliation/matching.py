"""Donation <-> Stripe balance transaction matching.

Pure functions with no I/O; the service persists what they return.

Only ``charge`` transactions take part. Pass 1 pairs a donation with the
charge whose source (or id) equals the donation's payment-intent or charge
id. Pass 2 pairs remaining donations with a remaining charge of the same
amount created within 24 hours. Each pair is then classified; leftovers on
either side become unmatched items.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Any

from src.crm.payments.schemas import BalanceTransaction
from src.crm.reconciliation.schemas import (
    DiscrepancySeverity,
    LedgerDonation,
    MatchConfidence,
    MatchStatus,
)

AMOUNT_TOLERANCE = Decimal("0.01")
DATE_TOLERANCE = timedelta(hours=24)
HIGH_SEVERITY_AMOUNT = Decimal("10")

_DISCREPANCY_TYPES = {
    MatchStatus.AMOUNT_MISMATCH: "amount_mismatch",
    MatchStatus.DATE_MISMATCH: "date_mismatch",
    MatchStatus.UNMATCHED_DONATION: "missing_stripe_transaction",
    MatchStatus.UNMATCHED_STRIPE: "missing_donation",
}


@dataclass
class MatchItem:
    match_status: MatchStatus
    donation: LedgerDonation | None = None
    transaction: BalanceTransaction | None = None
    confidence: MatchConfidence | None = None

    @property
    def has_discrepancy(self) -> bool:
        return self.match_status != MatchStatus.MATCHED

    @property
    def discrepancy_type(self) -> str | None:
        return _DISCREPANCY_TYPES.get(self.match_status)

    @property
    def amount_difference(self) -> Decimal | None:
        if self.donation is None or self.transaction is None:
            return None
        return abs(self.transaction.amount - self.donation.amount)


@dataclass
class MatchResult:
    items: list[MatchItem] = field(default_factory=list)

    def _with_status(self, *statuses: MatchStatus) -> list[MatchItem]:
        return [item for item in self.items if item.match_status in statuses]

    @property
    def pairs(self) -> list[MatchItem]:
        return [i for i in self.items if i.donation is not None and i.transaction is not None]

    @property
    def unmatched_donations(self) -> list[MatchItem]:
        return self._with_status(MatchStatus.UNMATCHED_DONATION)

    @property
    def unmatched_stripe(self) -> list[MatchItem]:
        return self._with_status(MatchStatus.UNMATCHED_STRIPE)


def _identifiers_match(donation: LedgerDonation, tx: BalanceTransaction) -> bool:
    ids = {value for value in (donation.stripe_payment_intent_id, donation.stripe_charge_id) if value}
    if tx.source is not None and tx.source in ids:
        return True
    return donation.stripe_charge_id is not None and tx.id == donation.stripe_charge_id


def _amount_and_date_match(donation: LedgerDonation, tx: BalanceTransaction) -> bool:
    return (
        abs(donation.amount - tx.amount) < AMOUNT_TOLERANCE
        and abs(donation.donation_date - tx.created) < DATE_TOLERANCE
    )


def classify_pair(donation: LedgerDonation, tx: BalanceTransaction) -> MatchStatus:
    if abs(tx.amount - donation.amount) > AMOUNT_TOLERANCE:
        return MatchStatus.AMOUNT_MISMATCH
    if abs(tx.created - donation.donation_date) > DATE_TOLERANCE:
        return MatchStatus.DATE_MISMATCH
    return MatchStatus.MATCHED


def match_transactions(
    donations: list[LedgerDonation], transactions: list[BalanceTransaction]
) -> MatchResult:
    remaining_donations = list(donations)
    remaining_charges = [tx for tx in transactions if tx.type == "charge"]
    pairs: list[tuple[LedgerDonation, BalanceTransaction, MatchConfidence]] = []

    for donation in list(remaining_donations):
        if not (donation.stripe_payment_intent_id or donation.stripe_charge_id):
            continue
        tx = next((t for t in remaining_charges if _identifiers_match(donation, t)), None)
        if tx is not None:
            pairs.append((donation, tx, MatchConfidence.HIGH))
            remaining_donations.remove(donation)
            remaining_charges.remove(tx)

    for donation in list(remaining_donations):
        tx = next((t for t in remaining_charges if _amount_and_date_match(donation, t)), None)
        if tx is not None:
            pairs.append((donation, tx, MatchConfidence.MEDIUM))
            remaining_donations.remove(donation)
            remaining_charges.remove(tx)

    result = MatchResult()
    for donation, tx, confidence in pairs:
        result.items.append(
            MatchItem(classify_pair(donation, tx), donation=donation, transaction=tx, confidence=confidence)
        )
    for donation in remaining_donations:
        result.items.append(MatchItem(MatchStatus.UNMATCHED_DONATION, donation=donation))
    for tx in remaining_charges:
        result.items.append(MatchItem(MatchStatus.UNMATCHED_STRIPE, transaction=tx))
    return result


def discrepancy_details(item: MatchItem) -> tuple[DiscrepancySeverity, str] | None:
    """Severity and description for a non-matched item; None for clean matches."""
    donation, tx = item.donation, item.transaction
    if item.match_status == MatchStatus.UNMATCHED_DONATION:
        return (
            DiscrepancySeverity.HIGH,
            f"Donation {donation.id} ({donation.amount} {donation.payment_status}) "
            "has no matching Stripe transaction",
        )
    if item.match_status == MatchStatus.UNMATCHED_STRIPE:
        return (
            DiscrepancySeverity.HIGH,
            f"Stripe transaction {tx.source or tx.id} ({tx.amount}) has no matching donation record",
        )
    if item.match_status == MatchStatus.AMOUNT_MISMATCH:
        difference = item.amount_difference
        severity = (
            DiscrepancySeverity.HIGH if difference > HIGH_SEVERITY_AMOUNT else DiscrepancySeverity.MEDIUM
        )
        return (
            severity,
            f"Amount mismatch: Donation {donation.amount} vs Stripe {tx.amount} "
            f"(difference: {difference})",
        )
    if item.match_status == MatchStatus.DATE_MISMATCH:
        return (
            DiscrepancySeverity.LOW,
            f"Date mismatch: Donation {donation.donation_date.isoformat()} vs "
            f"Stripe {tx.created.isoformat()}",
        )
    return None


def summarize_totals(
    transactions: list[BalanceTransaction], donations: list[LedgerDonation], result: MatchResult
) -> dict[str, Any]:
    """Column values for a completed reconciliation run."""
    charges = [tx for tx in transactions if tx.type == "charge"]
    refunds = [tx for tx in transactions if tx.type == "refund"]
    return {
        "stripe_balance_amount": sum((tx.amount for tx in charges), Decimal("0")),
        "stripe_charge_count": len(charges),
        "stripe_refund_count": len(refunds),
        "stripe_total_fees": sum((tx.fee for tx in transactions), Decimal("0")),
        "donations_total_amount": sum((d.amount for d in donations), Decimal("0")),
        "donations_count": len(donations),
        "matched_count": len(result.pairs),
        "unmatched_stripe_count": len(result.unmatched_stripe),
        "unmatched_donations_count": len(result.unmatched_donations),
        "discrepancy_count": sum(1 for item in result.items if item.has_discrepancy),
    }
