"""Tests for the Stripe webhook receiver."""

from __future__ import annotations

import time
import uuid
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select

from src.crm.core.errors import ValidationError
from src.crm.models.payments import DonationModel, PaymentWebhookReceiptModel
from src.crm.payments.receiver import (
    ACK_DUPLICATE,
    ACK_PROCESSING_ERROR,
    ACK_RECEIVED,
    ACK_REJECTED,
    StripeWebhookReceiver,
)
from src.crm.payments.repository import PaymentRepository
from src.crm.payments.stripe_client import StripeGateway, WebhookVerificationError

from tests.helpers import STRIPE_WEBHOOK_SECRET, seed, stripe_payload, stripe_signature

def _receiver(session_factory) -> tuple[PaymentRepository, StripeWebhookReceiver]:
    repo = PaymentRepository(session_factory)
    gateway = StripeGateway("sk_test_123", STRIPE_WEBHOOK_SECRET)
    return repo, StripeWebhookReceiver(repo, gateway, max_age_seconds=300)

def _donation(**overrides) -> DonationModel:
    values = {
        "id": uuid.uuid4(),
        "donation_number": "DON-0001",
        "amount": Decimal("25.00"),
        "donation_date": datetime.now(timezone.utc),
        "payment_status": "pending",
    }
    values.update(overrides)
    return DonationModel(**values)

async def _load(session_factory, model, **where):
    async for session in session_factory():
        result = await session.execute(
            select(model).where(*(getattr(model, key) == value for key, value in where.items()))
        )
        return result.scalar_one()

class TestConstructEvent:
    def test_valid_signature(self):
        payload = stripe_payload("payment_intent.succeeded", {"id": "pi_1"}, created=1_900_000_000)
        event = StripeGateway("sk", STRIPE_WEBHOOK_SECRET).construct_event(payload, stripe_signature(payload))
        assert event.type == "payment_intent.succeeded"
        assert event.created == datetime.fromtimestamp(1_900_000_000, tz=timezone.utc)
        assert event.data_object == {"id": "pi_1"}

    def test_wrong_secret(self):
        payload = stripe_payload("payment_intent.succeeded", {})
        with pytest.raises(WebhookVerificationError):
            StripeGateway("sk", STRIPE_WEBHOOK_SECRET).construct_event(
                payload, stripe_signature(payload, "whsec_other")
            )

    def test_missing_webhook_secret(self):
        payload = stripe_payload("payment_intent.succeeded", {})
        with pytest.raises(WebhookVerificationError):
            StripeGateway("sk").construct_event(payload, stripe_signature(payload))

class TestStripeWebhookReceiver:
    @pytest.mark.asyncio
    async def test_missing_signature(self, session_factory):
        _, receiver = _receiver(session_factory)
        with pytest.raises(ValidationError):
            await receiver.handle(stripe_payload("charge.refunded", {}), None)

    @pytest.mark.asyncio
    async def test_invalid_signature(self, session_factory):
        _, receiver = _receiver(session_factory)
        with pytest.raises(ValidationError):
            await receiver.handle(stripe_payload("charge.refunded", {}), "t=1,v1=deadbeef")

    @pytest.mark.asyncio
    async def test_payment_succeeded_completes_donation(self, session_factory):
        donation = _donation()
        await seed(session_factory, donation)
        _, receiver = _receiver(session_factory)
        payload = stripe_payload(
            "payment_intent.succeeded",
            {"id": "pi_123", "metadata": {"donationId": str(donation.id)}},
            event_id="evt_success",
        )

        assert await receiver.handle(payload, stripe_signature(payload)) == ACK_RECEIVED

        updated = await _load(session_factory, DonationModel, id=donation.id)
        assert updated.payment_status == "completed"
        assert updated.stripe_payment_intent_id == "pi_123"
        receipt = await _load(session_factory, PaymentWebhookReceiptModel, event_id="evt_success")
        assert receipt.processing_status == "processed"
        assert receipt.processed_at is not None

    @pytest.mark.asyncio
    async def test_duplicate_event_is_acknowledged_once(self, session_factory):
        donation = _donation()
        await seed(session_factory, donation)
        _, receiver = _receiver(session_factory)
        payload = stripe_payload(
            "payment_intent.payment_failed",
            {"id": "pi_9", "metadata": {"donationId": str(donation.id)}},
        )

        assert await receiver.handle(payload, stripe_signature(payload)) == ACK_RECEIVED
        assert await receiver.handle(payload, stripe_signature(payload)) == ACK_DUPLICATE

        updated = await _load(session_factory, DonationModel, id=donation.id)
        assert updated.payment_status == "failed"

    @pytest.mark.asyncio
    async def test_stale_event_is_rejected_without_receipt(self, session_factory):
        _, receiver = _receiver(session_factory)
        payload = stripe_payload(
            "payment_intent.succeeded", {"id": "pi_old"}, created=int(time.time()) - 3600
        )

        assert await receiver.handle(payload, stripe_signature(payload)) == ACK_REJECTED

        async for session in session_factory():
            receipts = (await session.execute(select(PaymentWebhookReceiptModel))).scalars().all()
            assert receipts == []

    @pytest.mark.asyncio
    async def test_refund_marks_matching_donations(self, session_factory):
        by_intent = _donation(payment_status="completed", stripe_payment_intent_id="pi_r")
        by_charge = _donation(
            donation_number="DON-0002", payment_status="completed", stripe_charge_id="ch_r"
        )
        await seed(session_factory, by_intent, by_charge)
        _, receiver = _receiver(session_factory)

        partial = stripe_payload(
            "charge.refunded", {"id": "ch_r", "payment_intent": "pi_r", "refunded": False}
        )
        assert await receiver.handle(partial, stripe_signature(partial)) == ACK_RECEIVED
        assert (await _load(session_factory, DonationModel, id=by_intent.id)).payment_status == "completed"

        full = stripe_payload(
            "charge.refunded",
            {"id": "ch_r", "payment_intent": "pi_r", "refunded": True, "amount_refunded": 2500},
        )
        assert await receiver.handle(full, stripe_signature(full)) == ACK_RECEIVED
        assert (await _load(session_factory, DonationModel, id=by_intent.id)).payment_status == "refunded"
        assert (await _load(session_factory, DonationModel, id=by_charge.id)).payment_status == "refunded"

    @pytest.mark.asyncio
    async def test_unhandled_event_type_is_received(self, session_factory):
        _, receiver = _receiver(session_factory)
        payload = stripe_payload("customer.created", {"id": "cus_1"})
        assert await receiver.handle(payload, stripe_signature(payload)) == ACK_RECEIVED

    @pytest.mark.asyncio
    async def test_processing_error_is_acknowledged_and_recorded(self, session_factory, monkeypatch):
        repo, receiver = _receiver(session_factory)

        async def explode(*args, **kwargs):
            raise RuntimeError("database went away")

        monkeypatch.setattr(repo, "set_donation_status", explode)
        payload = stripe_payload(
            "payment_intent.succeeded",
            {"id": "pi_x", "metadata": {"donationId": str(uuid.uuid4())}},
            event_id="evt_broken",
        )

        assert await receiver.handle(payload, stripe_signature(payload)) == ACK_PROCESSING_ERROR

        receipt = await _load(session_factory, PaymentWebhookReceiptModel, event_id="evt_broken")
        assert receipt.processing_status == "failed"
        assert receipt.error_message == "database went away"

    @pytest.mark.asyncio
    async def test_unknown_donation_reference_is_ignored(self, session_factory):
        _, receiver = _receiver(session_factory)
        payload = stripe_payload(
            "payment_intent.succeeded", {"id": "pi_y", "metadata": {"donationId": "not-a-uuid"}}
        )
        assert await receiver.handle(payload, stripe_signature(payload)) == ACK_RECEIVED
