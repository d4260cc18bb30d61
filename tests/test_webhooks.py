"""Tests for outgoing webhooks: signing, URL checks, delivery, and retries."""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from src.crm.core.errors import NotFoundError, ValidationError
from src.crm.models.webhooks import WebhookDeliveryModel
from src.crm.webhooks.repository import WebhookRepository
from src.crm.webhooks.schemas import (
    WebhookDeliveryStatus,
    WebhookEndpointCreate,
    WebhookEndpointUpdate,
    WebhookEventType,
)
from src.crm.webhooks.service import (
    MAX_ATTEMPTS,
    WebhookService,
    build_payload,
    plan_failure,
)
from src.crm.webhooks.signing import sign_payload, verify_signature
from src.crm.webhooks.urls import validate_webhook_url
from src.crm.webhooks.worker import WebhookRetryWorker

ORG_ID = str(uuid.uuid4())
USER_ID = str(uuid.uuid4())
PUBLIC_URL = "https://93.184.216.34/hooks/crm"


class RecordingTransport:
    """httpx MockTransport handler answering with a fixed status."""

    def __init__(self, status_code: int = 200) -> None:
        self.status_code = status_code
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, text="ok" if self.status_code < 400 else "boom")


def _service(session_factory, status_code: int = 200):
    handler = RecordingTransport(status_code)
    repo = WebhookRepository(session_factory)
    service = WebhookService(repo, transport=httpx.MockTransport(handler))
    return repo, service, handler


async def _endpoint(service, events=(WebhookEventType.CONTACT_CREATED,)):
    return await service.create_endpoint(
        ORG_ID, USER_ID, WebhookEndpointCreate(url=PUBLIC_URL, events=list(events))
    )


# ── Signing ──────────────────────────────────────────────────────────────────


class TestSigning:
    def test_round_trip(self):
        header = sign_payload('{"a":1}', "whsec_x", timestamp=1_700_000_000)
        assert header.startswith("t=1700000000,v1=")
        assert verify_signature('{"a":1}', header, "whsec_x", now=1_700_000_010)

    def test_tampered_payload_fails(self):
        header = sign_payload('{"a":1}', "whsec_x", timestamp=1_700_000_000)
        assert not verify_signature('{"a":2}', header, "whsec_x", now=1_700_000_000)

    def test_old_timestamp_fails(self):
        header = sign_payload("{}", "whsec_x", timestamp=1_700_000_000)
        assert not verify_signature("{}", header, "whsec_x", now=1_700_001_000)

    def test_malformed_header(self):
        assert not verify_signature("{}", "garbage", "whsec_x")


class TestPlanFailure:
    def test_backoff_schedule(self):
        now = datetime(2030, 1, 1, tzinfo=timezone.utc)
        status, attempts, next_retry = plan_failure(0, now)
        assert status == WebhookDeliveryStatus.RETRYING
        assert attempts == 1
        assert next_retry == now + timedelta(seconds=60)

        _, _, next_retry = plan_failure(3, now)
        assert next_retry == now + timedelta(seconds=3600)

    def test_fifth_failure_is_terminal(self):
        status, attempts, next_retry = plan_failure(MAX_ATTEMPTS - 1, datetime.now(timezone.utc))
        assert status == WebhookDeliveryStatus.FAILED
        assert attempts == MAX_ATTEMPTS
        assert next_retry is None


def test_payload_shape():
    payload = build_payload(
        "contact.updated",
        {"id": "c1"},
        {"email": "old@example.org"},
        now=datetime(2030, 1, 1, tzinfo=timezone.utc),
    )
    assert payload["type"] == "contact.updated"
    assert payload["createdAt"] == "2030-01-01T00:00:00Z"
    assert payload["data"] == {"object": {"id": "c1"}, "previousAttributes": {"email": "old@example.org"}}


class TestUrlValidation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "url",
        [
            "ftp://93.184.216.34/x",
            "http://127.0.0.1/hook",
            "http://10.0.0.5/hook",
            "http://169.254.169.254/latest/meta-data",
            "http://localhost:8000/hook",
            "http://[::1]/hook",
        ],
    )
    async def test_rejects_internal_or_invalid(self, url):
        with pytest.raises(ValidationError):
            await validate_webhook_url(url, require_https=False)

    @pytest.mark.asyncio
    async def test_https_required_in_production(self):
        with pytest.raises(ValidationError):
            await validate_webhook_url("http://93.184.216.34/hook", require_https=True)

    @pytest.mark.asyncio
    async def test_accepts_public_address(self):
        assert await validate_webhook_url(f"  {PUBLIC_URL} ", require_https=True) == PUBLIC_URL


# ── Service ──────────────────────────────────────────────────────────────────


class TestWebhookService:
    @pytest.mark.asyncio
    async def test_trigger_delivers_signed_payload(self, session_factory):
        repo, service, handler = _service(session_factory)
        endpoint = await _endpoint(service)

        assert await service.trigger(ORG_ID, WebhookEventType.CONTACT_CREATED, {"id": "c1"}) == 1
        assert await service.trigger(ORG_ID, WebhookEventType.DONATION_CREATED, {"id": "d1"}) == 0

        request = handler.requests[0]
        body = request.content.decode()
        assert verify_signature(body, request.headers["X-Webhook-Signature"], endpoint.secret)
        assert request.headers["X-Webhook-Event"] == "contact.created"
        assert json.loads(body)["data"]["object"] == {"id": "c1"}

        [delivery] = await service.list_deliveries(ORG_ID, endpoint.id)
        assert delivery.status == WebhookDeliveryStatus.SUCCESS
        assert delivery.attempts == 0
        assert delivery.delivered_at is not None

        [listed] = await service.list_endpoints(ORG_ID)
        assert listed.total_deliveries == 1
        assert listed.success_rate == 100.0
        assert listed.last_delivery_status == WebhookDeliveryStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_failed_delivery_schedules_retry(self, session_factory):
        repo, service, _ = _service(session_factory, status_code=500)
        endpoint = await _endpoint(service)

        await service.trigger(ORG_ID, WebhookEventType.CONTACT_CREATED, {"id": "c1"})

        [delivery] = await service.list_deliveries(ORG_ID, endpoint.id)
        assert delivery.status == WebhookDeliveryStatus.RETRYING
        assert delivery.attempts == 1
        assert delivery.response_status == 500
        assert delivery.response_body == "boom"
        assert delivery.next_retry_at > datetime.now(timezone.utc)

    @pytest.mark.asyncio
    async def test_endpoints_are_scoped_to_organization(self, session_factory):
        _, service, _ = _service(session_factory)
        endpoint = await _endpoint(service)
        other_org = str(uuid.uuid4())

        with pytest.raises(NotFoundError):
            await service.get_endpoint(other_org, endpoint.id)
        with pytest.raises(NotFoundError):
            await service.delete_endpoint(other_org, endpoint.id)
        assert await service.list_endpoints(other_org) == []

    @pytest.mark.asyncio
    async def test_update_and_regenerate_secret(self, session_factory):
        _, service, _ = _service(session_factory)
        endpoint = await _endpoint(service)

        updated = await service.update_endpoint(
            ORG_ID,
            endpoint.id,
            WebhookEndpointUpdate(
                events=[WebhookEventType.DONATION_CREATED, WebhookEventType.DONATION_CREATED],
                is_active=False,
            ),
        )
        assert updated.events == ["donation.created"]
        assert not updated.is_active

        rotated = await service.regenerate_secret(ORG_ID, endpoint.id)
        assert rotated.secret.startswith("whsec_")
        assert rotated.secret != endpoint.secret

    @pytest.mark.asyncio
    async def test_test_endpoint_reports_http_error(self, session_factory):
        _, service, handler = _service(session_factory, status_code=404)
        endpoint = await _endpoint(service)

        result = await service.test_endpoint(ORG_ID, endpoint.id)
        assert not result.success
        assert result.status_code == 404
        assert result.error == "HTTP 404"
        assert handler.requests[0].headers["X-Webhook-Test"] == "true"
        assert await service.list_deliveries(ORG_ID, endpoint.id) == []


# ── Retry Worker ─────────────────────────────────────────────────────────────


async def _make_due(session_factory, delivery_id: str, attempts: int) -> None:
    async for session in session_factory():
        model = await session.get(WebhookDeliveryModel, uuid.UUID(delivery_id))
        model.next_retry_at = datetime.now(timezone.utc) - timedelta(seconds=1)
        model.attempts = attempts
        await session.commit()


class TestWebhookRetryWorker:
    @pytest.mark.asyncio
    async def test_retry_reuses_row_until_terminal_failure(self, session_factory):
        repo, service, handler = _service(session_factory, status_code=503)
        endpoint = await _endpoint(service)
        await service.trigger(ORG_ID, WebhookEventType.CONTACT_CREATED, {"id": "c1"})
        [delivery] = await service.list_deliveries(ORG_ID, endpoint.id)
        worker = WebhookRetryWorker(repo, service)

        # Not due yet
        assert await worker.run_batch() == 0

        await _make_due(session_factory, delivery.id, attempts=1)
        assert await worker.run_batch() == 1
        retried = await repo.get_delivery(delivery.id)
        assert retried.status == WebhookDeliveryStatus.RETRYING
        assert retried.attempts == 2

        await _make_due(session_factory, delivery.id, attempts=MAX_ATTEMPTS - 1)
        assert await worker.run_batch() == 1
        failed = await repo.get_delivery(delivery.id)
        assert failed.status == WebhookDeliveryStatus.FAILED
        assert failed.attempts == MAX_ATTEMPTS
        assert failed.next_retry_at is None

        assert len(await service.list_deliveries(ORG_ID, endpoint.id)) == 1
        assert len(handler.requests) == 3

    @pytest.mark.asyncio
    async def test_retry_success_keeps_attempt_count(self, session_factory):
        repo, service, handler = _service(session_factory, status_code=500)
        endpoint = await _endpoint(service)
        await service.trigger(ORG_ID, WebhookEventType.CONTACT_CREATED, {"id": "c1"})
        [delivery] = await service.list_deliveries(ORG_ID, endpoint.id)

        handler.status_code = 200
        await _make_due(session_factory, delivery.id, attempts=1)
        assert await WebhookRetryWorker(repo, service).run_batch() == 1

        delivered = await repo.get_delivery(delivery.id)
        assert delivered.status == WebhookDeliveryStatus.SUCCESS
        assert delivered.attempts == 1
        first, second = (json.loads(r.content) for r in handler.requests)
        assert first["id"] == second["id"]

    @pytest.mark.asyncio
    async def test_inactive_endpoint_is_not_retried(self, session_factory):
        repo, service, _ = _service(session_factory, status_code=500)
        endpoint = await _endpoint(service)
        await service.trigger(ORG_ID, WebhookEventType.CONTACT_CREATED, {"id": "c1"})
        [delivery] = await service.list_deliveries(ORG_ID, endpoint.id)
        await service.update_endpoint(ORG_ID, endpoint.id, WebhookEndpointUpdate(is_active=False))

        await _make_due(session_factory, delivery.id, attempts=1)
        assert await WebhookRetryWorker(repo, service).run_batch() == 0

    @pytest.mark.asyncio
    async def test_raising_delivery_does_not_abort_batch(self, session_factory):
        repo, service, handler = _service(session_factory, status_code=500)
        broken = await _endpoint(service)
        healthy = await service.create_endpoint(
            ORG_ID,
            USER_ID,
            WebhookEndpointCreate(
                url="https://93.184.216.34/hooks/other", events=[WebhookEventType.CONTACT_CREATED]
            ),
        )
        await service.trigger(ORG_ID, WebhookEventType.CONTACT_CREATED, {"id": "c1"})
        [broken_delivery] = await service.list_deliveries(ORG_ID, broken.id)
        [healthy_delivery] = await service.list_deliveries(ORG_ID, healthy.id)
        await _make_due(session_factory, broken_delivery.id, attempts=1)
        await _make_due(session_factory, healthy_delivery.id, attempts=1)

        def answer(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/hooks/crm":
                raise RuntimeError("connection reset by peer")
            return httpx.Response(200, text="ok")

        service = WebhookService(repo, transport=httpx.MockTransport(answer))
        assert await WebhookRetryWorker(repo, service).run_batch() == 2

        failed = await repo.get_delivery(broken_delivery.id)
        assert failed.status == WebhookDeliveryStatus.RETRYING
        assert failed.attempts == 2
        assert failed.response_body == "connection reset by peer"
        delivered = await repo.get_delivery(healthy_delivery.id)
        assert delivered.status == WebhookDeliveryStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_unrecorded_failure_does_not_abort_batch(self, session_factory, monkeypatch):
        repo, service, _ = _service(session_factory, status_code=500)
        endpoint = await _endpoint(service)
        await service.trigger(ORG_ID, WebhookEventType.CONTACT_CREATED, {"id": "c1"})
        await service.trigger(ORG_ID, WebhookEventType.CONTACT_CREATED, {"id": "c2"})
        deliveries = await service.list_deliveries(ORG_ID, endpoint.id)
        for delivery in deliveries:
            await _make_due(session_factory, delivery.id, attempts=1)

        async def explode(*args, **kwargs):
            raise RuntimeError("database went away")

        monkeypatch.setattr(service, "retry", explode)
        monkeypatch.setattr(service, "record_failure", explode)

        assert await WebhookRetryWorker(repo, service).run_batch() == 2
