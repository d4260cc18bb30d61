"""Webhook repository -- endpoints, delivery log, and retry claims.

Uses the session_factory callable pattern: each method opens one session
and maps ORM rows to Pydantic read schemas.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import and_, case, delete, func, select, update

from src.crm.core.database import SessionFactory
from src.crm.core.timeutils import as_utc
from src.crm.models.webhooks import WebhookDeliveryModel, WebhookEndpointModel
from src.crm.scheduling.claims import claim_rows, claimable
from src.crm.webhooks.schemas import (
    ClaimedWebhookDelivery,
    WebhookDeliveryRead,
    WebhookDeliveryStatus,
    WebhookEndpointRead,
    WebhookEndpointWithStats,
)

logger = structlog.get_logger(__name__)


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_endpoint(model: WebhookEndpointModel) -> WebhookEndpointRead:
    return WebhookEndpointRead(
        id=str(model.id),
        organization_id=str(model.organization_id),
        user_id=str(model.user_id) if model.user_id else None,
        url=model.url,
        description=model.description,
        secret=model.secret,
        events=list(model.events or []),
        is_active=model.is_active,
        last_delivery_at=as_utc(model.last_delivery_at),
        last_delivery_status=model.last_delivery_status,
        created_at=as_utc(model.created_at),
        updated_at=as_utc(model.updated_at),
    )


def _model_to_delivery(model: WebhookDeliveryModel) -> WebhookDeliveryRead:
    return WebhookDeliveryRead(
        id=str(model.id),
        webhook_endpoint_id=str(model.webhook_endpoint_id),
        event_type=model.event_type,
        payload=model.payload,
        status=model.status,
        response_status=model.response_status,
        response_body=model.response_body,
        attempts=model.attempts,
        next_retry_at=as_utc(model.next_retry_at),
        delivered_at=as_utc(model.delivered_at),
        created_at=as_utc(model.created_at),
    )


# ── Repository ──────────────────────────────────────────────────────────────


class WebhookRepository:
    """Async persistence for webhook endpoints and deliveries.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    # ── Endpoints ───────────────────────────────────────────────────────────

    async def list_endpoints(self, organization_id: str) -> list[WebhookEndpointWithStats]:
        """Endpoints newest first, each with delivery counts and success rate."""
        delivery = WebhookDeliveryModel
        async for session in self._session_factory():
            stmt = (
                select(
                    WebhookEndpointModel,
                    func.count(delivery.id).label("total"),
                    func.count(case((delivery.status == "success", delivery.id))).label("ok"),
                    func.count(case((delivery.status == "failed", delivery.id))).label("failed"),
                )
                .outerjoin(delivery, delivery.webhook_endpoint_id == WebhookEndpointModel.id)
                .where(WebhookEndpointModel.organization_id == uuid.UUID(organization_id))
                .group_by(WebhookEndpointModel.id)
                .order_by(WebhookEndpointModel.created_at.desc())
            )
            result = await session.execute(stmt)
            endpoints = []
            for model, total, ok, failed in result.all():
                endpoints.append(
                    WebhookEndpointWithStats(
                        **_model_to_endpoint(model).model_dump(),
                        total_deliveries=total,
                        successful_deliveries=ok,
                        failed_deliveries=failed,
                        success_rate=(ok / total * 100) if total else 100.0,
                    )
                )
            return endpoints

    async def get_endpoint(
        self, organization_id: str, endpoint_id: str
    ) -> WebhookEndpointRead | None:
        async for session in self._session_factory():
            model = await self._load_endpoint(session, organization_id, endpoint_id)
            return _model_to_endpoint(model) if model is not None else None

    async def _load_endpoint(self, session, organization_id: str, endpoint_id: str):
        result = await session.execute(
            select(WebhookEndpointModel).where(
                WebhookEndpointModel.id == uuid.UUID(endpoint_id),
                WebhookEndpointModel.organization_id == uuid.UUID(organization_id),
            )
        )
        return result.scalar_one_or_none()

    async def create_endpoint(
        self,
        organization_id: str,
        user_id: str,
        url: str,
        description: str | None,
        events: list[str],
        secret: str,
    ) -> WebhookEndpointRead:
        async for session in self._session_factory():
            model = WebhookEndpointModel(
                organization_id=uuid.UUID(organization_id),
                user_id=uuid.UUID(user_id),
                url=url,
                description=description,
                secret=secret,
                events=events,
                is_active=True,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_endpoint(model)

    async def update_endpoint(
        self, organization_id: str, endpoint_id: str, fields: dict[str, Any], now: datetime
    ) -> WebhookEndpointRead | None:
        async for session in self._session_factory():
            model = await self._load_endpoint(session, organization_id, endpoint_id)
            if model is None:
                return None
            for key, value in fields.items():
                setattr(model, key, value)
            model.updated_at = now
            await session.commit()
            await session.refresh(model)
            return _model_to_endpoint(model)

    async def delete_endpoint(self, organization_id: str, endpoint_id: str) -> bool:
        async for session in self._session_factory():
            endpoint_uuid = uuid.UUID(endpoint_id)
            result = await session.execute(
                delete(WebhookEndpointModel).where(
                    WebhookEndpointModel.id == endpoint_uuid,
                    WebhookEndpointModel.organization_id == uuid.UUID(organization_id),
                )
            )
            if result.rowcount:
                await session.execute(
                    delete(WebhookDeliveryModel).where(
                        WebhookDeliveryModel.webhook_endpoint_id == endpoint_uuid
                    )
                )
            await session.commit()
            return result.rowcount > 0

    async def list_subscribers(
        self, organization_id: str, event_type: str
    ) -> list[WebhookEndpointRead]:
        """Active endpoints of the organization subscribed to ``event_type``."""
        async for session in self._session_factory():
            result = await session.execute(
                select(WebhookEndpointModel).where(
                    WebhookEndpointModel.organization_id == uuid.UUID(organization_id),
                    WebhookEndpointModel.is_active.is_(True),
                )
            )
            return [
                _model_to_endpoint(model)
                for model in result.scalars().all()
                if event_type in (model.events or [])
            ]

    # ── Deliveries ──────────────────────────────────────────────────────────

    async def list_deliveries(self, endpoint_id: str, limit: int = 50) -> list[WebhookDeliveryRead]:
        async for session in self._session_factory():
            result = await session.execute(
                select(WebhookDeliveryModel)
                .where(WebhookDeliveryModel.webhook_endpoint_id == uuid.UUID(endpoint_id))
                .order_by(WebhookDeliveryModel.created_at.desc())
                .limit(limit)
            )
            return [_model_to_delivery(m) for m in result.scalars().all()]

    async def get_delivery(self, delivery_id: str) -> WebhookDeliveryRead | None:
        async for session in self._session_factory():
            model = await session.get(WebhookDeliveryModel, uuid.UUID(delivery_id))
            return _model_to_delivery(model) if model is not None else None

    async def create_delivery(
        self, endpoint_id: str, event_type: str, payload: dict[str, Any]
    ) -> str:
        async for session in self._session_factory():
            model = WebhookDeliveryModel(
                webhook_endpoint_id=uuid.UUID(endpoint_id),
                event_type=event_type,
                payload=payload,
                status=WebhookDeliveryStatus.PENDING.value,
                attempts=0,
            )
            session.add(model)
            await session.commit()
            return str(model.id)

    async def mark_delivery(
        self,
        delivery_id: str,
        endpoint_id: str,
        *,
        status: WebhookDeliveryStatus,
        attempts: int,
        response_status: int | None,
        response_body: str | None,
        next_retry_at: datetime | None,
        now: datetime,
    ) -> None:
        """Store one attempt's outcome and release any claim.

        Terminal outcomes (success, failed) also stamp the endpoint's
        last-delivery fields.
        """
        values: dict[str, Any] = {
            "status": status.value,
            "attempts": attempts,
            "next_retry_at": next_retry_at,
            "processing_started_at": None,
        }
        if response_status is not None:
            values["response_status"] = response_status
        if response_body is not None:
            values["response_body"] = response_body
        if status == WebhookDeliveryStatus.SUCCESS:
            values["delivered_at"] = now

        async for session in self._session_factory():
            await session.execute(
                update(WebhookDeliveryModel)
                .where(WebhookDeliveryModel.id == uuid.UUID(delivery_id))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if status in (WebhookDeliveryStatus.SUCCESS, WebhookDeliveryStatus.FAILED):
                await session.execute(
                    update(WebhookEndpointModel)
                    .where(WebhookEndpointModel.id == uuid.UUID(endpoint_id))
                    .values(last_delivery_at=now, last_delivery_status=status.value)
                    .execution_options(synchronize_session=False)
                )
            await session.commit()

    # ── Worker Claims ───────────────────────────────────────────────────────

    async def claim_due_retries(
        self, limit: int, now: datetime, stale_after: timedelta
    ) -> list[ClaimedWebhookDelivery]:
        """Claim ``retrying`` deliveries whose retry time has come, oldest first."""
        delivery = WebhookDeliveryModel
        claim_guard = and_(
            delivery.status == WebhookDeliveryStatus.RETRYING.value,
            delivery.next_retry_at <= now,
            claimable(delivery.processing_started_at, now - stale_after),
        )

        async for session in self._session_factory():
            stmt = (
                select(delivery.id)
                .join(WebhookEndpointModel, WebhookEndpointModel.id == delivery.webhook_endpoint_id)
                .where(claim_guard, WebhookEndpointModel.is_active.is_(True))
                .order_by(delivery.next_retry_at)
                .limit(limit)
                .with_for_update(of=delivery, skip_locked=True)
            )
            candidate_ids = list((await session.execute(stmt)).scalars().all())
            if not candidate_ids:
                await session.rollback()
                return []

            claimed_ids = await claim_rows(
                session,
                delivery,
                candidate_ids,
                guard=claim_guard,
                values={"processing_started_at": now},
            )
            if not claimed_ids:
                return []

            result = await session.execute(
                select(delivery, WebhookEndpointModel.url, WebhookEndpointModel.secret)
                .join(WebhookEndpointModel, WebhookEndpointModel.id == delivery.webhook_endpoint_id)
                .where(delivery.id.in_(claimed_ids))
                .order_by(delivery.next_retry_at)
                .execution_options(populate_existing=True)
            )
            claimed = [
                ClaimedWebhookDelivery(
                    id=str(model.id),
                    webhook_endpoint_id=str(model.webhook_endpoint_id),
                    event_type=model.event_type,
                    payload=model.payload,
                    attempts=model.attempts,
                    url=url,
                    secret=secret,
                )
                for model, url, secret in result.all()
            ]

        logger.info("webhooks.retries_claimed", count=len(claimed))
        return claimed
