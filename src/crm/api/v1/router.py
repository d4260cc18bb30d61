"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.crm.api.v1 import (
    event_reminders,
    follow_ups,
    health,
    payments,
    reconciliation,
    scheduled_reports,
    webhooks,
)

router = APIRouter(prefix="/api/v1")

router.include_router(health.router)
router.include_router(event_reminders.router)
router.include_router(webhooks.router)
router.include_router(follow_ups.router)
router.include_router(scheduled_reports.router)
router.include_router(reconciliation.router)
router.include_router(payments.router)
