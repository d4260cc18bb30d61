"""REST API endpoints for payment reconciliation runs and discrepancies."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query

from src.crm.api.deps import CurrentUser, get_current_user, get_reconciliation_service
from src.crm.reconciliation.schemas import (
    DiscrepancyRead,
    ManualMatchRequest,
    MatchStatus,
    ReconciliationCreate,
    ReconciliationDetail,
    ReconciliationFilters,
    ReconciliationItemPage,
    ReconciliationPage,
    ReconciliationRead,
    ReconciliationStatus,
    ReconciliationType,
    ResolveDiscrepancyRequest,
)

router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])


@router.post("", response_model=ReconciliationRead, status_code=201)
async def create_reconciliation(
    body: ReconciliationCreate,
    user: CurrentUser = Depends(get_current_user),
    service: Any = Depends(get_reconciliation_service),
) -> ReconciliationRead:
    """Run a reconciliation for the given date range."""
    return await service.create(body, user_id=user.id)


@router.get("", response_model=ReconciliationPage)
async def list_reconciliations(
    status: ReconciliationStatus | None = None,
    reconciliation_type: ReconciliationType | None = Query(default=None, alias="type"),
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    user: CurrentUser = Depends(get_current_user),
    service: Any = Depends(get_reconciliation_service),
) -> ReconciliationPage:
    filters = ReconciliationFilters(
        status=status,
        reconciliation_type=reconciliation_type,
        start_date=start_date,
        end_date=end_date,
        page=page,
        limit=limit,
    )
    return await service.list_reconciliations(filters)


@router.post("/manual-match", status_code=200)
async def manual_match(
    body: ManualMatchRequest,
    user: CurrentUser = Depends(get_current_user),
    service: Any = Depends(get_reconciliation_service),
) -> dict[str, str]:
    """Attach a Stripe payment intent to a donation by hand."""
    await service.manual_match(body, user_id=user.id)
    return {"message": "Transaction matched successfully"}


@router.post("/discrepancies/{discrepancy_id}/resolve", status_code=200)
async def resolve_discrepancy(
    discrepancy_id: uuid.UUID,
    body: ResolveDiscrepancyRequest,
    user: CurrentUser = Depends(get_current_user),
    service: Any = Depends(get_reconciliation_service),
) -> dict[str, str]:
    await service.resolve_discrepancy(str(discrepancy_id), body, user_id=user.id)
    return {"message": "Discrepancy resolved successfully"}


@router.get("/{reconciliation_id}", response_model=ReconciliationDetail)
async def get_reconciliation(
    reconciliation_id: uuid.UUID,
    user: CurrentUser = Depends(get_current_user),
    service: Any = Depends(get_reconciliation_service),
) -> ReconciliationDetail:
    """A reconciliation run with its summary totals."""
    return await service.detail(str(reconciliation_id))


@router.get("/{reconciliation_id}/items", response_model=ReconciliationItemPage)
async def list_items(
    reconciliation_id: uuid.UUID,
    match_status: MatchStatus | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=100),
    user: CurrentUser = Depends(get_current_user),
    service: Any = Depends(get_reconciliation_service),
) -> ReconciliationItemPage:
    return await service.items(str(reconciliation_id), match_status, page, limit)


@router.get("/{reconciliation_id}/discrepancies", response_model=list[DiscrepancyRead])
async def list_discrepancies(
    reconciliation_id: uuid.UUID,
    user: CurrentUser = Depends(get_current_user),
    service: Any = Depends(get_reconciliation_service),
) -> list[DiscrepancyRead]:
    """Discrepancies of one run, most severe first."""
    return await service.discrepancies(str(reconciliation_id))
