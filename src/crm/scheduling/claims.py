"""Conditional-update claims for work-queue tables.

A claim is two steps. Candidates are selected with ``FOR UPDATE SKIP LOCKED``
(ignored by backends without row locks), then each candidate is updated with
a guard that repeats the claimability test. A row belongs to this worker only
if its UPDATE touched exactly one row, so two pollers racing for the same row
can never both win, whatever the isolation level.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from sqlalchemy import ColumnElement, or_, update
from sqlalchemy.ext.asyncio import AsyncSession


def claimable(column: Any, stale_before: datetime) -> ColumnElement[bool]:
    """Claim marker is empty, or was set before ``stale_before`` (crashed worker)."""
    return or_(column.is_(None), column < stale_before)


async def claim_rows(
    session: AsyncSession,
    model: Any,
    candidate_ids: Iterable[uuid.UUID],
    *,
    guard: ColumnElement[bool],
    values: dict[str, Any],
) -> list[uuid.UUID]:
    """Apply ``values`` to each candidate still matching ``guard``; commit.

    Returns the ids this session actually claimed, in candidate order.
    """
    claimed: list[uuid.UUID] = []
    for row_id in candidate_ids:
        result = await session.execute(
            update(model)
            .where(model.id == row_id, guard)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            claimed.append(row_id)
    await session.commit()
    return claimed
