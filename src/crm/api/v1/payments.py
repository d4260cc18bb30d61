"""Stripe webhook endpoint.

Unauthenticated: the Stripe signature header is the credential. The body is
read raw because signature verification covers the exact bytes.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Header, Request

from src.crm.api.deps import get_stripe_webhook_receiver

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="stripe-signature"),
    receiver: Any = Depends(get_stripe_webhook_receiver),
) -> dict[str, bool]:
    """Acknowledge a Stripe event.

    Returns 400 only for a missing or invalid signature. Every verified
    event gets a 200 acknowledgement, including stale, duplicate and
    failed ones, so Stripe stops redelivering.
    """
    payload = await request.body()
    return await receiver.handle(payload, stripe_signature)
