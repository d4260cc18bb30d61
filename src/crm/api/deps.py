"""FastAPI dependencies: the authenticated caller and app.state services.

Services are built once in the application lifespan and stored on
``app.state``. A service that failed to initialize is ``None`` there, and
its getter answers 503 instead of failing with an AttributeError.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import Request

from src.crm.core.errors import ServiceUnavailableError, UnauthorizedError
from src.crm.core.security import verify_token


@dataclass(frozen=True)
class CurrentUser:
    id: str
    organization_id: str
    email: str | None = None


async def get_current_user(request: Request) -> CurrentUser:
    """Authenticate the Bearer JWT on the request.

    Raises:
        UnauthorizedError: Missing, malformed, expired or incomplete token.
    """
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise UnauthorizedError("Authentication required")
    payload = verify_token(auth_header[7:], token_type="access")
    return CurrentUser(
        id=str(payload["sub"]),
        organization_id=str(payload["organization_id"]),
        email=payload.get("email"),
    )


def _service(request: Request, attribute: str, label: str) -> Any:
    service = getattr(request.app.state, attribute, None)
    if service is None:
        raise ServiceUnavailableError(f"{label} not initialized")
    return service


def get_event_reminder_service(request: Request) -> Any:
    return _service(request, "event_reminder_service", "Event reminder service")


def get_webhook_service(request: Request) -> Any:
    return _service(request, "webhook_service", "Webhook service")


def get_follow_up_service(request: Request) -> Any:
    return _service(request, "follow_up_service", "Follow-up service")


def get_scheduled_report_service(request: Request) -> Any:
    return _service(request, "scheduled_report_service", "Scheduled report service")


def get_reconciliation_service(request: Request) -> Any:
    return _service(request, "reconciliation_service", "Reconciliation service")


def get_stripe_webhook_receiver(request: Request) -> Any:
    return _service(request, "stripe_webhook_receiver", "Payment webhook receiver")
