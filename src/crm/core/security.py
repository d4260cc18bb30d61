"""JWT authentication primitives.

Access tokens carry the user id in ``sub`` and the organization scope in
``organization_id``. Token issuance lives with the main CRM auth service;
this module only needs to mint tokens for tooling and tests and to verify
them on incoming requests.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from src.crm.config import get_settings
from src.crm.core.errors import UnauthorizedError
from src.crm.core.ids import canonical_uuid


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    """Create a JWT access token.

    The data dict should contain at minimum:
    - sub: user_id (str)
    - organization_id: organization UUID (str)
    """
    settings = get_settings()
    to_encode = data.copy()
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({
        "exp": expire,
        "iat": now,
        "type": "access",
    })
    return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def verify_token(token: str, token_type: str = "access") -> dict:
    """Decode and validate a JWT token.

    Raises:
        UnauthorizedError: If the token is invalid, expired, of the wrong type,
            or missing (or carrying malformed) subject / organization claims.
    """
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
        )
    except JWTError:
        raise UnauthorizedError("Could not validate credentials")

    if payload.get("type") != token_type:
        raise UnauthorizedError("Could not validate credentials")
    if not payload.get("sub") or not payload.get("organization_id"):
        raise UnauthorizedError("Could not validate credentials")
    try:
        canonical_uuid(str(payload["sub"]))
        canonical_uuid(str(payload["organization_id"]))
    except ValueError:
        raise UnauthorizedError("Could not validate credentials")
    return payload
