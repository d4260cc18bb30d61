"""Identifier types for values supplied by API callers."""

from __future__ import annotations

import uuid
from typing import Annotated

from pydantic import AfterValidator


def canonical_uuid(value: str) -> str:
    """Return the canonical text form of a UUID string; ValueError when malformed."""
    return str(uuid.UUID(value))


# A UUID kept as text. Malformed values fail request validation (422).
UUIDStr = Annotated[str, AfterValidator(canonical_uuid)]
