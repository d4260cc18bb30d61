"""Tests for JWT verification, the error envelope, and time helpers."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from src.crm.core.errors import (
    ConflictError,
    NotFoundError,
    ServiceUnavailableError,
    UnauthorizedError,
    ValidationError,
    error_envelope,
)
from src.crm.core.security import create_access_token, verify_token
from src.crm.core.timeutils import as_utc

USER_ID = str(uuid.uuid4())
ORG_ID = str(uuid.uuid4())


class TestTokens:
    def test_round_trip(self):
        token = create_access_token({"sub": USER_ID, "organization_id": ORG_ID, "email": "a@b.org"})
        payload = verify_token(token)
        assert payload["sub"] == USER_ID
        assert payload["organization_id"] == ORG_ID
        assert payload["type"] == "access"

    def test_expired(self):
        token = create_access_token(
            {"sub": USER_ID, "organization_id": ORG_ID}, expires_delta=timedelta(seconds=-5)
        )
        with pytest.raises(UnauthorizedError):
            verify_token(token)

    def test_wrong_type(self):
        token = create_access_token({"sub": USER_ID, "organization_id": ORG_ID})
        with pytest.raises(UnauthorizedError):
            verify_token(token, token_type="refresh")

    def test_organization_claim_required(self):
        token = create_access_token({"sub": USER_ID})
        with pytest.raises(UnauthorizedError):
            verify_token(token)

    @pytest.mark.parametrize("claim", ["sub", "organization_id"])
    def test_malformed_identifier_claims(self, claim):
        claims = {"sub": USER_ID, "organization_id": ORG_ID, claim: "not-a-uuid"}
        with pytest.raises(UnauthorizedError):
            verify_token(create_access_token(claims))

    def test_garbage(self):
        with pytest.raises(UnauthorizedError):
            verify_token("abc.def.ghi")


class TestErrors:
    @pytest.mark.parametrize(
        "error, status, code",
        [
            (ValidationError("bad"), 400, "validation_error"),
            (UnauthorizedError("who"), 401, "unauthorized"),
            (NotFoundError("gone"), 404, "not_found"),
            (ConflictError("busy"), 409, "conflict"),
            (ServiceUnavailableError("down"), 503, "service_unavailable"),
        ],
    )
    def test_status_and_code(self, error, status, code):
        assert error.status_code == status
        assert error.code == code
        assert str(error) == error.message

    def test_envelope(self):
        assert error_envelope("conflict", "Already sent", 409) == {
            "error": {"code": "conflict", "message": "Already sent", "status": 409}
        }
        assert error_envelope("validation_error", "x", 422, [{"field": "a"}])["error"]["details"] == [
            {"field": "a"}
        ]


def test_as_utc_treats_naive_values_as_utc():
    naive = datetime(2030, 1, 1, 12, 0)
    assert as_utc(naive) == datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)
    assert as_utc(None) is None
    eastern = datetime(2030, 1, 1, 7, 0, tzinfo=timezone(timedelta(hours=-5)))
    assert as_utc(eastern) == datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)
