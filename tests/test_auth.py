"""
Tests for bearer-token authentication.
"""
from unittest.mock import AsyncMock

import pytest
from pydantic import ValidationError

from conftest import TEST_JWT_SECRET, bearer, make_token
from middleware.auth import (
    AuthenticationGate, JWTTokenVerifier, authenticate, extract_bearer_token, optional_authenticate
)
from models.identity import Identity, RoleTag, identity_from_claims
from models.request_context import RequestContext
from utils.exceptions import FailureKind, SecurityFailure, TokenVerificationError


@pytest.fixture
def verifier():
    return JWTTokenVerifier(TEST_JWT_SECRET, "HS256")


class TestExtractBearerToken:

    @pytest.mark.parametrize("header, expected", [
        ("Bearer abc.def.ghi", "abc.def.ghi"),
        ("bearer abc.def.ghi", None),
        ("BEARER abc", None),
        ("Basic dXNlcjpwYXNz", None),
        ("Bearer ", None),
        ("Bearerabc", None),
        ("", None),
        (None, None),
    ])
    def test_exact_scheme_only(self, header, expected):
        assert extract_bearer_token(header) == expected


class TestAuthenticate:

    @pytest.mark.asyncio
    async def test_missing_header_skips_verification(self):
        mock_verifier = AsyncMock()

        outcome = await authenticate(None, mock_verifier)

        assert isinstance(outcome, SecurityFailure)
        assert outcome.kind is FailureKind.NO_CREDENTIAL
        assert outcome.message == "No token provided"
        assert outcome.status_code == 401
        mock_verifier.verify.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_malformed_header_skips_verification(self):
        mock_verifier = AsyncMock()

        outcome = await authenticate("Token abc", mock_verifier)

        assert outcome.kind is FailureKind.NO_CREDENTIAL
        mock_verifier.verify.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_valid_token(self, verifier):
        token = make_token(user_id=12, role="Class_Teacher", permissions=["attendance:write"])

        identity = await authenticate(f"Bearer {token}", verifier)

        assert isinstance(identity, Identity)
        assert identity.subject_id == 12
        assert identity.role is RoleTag.CLASS_TEACHER
        assert identity.permissions == frozenset({"attendance:write"})
        assert identity.email == "user12@school.test"

    @pytest.mark.asyncio
    async def test_expired_token(self, verifier):
        token = make_token(expires_in=-60)

        outcome = await authenticate(f"Bearer {token}", verifier)

        assert outcome.kind is FailureKind.INVALID_CREDENTIAL
        assert outcome.message == "Access token expired"

    @pytest.mark.asyncio
    async def test_wrong_signature(self, verifier):
        token = make_token(secret="another-secret-key-that-is-long-enough-123")

        outcome = await authenticate(f"Bearer {token}", verifier)

        assert outcome.kind is FailureKind.INVALID_CREDENTIAL
        assert outcome.message == "Invalid access token"

    @pytest.mark.asyncio
    async def test_garbage_token(self, verifier):
        outcome = await authenticate("Bearer not-a-jwt", verifier)
        assert outcome.kind is FailureKind.INVALID_CREDENTIAL

    @pytest.mark.asyncio
    async def test_verifier_transport_error_fails_closed(self):
        mock_verifier = AsyncMock()
        mock_verifier.verify.side_effect = ConnectionError("auth service down")

        outcome = await authenticate("Bearer abc", mock_verifier)

        assert outcome.kind is FailureKind.INVALID_CREDENTIAL

    @pytest.mark.asyncio
    async def test_verifier_rejection_message_is_kept(self):
        mock_verifier = AsyncMock()
        mock_verifier.verify.side_effect = TokenVerificationError("Token revoked")

        outcome = await authenticate("Bearer abc", mock_verifier)

        assert outcome.message == "Token revoked"

    @pytest.mark.asyncio
    async def test_unknown_role_is_rejected(self, verifier):
        token = make_token(role="Janitor")

        outcome = await authenticate(f"Bearer {token}", verifier)

        assert outcome.kind is FailureKind.INVALID_CREDENTIAL

    @pytest.mark.asyncio
    async def test_optional_authenticate_swallows_failures(self, verifier):
        assert await optional_authenticate(None, verifier) is None
        assert await optional_authenticate("Bearer junk", verifier) is None


class TestAuthenticationGate:

    @pytest.mark.asyncio
    async def test_attaches_identity(self, verifier):
        gate = AuthenticationGate(verifier)
        ctx = RequestContext.build("GET", "/api/v1/students", headers=bearer(make_token(user_id=3)))

        assert await gate(ctx) is None
        assert ctx.identity.subject_id == 3
        assert ctx.scope_key() == "user:3"

    @pytest.mark.asyncio
    async def test_returns_failure_without_identity(self, verifier):
        gate = AuthenticationGate(verifier)
        ctx = RequestContext.build("GET", "/api/v1/students")

        failure = await gate(ctx)

        assert failure.kind is FailureKind.NO_CREDENTIAL
        assert ctx.identity is None

    @pytest.mark.asyncio
    async def test_optional_gate_never_fails(self, verifier):
        gate = AuthenticationGate(verifier, optional=True)
        ctx = RequestContext.build("GET", "/api/v1/csrf-token", headers={"Authorization": "Bearer junk"})

        assert await gate(ctx) is None
        assert ctx.identity is None


class TestIdentityFromClaims:

    def test_role_is_case_insensitive(self):
        identity = identity_from_claims({"userId": 1, "username": "admin", "role": "school_admin"})

        assert identity.role is RoleTag.SCHOOL_ADMIN
        assert identity.is_admin

    def test_numeric_string_subject(self):
        assert identity_from_claims({"sub": "41", "role": "Parent"}).subject_id == 41

    @pytest.mark.parametrize("claims", [
        {"role": "Parent"},
        {"userId": "abc", "role": "Parent"},
        {"userId": 1},
        {"userId": 1, "role": "Dean"},
    ])
    def test_invalid_claims_raise(self, claims):
        with pytest.raises(ValueError):
            identity_from_claims(claims)

    def test_identity_is_immutable(self):
        identity = identity_from_claims({"userId": 1, "role": "Parent"})

        with pytest.raises(ValidationError):
            identity.subject_id = 2
