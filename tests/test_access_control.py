"""
Tests for the authorization gates.
"""
from unittest.mock import AsyncMock

import pytest

from conftest import make_identity
from middleware.access_control import (
    parse_subject_id, require_permissions, require_resource_ownership, require_role, require_self_access
)
from models.identity import RoleTag
from models.request_context import RequestContext
from utils.exceptions import FailureKind

TEACHER = make_identity(1, RoleTag.SUBJECT_TEACHER, ["students:read"])
ADMIN = make_identity(99, RoleTag.SCHOOL_ADMIN)


def context(identity=None, **path_params):
    return RequestContext.build("GET", "/api/v1/users/x", identity=identity, path_params=path_params)


class TestRequireRole:

    @pytest.mark.asyncio
    async def test_allows_listed_role(self):
        gate = require_role(RoleTag.SCHOOL_ADMIN, RoleTag.SUBJECT_TEACHER)
        assert await gate(context(TEACHER)) is None

    @pytest.mark.asyncio
    async def test_denies_other_roles(self):
        failure = await require_role(RoleTag.SCHOOL_ADMIN)(context(TEACHER))

        assert failure.kind is FailureKind.PERMISSION_DENIED
        assert failure.status_code == 403

    @pytest.mark.asyncio
    async def test_role_names_are_case_insensitive(self):
        assert await require_role("school_admin")(context(ADMIN)) is None

    @pytest.mark.asyncio
    async def test_missing_identity_is_an_authentication_failure(self):
        failure = await require_role(RoleTag.SCHOOL_ADMIN)(context())

        assert failure.kind is FailureKind.AUTHENTICATION_REQUIRED
        assert failure.status_code == 401

    def test_gate_reports_authorization_stage(self):
        assert require_role("Parent").stage == "authorization"


class TestRequirePermissions:

    @pytest.mark.asyncio
    async def test_requires_every_permission(self):
        gate = require_permissions("students:read", "students:write")

        failure = await gate(context(TEACHER))

        assert failure.kind is FailureKind.PERMISSION_DENIED
        assert failure.message == "You do not have the required permissions"

    @pytest.mark.asyncio
    async def test_allows_when_all_held(self):
        identity = make_identity(5, RoleTag.ACCOUNTANT, ["invoices:read", "invoices:write", "reports:read"])

        assert await require_permissions("invoices:read", "invoices:write")(context(identity)) is None

    @pytest.mark.asyncio
    async def test_missing_identity(self):
        failure = await require_permissions("students:read")(context())
        assert failure.kind is FailureKind.AUTHENTICATION_REQUIRED


class TestRequireSelfAccess:

    @pytest.mark.asyncio
    async def test_own_resource(self):
        assert await require_self_access()(context(TEACHER, userId="1")) is None

    @pytest.mark.asyncio
    async def test_other_subject(self):
        failure = await require_self_access()(context(TEACHER, userId="2"))

        assert failure.kind is FailureKind.PERMISSION_DENIED
        assert failure.message == "You can only access your own resources"

    @pytest.mark.asyncio
    async def test_admin_override(self):
        assert await require_self_access()(context(ADMIN, userId="2")) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("value", ["abc", "1.5", ""])
    async def test_non_numeric_identifier(self, value):
        failure = await require_self_access()(context(TEACHER, userId=value))

        assert failure.kind is FailureKind.INVALID_IDENTIFIER
        assert failure.status_code == 403
        assert failure.message == "Invalid user ID"

    @pytest.mark.asyncio
    async def test_missing_parameter(self):
        failure = await require_self_access("studentId")(context(TEACHER, userId="1"))
        assert failure.kind is FailureKind.INVALID_IDENTIFIER

    @pytest.mark.asyncio
    async def test_missing_identity(self):
        failure = await require_self_access()(context(userId="1"))
        assert failure.kind is FailureKind.AUTHENTICATION_REQUIRED


class TestRequireResourceOwnership:

    @pytest.mark.asyncio
    async def test_owner_allowed(self):
        resolver = AsyncMock(return_value=1)

        ctx = context(TEACHER, id="7")
        assert await require_resource_ownership(resolver)(ctx) is None
        resolver.assert_awaited_once_with(ctx)

    @pytest.mark.asyncio
    async def test_non_owner_denied(self):
        failure = await require_resource_ownership(AsyncMock(return_value=2))(context(TEACHER, id="8"))

        assert failure.kind is FailureKind.PERMISSION_DENIED
        assert failure.message == "You do not own this resource"

    @pytest.mark.asyncio
    async def test_string_owner_id_is_compared_numerically(self):
        assert await require_resource_ownership(AsyncMock(return_value="1"))(context(TEACHER)) is None

    @pytest.mark.asyncio
    async def test_missing_resource_is_forbidden(self):
        failure = await require_resource_ownership(AsyncMock(return_value=None))(context(TEACHER, id="9"))

        assert failure.kind is FailureKind.RESOURCE_NOT_FOUND
        assert failure.status_code == 403

    @pytest.mark.asyncio
    async def test_admin_override(self):
        assert await require_resource_ownership(AsyncMock(return_value=2))(context(ADMIN)) is None

    @pytest.mark.asyncio
    async def test_missing_identity_skips_lookup(self):
        resolver = AsyncMock(return_value=1)

        failure = await require_resource_ownership(resolver)(context())

        assert failure.kind is FailureKind.AUTHENTICATION_REQUIRED
        resolver.assert_not_awaited()


@pytest.mark.parametrize("value, expected", [
    ("12", 12),
    (" 7 ", 7),
    (5, 5),
    ("-3", -3),
    ("1.5", None),
    ("1e3", None),
    ("abc", None),
    (None, None),
    (True, None),
])
def test_parse_subject_id(value, expected):
    assert parse_subject_id(value) == expected
