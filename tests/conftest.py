"""
Pytest configuration and fixtures for the request-security pipeline.
Builds an isolated app per test: fake clock, in-process stores, private metrics registry.
"""
import os
import time
from typing import Any, Dict, Iterable, Optional
from unittest.mock import AsyncMock, MagicMock

import jwt
import pytest
from fastapi import Body, Depends, Request
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient

# Set testing environment variables before importing the app
TEST_JWT_SECRET = "test-jwt-secret-key-for-testing-0123456789"
os.environ["JWT_SECRET"] = TEST_JWT_SECRET
os.environ["ENVIRONMENT"] = "test"
os.environ.pop("REDIS_URL", None)

from config import settings
from main import create_app
from middleware.access_control import require_resource_ownership, require_role, require_self_access
from middleware.auth import AuthenticationGate
from middleware.csrf_protection import csrf_exempt
from middleware.redis_rate_limiter import InMemoryCounterStore
from middleware.security_middleware import current_identity, requires, secure_router
from models.identity import Identity, RoleTag
from models.request_context import RequestContext
from monitoring.metrics import SecurityMetrics
from security.audit_recorder import InMemoryAuditStore

VALID_PASSWORD = "correct-horse-battery"
DOCUMENT_OWNERS = {7: 1, 8: 2}


class FakeClock:
    """Manually advanced clock for window arithmetic."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def make_token(
    user_id: int = 1,
    role: str = "Subject_Teacher",
    permissions: Iterable[str] = (),
    expires_in: int = 3600,
    secret: str = TEST_JWT_SECRET,
    **extra_claims
) -> str:
    """Signed access token with the claims issued by the auth service."""
    claims: Dict[str, Any] = {
        "userId": user_id,
        "username": f"user{user_id}",
        "email": f"user{user_id}@school.test",
        "role": role,
        "permissions": list(permissions),
        "exp": int(time.time()) + expires_in,
    }
    claims.update(extra_claims)
    return jwt.encode(claims, secret, algorithm="HS256")


def bearer(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def make_identity(user_id: int = 1, role: RoleTag = RoleTag.SUBJECT_TEACHER, permissions=()) -> Identity:
    return Identity(
        subject_id=user_id,
        display_name=f"user{user_id}",
        role=role,
        permissions=frozenset(permissions),
    )


async def _document_owner(ctx: RequestContext) -> Optional[int]:
    return DOCUMENT_OWNERS.get(int(ctx.path_params["id"]))


def add_school_routes(app):
    """Representative school endpoints protected by the app's pipeline."""
    pipeline = app.state.pipeline
    anonymous_gate = AuthenticationGate(pipeline.authentication.verifier, optional=True)

    protected = secure_router(pipeline, prefix="/api/v1")
    public = secure_router(pipeline.with_authentication(anonymous_gate), prefix="/api/v1")

    @protected.post("/students")
    async def create_student(payload: Dict[str, Any] = Body(...)):
        return {"success": True, "data": payload}

    @protected.put("/students/{id}")
    async def update_student(id: str, payload: Dict[str, Any] = Body(...)):
        return {"success": True, "data": {"id": id, **payload}}

    @protected.get("/students")
    async def list_students(request: Request):
        return {"success": True, "data": dict(request.query_params)}

    @protected.delete("/config/roles/{id}")
    @requires(require_role(RoleTag.SCHOOL_ADMIN))
    async def delete_role(id: str):
        return {"success": True}

    @protected.get("/users/{userId}/profile")
    @requires(require_self_access("userId"))
    async def get_profile(userId: str, identity: Identity = Depends(current_identity)):
        return {"success": True, "data": {"userId": userId, "viewer": identity.subject_id}}

    @protected.get("/documents/{id}")
    @requires(require_resource_ownership(_document_owner))
    async def get_document(id: str):
        return {"success": True, "data": {"id": id}}

    @public.post("/auth/login")
    @csrf_exempt
    async def login(payload: Dict[str, Any] = Body(...)):
        if payload.get("password") != VALID_PASSWORD:
            return JSONResponse(
                status_code=401,
                content={"success": False, "error": {"code": "invalid_credentials", "message": "Invalid credentials"}}
            )
        return {"success": True, "data": {"accessToken": make_token(user_id=1)}}

    app.include_router(protected)
    app.include_router(public)
    return app


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def metrics():
    """Fresh metrics on a private registry."""
    return SecurityMetrics()


@pytest.fixture
def counter_store(clock):
    return InMemoryCounterStore(clock=clock)


@pytest.fixture
def audit_store():
    return InMemoryAuditStore(max_entries=100)


@pytest.fixture
def app_settings():
    return settings.model_copy(update={
        "rate_limit_enabled": True,
        "rate_limit_per_minute": 100,
        "auth_rate_limit_attempts": 5,
        "csrf_protection_enabled": True,
        "audit_enabled": True,
    })


@pytest.fixture
def app(app_settings, counter_store, audit_store, clock, metrics):
    application = create_app(
        app_settings=app_settings,
        counter_store=counter_store,
        audit_store=audit_store,
        clock=clock,
        metrics=metrics,
    )
    return add_school_routes(application)


@pytest.fixture
def client(app):
    """Test client for the app; leaving the block drains pending audit writes."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def teacher_headers():
    return bearer(make_token(user_id=1, role="Subject_Teacher"))


@pytest.fixture
def admin_headers():
    return bearer(make_token(user_id=99, role="School_Admin"))


@pytest.fixture
def csrf_headers(client):
    """Fetch a CSRF token; the client keeps the cookie, the header carries the echo."""
    response = client.get("/api/v1/csrf-token")
    token = response.json()["data"]["csrfToken"]
    return {"X-CSRF-Token": token}


@pytest.fixture
def mock_redis_client():
    """Mock redis.asyncio client whose MULTI pipeline returns [count, True]."""
    mock_redis = MagicMock()
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[1, True])
    pipe.__aenter__ = AsyncMock(return_value=pipe)
    pipe.__aexit__ = AsyncMock(return_value=False)
    mock_redis.pipeline.return_value = pipe
    mock_redis.eval = AsyncMock(return_value=0)
    return mock_redis


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "security: mark test as security related")
    config.addinivalue_line("markers", "integration: mark test as integration test")
    config.addinivalue_line("markers", "unit: mark test as unit test")
