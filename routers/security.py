"""
Security router - CSRF token issuance and caller introspection.
"""
import logging

from fastapi import APIRouter, Depends
from fastapi.responses import Response

from middleware.auth import AuthenticationGate
from middleware.csrf_protection import CsrfTokenService
from middleware.pipeline import SecurityPipeline
from middleware.security_middleware import current_identity, secure_router, security_context
from models.identity import Identity
from models.request_context import RequestContext
from monitoring.metrics import METRICS_CONTENT_TYPE, SecurityMetrics

logger = logging.getLogger(__name__)


def build_security_router(
    pipeline: SecurityPipeline,
    csrf_service: CsrfTokenService,
    anonymous_gate: AuthenticationGate
) -> APIRouter:
    """Routes for the CSRF handshake and the current identity."""
    public = secure_router(pipeline.with_authentication(anonymous_gate), prefix="/api/v1", tags=["Security"])
    protected = secure_router(pipeline, prefix="/api/v1", tags=["Security"])

    @public.get("/csrf-token")
    async def get_csrf_token(ctx: RequestContext = Depends(security_context)):
        """
        Return the double-submit token, issuing the cookie on first call.
        The client echoes the value in X-CSRF-Token on every mutating request.
        """
        token = csrf_service.ensure_token(ctx)
        return {"success": True, "data": {"csrfToken": token}}

    @protected.get("/auth/me")
    async def get_current_identity(identity: Identity = Depends(current_identity)):
        return {
            "success": True,
            "data": {
                "userId": identity.subject_id,
                "username": identity.display_name,
                "email": identity.email,
                "role": identity.role.value,
                "permissions": sorted(identity.permissions),
            },
        }

    router = APIRouter()
    router.include_router(public)
    router.include_router(protected)
    return router


def build_metrics_router(metrics: SecurityMetrics) -> APIRouter:
    router = APIRouter(tags=["Monitoring"])

    @router.get("/metrics")
    async def prometheus_metrics():
        return Response(content=metrics.export(), media_type=METRICS_CONTENT_TYPE)

    return router
