"""
Audit trail middleware.
Hands completed requests to the AuditRecorder; the write happens in the background.
"""
import logging
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from middleware.security_middleware import trusts_proxy_headers
from models.request_context import resolve_client_ip
from security.audit_recorder import AuditRecorder

logger = logging.getLogger(__name__)


class AuditMiddleware(BaseHTTPMiddleware):
    """Record successful data-mutating requests after the handler has responded."""

    def __init__(self, app, recorder: AuditRecorder):
        super().__init__(app)
        self.recorder = recorder

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Touch state first so the route shares this request's state dict
        state = request.state
        response = await call_next(request)

        try:
            ctx = getattr(state, "security_context", None)
            self.recorder.record_mutation(
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                identity=getattr(state, "identity", None),
                path_params=ctx.path_params if ctx is not None else dict(request.path_params),
                body=ctx.body if ctx is not None else None,
                explicit_entity_id=getattr(state, "audit_entity_id", None),
                ip_address=ctx.client_ip if ctx is not None else _client_ip(request),
                user_agent=request.headers.get("User-Agent"),
            )
        except Exception as e:
            # Auditing must never change the outcome of the request
            logger.error(f"❌ [AUDIT] Error in audit middleware for {request.url.path}: {e}")

        return response


def _client_ip(request: Request) -> str:
    client_host = request.client.host if request.client else None
    return resolve_client_ip(request.headers, client_host, trusts_proxy_headers(request))
