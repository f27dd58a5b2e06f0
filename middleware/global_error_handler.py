"""
Outer error translation.

SecurityFailureError raised by the secured routes is rendered here as the
JSON envelope ``{"success": false, "error": {...}}``. GlobalErrorMiddleware
turns anything unexpected into a 500 JSON response and tags every response
with X-Request-ID.
"""
import time
import uuid
from typing import Callable
import logging

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from utils.exceptions import SecurityFailure, SecurityFailureError

logger = logging.getLogger(__name__)


def failure_response(failure: SecurityFailure, request_id: str = None) -> JSONResponse:
    """Render a SecurityFailure with its status code and headers."""
    content = {
        "success": False,
        "error": failure.to_dict(),
    }
    if request_id:
        content["requestId"] = request_id
    response = JSONResponse(content=content, status_code=failure.status_code, headers=failure.headers or None)
    if failure.retry_after is not None:
        response.headers["Retry-After"] = str(failure.retry_after)
    return response


async def security_failure_handler(request: Request, exc: SecurityFailureError) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None)
    return failure_response(exc.failure, request_id)


def register_error_handlers(app: FastAPI) -> None:
    """Install the security failure translator on ``app``."""
    app.add_exception_handler(SecurityFailureError, security_failure_handler)


class GlobalErrorMiddleware(BaseHTTPMiddleware):
    """
    Ensures every response includes:
    - X-Request-ID for tracing
    - X-Response-Time
    - a JSON body for unhandled errors
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Generate or propagate request ID
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        start_time = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as e:
            logger.exception(f"[{request_id}] Unhandled exception in {request.url.path}: {e}")

            response = JSONResponse(
                content={
                    "success": False,
                    "error": {
                        "code": "internal_server_error",
                        "message": "Internal server error",
                    },
                    "requestId": request_id,
                },
                status_code=500
            )
            response.headers["X-Error-Handler"] = "global"

        response.headers["X-Request-ID"] = request_id
        elapsed = (time.perf_counter() - start_time) * 1000
        response.headers["X-Response-Time"] = f"{elapsed:.2f}ms"
        return response
