"""
FastAPI integration for the request-security pipeline.

The pipeline runs inside a custom APIRoute so that path parameters are
already resolved when the gates see the request. After the gates pass, the
endpoint receives a rebuilt Request carrying the sanitized body, query
string and path parameters. Failures are raised as SecurityFailureError and
rendered by the handler registered in global_error_handler.
"""
import json
import logging
from dataclasses import replace
from typing import Any, Callable, Dict, Optional, Type
from urllib.parse import parse_qsl, urlencode

from fastapi import APIRouter, Request, Response
from fastapi.routing import APIRoute

from config import settings
from middleware.csrf_protection import is_csrf_exempt
from middleware.pipeline import Gate, SecurityPipeline
from models.identity import Identity
from models.request_context import RequestContext
from utils.exceptions import FailureKind, SecurityFailure, SecurityFailureError

logger = logging.getLogger(__name__)

BODY_METHODS = {"POST", "PUT", "PATCH", "DELETE"}
JSON_SUBTYPE_SUFFIX = "+json"
FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"


def requires(*gates: Gate) -> Callable:
    """Attach endpoint-specific authorization gates."""
    def decorator(func: Callable) -> Callable:
        func._security_gates = list(getattr(func, "_security_gates", [])) + list(gates)
        return func
    return decorator


def _multi_dict(items) -> Dict[str, Any]:
    """Collapse (key, value) pairs into a dict; repeated keys become lists."""
    result: Dict[str, Any] = {}
    for key, value in items:
        if key in result:
            existing = result[key]
            if isinstance(existing, list):
                existing.append(value)
            else:
                result[key] = [existing, value]
        else:
            result[key] = value
    return result


def _content_type(request: Request) -> str:
    return request.headers.get("content-type", "").split(";")[0].strip().lower()


def _is_json(content_type: str) -> bool:
    """JSON whenever FastAPI would parse it for Body params: no content type, application/json or application/*+json."""
    if not content_type:
        return True
    maintype, _, subtype = content_type.partition("/")
    return maintype == "application" and (subtype == "json" or subtype.endswith(JSON_SUBTYPE_SUFFIX))


def trusts_proxy_headers(request: Request) -> bool:
    app_settings = getattr(request.app.state, "settings", None) if "app" in request.scope else None
    return (app_settings or settings).trust_proxy_headers


async def build_request_context(request: Request) -> RequestContext:
    """Snapshot the parts of a request the gates inspect."""
    body: Any = None
    if request.method.upper() in BODY_METHODS:
        raw = await request.body()
        content_type = _content_type(request)
        if raw and _is_json(content_type):
            try:
                body = json.loads(raw)
            except ValueError:
                # Left for request validation to reject
                body = None
        elif raw and content_type == FORM_CONTENT_TYPE:
            body = _multi_dict(parse_qsl(raw.decode("latin-1"), keep_blank_values=True))

    return RequestContext(
        method=request.method,
        path=request.url.path,
        headers=request.headers,
        cookies=dict(request.cookies),
        query=_multi_dict(request.query_params.multi_items()),
        path_params=dict(request.path_params),
        body=body,
        client_host=request.client.host if request.client else None,
        trust_proxy_headers=trusts_proxy_headers(request),
    )


def rebuild_request(request: Request, ctx: RequestContext) -> Request:
    """Request for the endpoint, carrying the (possibly sanitized) context values."""
    scope = dict(request.scope)
    scope["query_string"] = urlencode(ctx.query, doseq=True).encode("latin-1")
    scope["path_params"] = ctx.path_params

    raw_body = getattr(request, "_body", b"")
    content_type = _content_type(request)
    if ctx.body is not None and _is_json(content_type):
        raw_body = json.dumps(ctx.body).encode("utf-8")
    elif ctx.body is not None and content_type == FORM_CONTENT_TYPE:
        raw_body = urlencode(ctx.body, doseq=True).encode("latin-1")

    if request.method.upper() in BODY_METHODS:
        headers = [(k, v) for k, v in scope.get("headers", []) if k.lower() != b"content-length"]
        headers.append((b"content-length", str(len(raw_body)).encode("latin-1")))
        scope["headers"] = headers

    secured = Request(scope, receive=request.receive)
    secured._body = raw_body
    return secured


def apply_to_response(response: Response, ctx: RequestContext) -> Response:
    """Copy queued cookies and headers from the context onto the response."""
    for cookie in ctx.response_cookies:
        response.set_cookie(
            key=cookie.key,
            value=cookie.value,
            max_age=cookie.max_age,
            path=cookie.path,
            secure=cookie.secure,
            httponly=cookie.httponly,
            samesite=cookie.samesite,
        )
    for name, value in ctx.response_headers.items():
        response.headers[name] = value
    return response


def secure_route_class(pipeline: SecurityPipeline) -> Type[APIRoute]:
    """APIRoute subclass that runs ``pipeline`` in front of every endpoint."""

    class SecureRoute(APIRoute):
        security_pipeline = pipeline

        def get_route_handler(self) -> Callable:
            original_handler = super().get_route_handler()

            route_pipeline = pipeline.with_authorization(*getattr(self.endpoint, "_security_gates", ()))
            if is_csrf_exempt(self.endpoint):
                route_pipeline = route_pipeline.without_csrf()

            async def secured_handler(request: Request) -> Response:
                ctx = await build_request_context(request)
                request.state.security_context = ctx

                failure = await route_pipeline.run(ctx)
                if failure is not None:
                    # Rate-limit headers go out on refused responses too
                    raise SecurityFailureError(replace(failure, headers={**ctx.response_headers, **failure.headers}))

                request.state.identity = ctx.identity
                response = await original_handler(rebuild_request(request, ctx))
                apply_to_response(response, ctx)
                await route_pipeline.complete(ctx, response.status_code)
                return response

            return secured_handler

    return SecureRoute


def secure_router(pipeline: SecurityPipeline, **router_kwargs) -> APIRouter:
    """APIRouter whose routes all go through ``pipeline``."""
    return APIRouter(route_class=secure_route_class(pipeline), **router_kwargs)


def security_context(request: Request) -> RequestContext:
    """Dependency: the pipeline context of the current request."""
    ctx = getattr(request.state, "security_context", None)
    if ctx is None:
        raise SecurityFailureError(SecurityFailure.of(FailureKind.INTERNAL_ERROR))
    return ctx


def current_identity(request: Request) -> Identity:
    """Dependency: the authenticated caller."""
    identity = getattr(request.state, "identity", None)
    if identity is None:
        raise SecurityFailureError(SecurityFailure.of(FailureKind.AUTHENTICATION_REQUIRED))
    return identity


def optional_identity(request: Request) -> Optional[Identity]:
    """Dependency: the caller if authenticated, else None."""
    return getattr(request.state, "identity", None)
