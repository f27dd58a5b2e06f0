"""
Application entry point.
Wires the request-security pipeline into a FastAPI app.
"""
import time
import logging
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI

from config import Settings, settings as default_settings
from middleware.audit_middleware import AuditMiddleware
from middleware.auth import AuthenticationGate, JWTTokenVerifier, TokenVerifier
from middleware.csrf_protection import CsrfGate, CsrfTokenService
from middleware.global_error_handler import GlobalErrorMiddleware, register_error_handlers
from middleware.pipeline import SanitizationGate, SecurityPipeline
from middleware.redis_config import redis_manager
from middleware.redis_rate_limiter import (
    CounterStore, FallbackCounterStore, InMemoryCounterStore, RateLimitGate, RateLimiter,
    RedisCounterStore, bulk_upload_policy, credential_submission_policy, general_policy
)
from monitoring.metrics import SecurityMetrics, security_metrics
from routers.security import build_metrics_router, build_security_router
from security.audit_recorder import AuditRecorder, AuditStore, InMemoryAuditStore, RedisAuditStore
from security.sql_injection import SqlInjectionGuard
from utils.logging_config import setup_logging

logger = logging.getLogger(__name__)


def build_counter_store(app_settings: Settings) -> CounterStore:
    """Redis with in-process fallback when Redis is configured, in-process only otherwise."""
    if app_settings.redis_url:
        return FallbackCounterStore(
            RedisCounterStore(),
            InMemoryCounterStore(),
            retry_seconds=app_settings.rate_limit_fallback_retry_seconds
        )
    logger.warning("⚠️ [STARTUP] REDIS_URL not set; rate limits are per-process")
    return InMemoryCounterStore()


def build_audit_store(app_settings: Settings) -> AuditStore:
    if app_settings.redis_url:
        return RedisAuditStore()
    return InMemoryAuditStore(app_settings.audit_max_entries)


def build_pipeline(
    verifier: TokenVerifier,
    limiter: RateLimiter,
    csrf_service: CsrfTokenService,
    recorder: Optional[AuditRecorder] = None,
    app_settings: Settings = default_settings,
    metrics: SecurityMetrics = security_metrics
) -> SecurityPipeline:
    """Default pipeline for authenticated API routes."""
    rate_limit_gate = RateLimitGate(
        limiter,
        [general_policy(app_settings), credential_submission_policy(app_settings), bulk_upload_policy(app_settings)],
        enabled=app_settings.rate_limit_enabled,
        metrics=metrics
    )
    return SecurityPipeline(
        rate_limit=rate_limit_gate,
        authentication=AuthenticationGate(verifier),
        sql_guard=SqlInjectionGuard(metrics),
        sanitizer=SanitizationGate(),
        csrf=CsrfGate(csrf_service, enabled=app_settings.csrf_protection_enabled),
        recorder=recorder,
        metrics=metrics,
    )


def create_app(
    app_settings: Optional[Settings] = None,
    verifier: Optional[TokenVerifier] = None,
    counter_store: Optional[CounterStore] = None,
    audit_store: Optional[AuditStore] = None,
    clock: Optional[Callable[[], float]] = None,
    metrics: Optional[SecurityMetrics] = None
) -> FastAPI:
    """
    Build the application.

    Every collaborator can be injected; anything left out is built from
    settings (JWT verifier, Redis-backed or in-process counters and audit store).
    """
    app_settings = app_settings or default_settings
    metrics = metrics or security_metrics

    verifier = verifier or JWTTokenVerifier(app_settings.jwt_secret, app_settings.jwt_algorithm)
    limiter = RateLimiter(
        counter_store or build_counter_store(app_settings),
        clock=clock or time.time,
        key_prefix=app_settings.rate_limit_key_prefix
    )
    csrf_service = CsrfTokenService(
        cookie_name=app_settings.csrf_cookie_name,
        header_name=app_settings.csrf_header_name,
        body_field=app_settings.csrf_body_field,
        max_age=app_settings.csrf_token_max_age,
        secure=app_settings.is_production()
    )
    recorder = AuditRecorder(
        audit_store or build_audit_store(app_settings),
        enabled=app_settings.audit_enabled,
        metrics=metrics
    )
    pipeline = build_pipeline(verifier, limiter, csrf_service, recorder, app_settings, metrics)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan context manager for startup and shutdown."""
        logger.info(f"🚀 [STARTUP] {app_settings.app_name} v{app_settings.app_version} ({app_settings.environment})")
        app_settings.validate_production_security()
        yield
        logger.info("👋 [SHUTDOWN] Flushing audit writes...")
        await recorder.drain()
        await redis_manager.close()

    app = FastAPI(
        title=app_settings.app_name,
        version=app_settings.app_version,
        lifespan=lifespan,
        docs_url=None if app_settings.is_production() else "/docs",
        redoc_url=None,
    )

    app.state.settings = app_settings
    app.state.pipeline = pipeline
    app.state.limiter = limiter
    app.state.csrf_service = csrf_service
    app.state.audit_recorder = recorder
    app.state.metrics = metrics

    register_error_handlers(app)
    # Last added runs first: GlobalErrorMiddleware wraps AuditMiddleware
    app.add_middleware(AuditMiddleware, recorder=recorder)
    app.add_middleware(GlobalErrorMiddleware)

    @app.get("/health")
    async def health():
        """Simple health check - never rate limited."""
        return {"status": "healthy", "timestamp": time.time()}

    anonymous_gate = AuthenticationGate(verifier, optional=True)
    app.include_router(build_security_router(pipeline, csrf_service, anonymous_gate))
    app.include_router(build_metrics_router(metrics))

    return app


setup_logging(default_settings.log_level, default_settings.log_json)
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host="0.0.0.0",
        port=default_settings.port,
        log_level=default_settings.log_level.lower(),
    )
