"""
Middleware package for FastAPI application.
Security gates, the pipeline driver and its FastAPI integration.
"""
from .pipeline import SecurityPipeline
from .security_middleware import current_identity, optional_identity, requires, secure_router

__all__ = ["SecurityPipeline", "current_identity", "optional_identity", "requires", "secure_router"]
