"""
API endpoints and request handling.
Can import from: middleware, models, monitoring
"""

from . import security

__all__ = ["security"]
