"""
Monitoring infrastructure for the request-security pipeline.
Provides Prometheus metrics on a private registry.
"""

from .metrics import SecurityMetrics, security_metrics

__all__ = ["SecurityMetrics", "security_metrics"]
