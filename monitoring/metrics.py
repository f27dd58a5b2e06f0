"""
Prometheus metrics for the request-security pipeline.
Tracks gate denials, SQL-injection heuristic hits, rate-limiter degradation and audit writes.
"""

import threading
from typing import Optional
from prometheus_client import (
    Counter, Gauge, CollectorRegistry, generate_latest, CONTENT_TYPE_LATEST
)


class SecurityMetrics:
    """
    Security monitoring metrics for the pipeline gates.
    Uses a private registry so multiple app instances (tests) never collide.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self._lock = threading.Lock()

        # Gate outcomes
        self.gate_failures_total = Counter(
            'schoolgate_gate_failures_total',
            'Requests stopped by a security gate',
            ['kind', 'stage'],
            registry=self.registry
        )

        # Per-family hits, used to measure false-positive impact of the heuristic patterns
        self.sql_injection_matches_total = Counter(
            'schoolgate_sql_injection_matches_total',
            'SQL-injection pattern matches',
            ['family', 'section'],
            registry=self.registry
        )

        # Rate limiting
        self.rate_limit_denials_total = Counter(
            'schoolgate_rate_limit_denials_total',
            'Requests denied by a rate-limit policy',
            ['policy'],
            registry=self.registry
        )

        self.rate_limit_degraded = Gauge(
            'schoolgate_rate_limit_degraded',
            'Whether the rate limiter is counting in-process (1) instead of in the shared store (0)',
            registry=self.registry
        )

        self.rate_limit_fallback_increments_total = Counter(
            'schoolgate_rate_limit_fallback_increments_total',
            'Counter increments served by the in-process fallback store',
            registry=self.registry
        )

        # Audit trail
        self.audit_writes_total = Counter(
            'schoolgate_audit_writes_total',
            'Audit entries written',
            ['action', 'success'],
            registry=self.registry
        )

        self.audit_write_failures_total = Counter(
            'schoolgate_audit_write_failures_total',
            'Audit entries that could not be stored',
            registry=self.registry
        )

    def record_gate_failure(self, kind: str, stage: str):
        """Record a request stopped by a gate."""
        with self._lock:
            self.gate_failures_total.labels(kind=kind, stage=stage).inc()

    def record_sql_injection_match(self, family: str, section: str):
        """Record which pattern family flagged which request section."""
        with self._lock:
            self.sql_injection_matches_total.labels(family=family, section=section).inc()

    def record_rate_limit_denial(self, policy: str):
        with self._lock:
            self.rate_limit_denials_total.labels(policy=policy).inc()

    def set_rate_limit_degraded(self, degraded: bool):
        self.rate_limit_degraded.set(1 if degraded else 0)

    def record_fallback_increment(self):
        self.rate_limit_fallback_increments_total.inc()

    def record_audit_write(self, action: str, success: bool):
        with self._lock:
            self.audit_writes_total.labels(action=action, success=str(success).lower()).inc()

    def record_audit_failure(self):
        self.audit_write_failures_total.inc()

    def export(self) -> bytes:
        """Prometheus text exposition of this registry."""
        return generate_latest(self.registry)


METRICS_CONTENT_TYPE = CONTENT_TYPE_LATEST

# Global metrics instance
security_metrics = SecurityMetrics()
