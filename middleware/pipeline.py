"""
Request-security pipeline driver.

Gates run strictly in this order, and the first failure stops the request:

    rate limits -> authentication -> authorization -> SQL-injection guard
    -> sanitizer -> CSRF

Every gate is an async callable ``(ctx) -> Optional[SecurityFailure]``.
Expected failures are returned, not raised. Anything a gate raises is an
unexpected condition: it is logged with its traceback and reported as a
generic INTERNAL_ERROR so the process keeps serving.
"""
import logging
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from models.request_context import RequestContext
from monitoring.metrics import security_metrics
from utils.exceptions import FailureKind, SecurityFailure
from utils.input_sanitization import sanitize_payload

logger = logging.getLogger(__name__)

Gate = Callable[[RequestContext], Awaitable[Optional[SecurityFailure]]]


class SanitizationGate:
    """Rewrites every string in body, query and path parameters to safe plain text. Never fails."""

    stage = "sanitizer"

    async def __call__(self, ctx: RequestContext) -> Optional[SecurityFailure]:
        ctx.body = sanitize_payload(ctx.body)
        ctx.query = sanitize_payload(ctx.query)
        ctx.path_params = sanitize_payload(ctx.path_params)
        return None


class SecurityPipeline:
    """
    Ordered set of gate slots.

    Slots can be left empty. Per-route variants are derived with
    with_authorization(), with_authentication() and without_csrf(); the
    original pipeline is never modified.
    """

    def __init__(
        self,
        rate_limit: Optional[Gate] = None,
        authentication: Optional[Gate] = None,
        authorization: Tuple[Gate, ...] = (),
        sql_guard: Optional[Gate] = None,
        sanitizer: Optional[Gate] = None,
        csrf: Optional[Gate] = None,
        recorder: Any = None,
        metrics=security_metrics
    ):
        self.rate_limit = rate_limit
        self.authentication = authentication
        self.authorization = tuple(authorization)
        self.sql_guard = sql_guard
        self.sanitizer = sanitizer
        self.csrf = csrf
        self.recorder = recorder
        self.metrics = metrics

    def _copy(self, **changes) -> "SecurityPipeline":
        slots = dict(
            rate_limit=self.rate_limit,
            authentication=self.authentication,
            authorization=self.authorization,
            sql_guard=self.sql_guard,
            sanitizer=self.sanitizer,
            csrf=self.csrf,
            recorder=self.recorder,
            metrics=self.metrics,
        )
        slots.update(changes)
        return SecurityPipeline(**slots)

    def with_authorization(self, *gates: Gate) -> "SecurityPipeline":
        if not gates:
            return self
        return self._copy(authorization=self.authorization + tuple(gates))

    def with_authentication(self, gate: Optional[Gate]) -> "SecurityPipeline":
        return self._copy(authentication=gate)

    def without_csrf(self) -> "SecurityPipeline":
        return self._copy(csrf=None)

    def gates(self) -> List[Tuple[str, Gate]]:
        """(stage, gate) pairs in execution order."""
        ordered: List[Tuple[str, Gate]] = []
        if self.rate_limit is not None:
            ordered.append(("rate_limit", self.rate_limit))
        if self.authentication is not None:
            ordered.append(("authentication", self.authentication))
        for gate in self.authorization:
            ordered.append(("authorization", gate))
        if self.sql_guard is not None:
            ordered.append(("sql_injection", self.sql_guard))
        if self.sanitizer is not None:
            ordered.append(("sanitizer", self.sanitizer))
        if self.csrf is not None:
            ordered.append(("csrf", self.csrf))
        return ordered

    async def run(self, ctx: RequestContext) -> Optional[SecurityFailure]:
        """Run every gate in order; return the first failure or None."""
        for stage, gate in self.gates():
            try:
                failure = await gate(ctx)
            except Exception as e:
                logger.exception(f"❌ [PIPELINE] Unexpected error in {stage} gate for {ctx.method} {ctx.path}: {e}")
                failure = SecurityFailure.of(FailureKind.INTERNAL_ERROR)

            if failure is not None:
                self._on_failure(ctx, stage, failure)
                return failure

        return None

    def _on_failure(self, ctx: RequestContext, stage: str, failure: SecurityFailure):
        self.metrics.record_gate_failure(failure.code, stage)
        logger.info(
            f"🚫 [PIPELINE] {ctx.method} {ctx.path} stopped at {stage}: "
            f"{failure.code} ({failure.status_code})"
        )
        if self.recorder is None:
            return
        try:
            self.recorder.record_denial(
                method=ctx.method,
                path=ctx.path,
                status_code=failure.status_code,
                failure_code=failure.code,
                identity=ctx.identity,
                path_params=ctx.path_params,
                ip_address=ctx.client_ip,
                user_agent=ctx.user_agent,
            )
        except Exception as e:
            logger.error(f"❌ [AUDIT] Could not schedule denial record: {e}")

    async def complete(self, ctx: RequestContext, status_code: int) -> None:
        """Post-response hooks, run after the handler produced ``status_code``."""
        complete = getattr(self.rate_limit, "complete", None)
        if complete is None:
            return
        try:
            await complete(ctx, status_code)
        except Exception as e:
            # The response is already decided; a lost release only over-counts
            logger.error(f"❌ [PIPELINE] Rate-limit completion failed for {ctx.path}: {e}")
