"""
Redis Rate Limiting
Fixed-window request counting with a shared Redis counter store and an
in-process fallback.

The counting policy (window length, ceiling, scope key, whether successes
count) is separate from the storage backend, so the same RateLimiter runs
against InMemoryCounterStore in tests and RedisCounterStore in production.
When Redis is unreachable FallbackCounterStore counts in-process. That
degraded mode is per-process, not global: it is logged once on entry,
exposed as a gauge, and counts are not reconciled when Redis comes back.
"""

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, FrozenSet, List, Optional, Protocol, Tuple

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from config import Settings, settings
from middleware.redis_config import get_redis
from models.request_context import RequestContext
from monitoring.metrics import security_metrics
from utils.exceptions import CounterStoreUnavailable, FailureKind, SecurityFailure

logger = logging.getLogger(__name__)


class CounterStore(Protocol):
    """Shared counter store collaborator."""

    async def increment(self, key: str, window_seconds: int) -> int:
        """Atomically add one to ``key`` and return the new count."""
        ...

    async def decrement(self, key: str) -> None:
        """Take one back from ``key`` if it still exists."""
        ...


class InMemoryCounterStore:
    """
    Per-process counter store.

    Increments never await, so they are atomic under the event loop.
    """

    def __init__(self, clock: Callable[[], float] = time.time, purge_threshold: int = 10000):
        self.clock = clock
        self.purge_threshold = purge_threshold
        self._counters: Dict[str, Tuple[int, float]] = {}
        # Earliest expiry among stored counters; nothing can be purged before it
        self._next_expiry = float("inf")

    async def increment(self, key: str, window_seconds: int) -> int:
        now = self.clock()
        if len(self._counters) >= self.purge_threshold and now >= self._next_expiry:
            self._purge_expired(now)

        count, expires_at = self._counters.get(key, (0, 0.0))
        if expires_at <= now:
            count, expires_at = 0, now + window_seconds
            self._next_expiry = min(self._next_expiry, expires_at)

        count += 1
        self._counters[key] = (count, expires_at)
        return count

    async def decrement(self, key: str) -> None:
        entry = self._counters.get(key)
        if entry is None:
            return
        count, expires_at = entry
        if count > 0 and expires_at > self.clock():
            self._counters[key] = (count - 1, expires_at)

    def _purge_expired(self, now: float):
        expired = [key for key, (_, expires_at) in self._counters.items() if expires_at <= now]
        for key in expired:
            del self._counters[key]
        self._next_expiry = min((expires_at for _, expires_at in self._counters.values()), default=float("inf"))

    def __len__(self) -> int:
        return len(self._counters)


_DECREMENT_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if current and tonumber(current) > 0 then
    return redis.call('DECR', KEYS[1])
end
return 0
"""

# Errors meaning "Redis is unreachable", as opposed to a bug or bad reply
REDIS_UNAVAILABLE_ERRORS = (RedisConnectionError, RedisTimeoutError, OSError)


class RedisCounterStore:
    """Counter store shared by every server process through Redis."""

    def __init__(
        self,
        client: Optional[redis.Redis] = None,
        client_factory: Callable[[], Awaitable[Optional[redis.Redis]]] = get_redis
    ):
        self._client = client
        self._client_factory = client_factory

    async def _get_client(self) -> redis.Redis:
        if self._client is None:
            self._client = await self._client_factory()
        if self._client is None:
            raise CounterStoreUnavailable("Redis is not configured")
        return self._client

    async def increment(self, key: str, window_seconds: int) -> int:
        client = await self._get_client()
        try:
            # MULTI/EXEC so INCR and EXPIRE land together
            async with client.pipeline(transaction=True) as pipe:
                pipe.incr(key)
                pipe.expire(key, window_seconds)
                results = await pipe.execute()
        except REDIS_UNAVAILABLE_ERRORS as e:
            raise CounterStoreUnavailable(details={"error": str(e)}) from e
        return int(results[0])

    async def decrement(self, key: str) -> None:
        client = await self._get_client()
        try:
            await client.eval(_DECREMENT_SCRIPT, 1, key)
        except REDIS_UNAVAILABLE_ERRORS as e:
            raise CounterStoreUnavailable(details={"error": str(e)}) from e


class FallbackCounterStore:
    """
    Prefer the shared store; count in-process while it is unreachable.

    After a failure the shared store is not retried until ``retry_seconds``
    have passed. Only CounterStoreUnavailable triggers the fallback; any
    other error propagates so the pipeline reports it.
    """

    def __init__(
        self,
        primary: CounterStore,
        fallback: Optional[CounterStore] = None,
        retry_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
        metrics=security_metrics
    ):
        self.primary = primary
        self.fallback = fallback or InMemoryCounterStore()
        self.retry_seconds = retry_seconds if retry_seconds is not None else settings.rate_limit_fallback_retry_seconds
        self.clock = clock
        self.metrics = metrics
        self._degraded = False
        self._retry_at = 0.0

    @property
    def degraded(self) -> bool:
        return self._degraded

    def _should_try_primary(self) -> bool:
        return not self._degraded or self.clock() >= self._retry_at

    def _enter_degraded(self, error: Exception):
        self._retry_at = self.clock() + self.retry_seconds
        if self._degraded:
            return
        self._degraded = True
        self.metrics.set_rate_limit_degraded(True)
        logger.warning(
            f"⚠️ [RATE-LIMIT] Shared counter store unavailable ({error}); "
            f"counting in-process, limits are now per-process until it recovers"
        )

    def _leave_degraded(self):
        if not self._degraded:
            return
        self._degraded = False
        self.metrics.set_rate_limit_degraded(False)
        logger.info("✅ [RATE-LIMIT] Shared counter store restored; in-process counts discarded")

    async def increment(self, key: str, window_seconds: int) -> int:
        if self._should_try_primary():
            try:
                count = await self.primary.increment(key, window_seconds)
            except CounterStoreUnavailable as e:
                self._enter_degraded(e)
            else:
                self._leave_degraded()
                return count

        self.metrics.record_fallback_increment()
        return await self.fallback.increment(key, window_seconds)

    async def decrement(self, key: str) -> None:
        if self._should_try_primary():
            try:
                await self.primary.decrement(key)
                return
            except CounterStoreUnavailable as e:
                self._enter_degraded(e)
        await self.fallback.decrement(key)


def default_scope_key(ctx: RequestContext) -> str:
    """Authenticated subject if present, otherwise the network address."""
    return ctx.scope_key()


@dataclass(frozen=True)
class RateLimitPolicy:
    """Counting policy: window, ceiling, scope and which paths it covers."""
    name: str
    window_seconds: int
    max_requests: int
    skip_successful_requests: bool = False
    key_func: Callable[[RequestContext], str] = default_scope_key
    exempt_paths: FrozenSet[str] = frozenset()
    path_prefixes: Tuple[str, ...] = ()

    def applies_to(self, path: str) -> bool:
        if path in self.exempt_paths:
            return False
        if not self.path_prefixes:
            return True
        return any(path.startswith(prefix) for prefix in self.path_prefixes)


@dataclass
class RateLimitResult:
    """Outcome of one admit() call."""
    policy: RateLimitPolicy
    key: str
    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    retry_after: Optional[int] = None
    released: bool = field(default=False, repr=False)

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
        }
        if self.retry_after is not None:
            headers["Retry-After"] = str(self.retry_after)
        return headers


def general_policy(app_settings: Optional[Settings] = None) -> RateLimitPolicy:
    """General API ceiling per window; the health check is always exempt."""
    cfg = app_settings or settings
    return RateLimitPolicy(
        name="general",
        window_seconds=cfg.rate_limit_window_seconds,
        max_requests=cfg.rate_limit_per_minute,
        exempt_paths=frozenset(cfg.rate_limit_exempt_paths),
    )


def credential_submission_policy(
    app_settings: Optional[Settings] = None,
    path_prefixes: Tuple[str, ...] = ("/api/v1/auth/login",)
) -> RateLimitPolicy:
    """Brute-force throttle: only failed credential submissions count."""
    cfg = app_settings or settings
    return RateLimitPolicy(
        name="credential_submission",
        window_seconds=cfg.auth_rate_limit_window_seconds,
        max_requests=cfg.auth_rate_limit_attempts,
        skip_successful_requests=True,
        path_prefixes=path_prefixes,
    )


def bulk_upload_policy(
    app_settings: Optional[Settings] = None,
    path_prefixes: Tuple[str, ...] = ("/api/v1/students/bulk-import", "/api/v1/documents/upload")
) -> RateLimitPolicy:
    """Tighter window for bulk uploads and imports."""
    cfg = app_settings or settings
    return RateLimitPolicy(
        name="bulk_upload",
        window_seconds=cfg.upload_rate_limit_window_seconds,
        max_requests=cfg.upload_rate_limit_requests,
        path_prefixes=path_prefixes,
    )


class RateLimiter:
    """Fixed-window admission over an injected CounterStore."""

    def __init__(
        self,
        store: CounterStore,
        clock: Callable[[], float] = time.time,
        key_prefix: Optional[str] = None
    ):
        self.store = store
        self.clock = clock
        self.key_prefix = key_prefix if key_prefix is not None else settings.rate_limit_key_prefix

    async def admit(self, policy: RateLimitPolicy, scope_key: str) -> RateLimitResult:
        """Count one request for ``scope_key`` under ``policy``."""
        now = self.clock()
        window_index = int(now // policy.window_seconds)
        reset_at = (window_index + 1) * policy.window_seconds
        key = f"{self.key_prefix}{policy.name}:{scope_key}:{window_index}"

        count = await self.store.increment(key, policy.window_seconds)
        allowed = count <= policy.max_requests

        return RateLimitResult(
            policy=policy,
            key=key,
            allowed=allowed,
            limit=policy.max_requests,
            remaining=max(0, policy.max_requests - count),
            reset_at=reset_at,
            retry_after=None if allowed else max(1, math.ceil(reset_at - now)),
        )

    async def release(self, result: RateLimitResult) -> None:
        """Give back a counted request (used for successful credential submissions)."""
        if result.released:
            return
        result.released = True
        await self.store.decrement(result.key)


def request_succeeded(status_code: int) -> bool:
    return status_code < 400


class RateLimitGate:
    """
    Pipeline gate applying every policy that covers the request path.

    The X-RateLimit-* headers queued on the context describe the strictest
    applied policy (fewest requests remaining); a denial also carries Retry-After.
    """

    stage = "rate_limit"

    def __init__(
        self,
        limiter: RateLimiter,
        policies: List[RateLimitPolicy],
        enabled: Optional[bool] = None,
        metrics=security_metrics
    ):
        self.limiter = limiter
        self.policies = list(policies)
        self.enabled = settings.rate_limit_enabled if enabled is None else enabled
        self.metrics = metrics

    async def __call__(self, ctx: RequestContext) -> Optional[SecurityFailure]:
        if not self.enabled:
            return None

        strictest: Optional[RateLimitResult] = None
        for policy in self.policies:
            if not policy.applies_to(ctx.path):
                continue

            scope_key = policy.key_func(ctx)
            result = await self.limiter.admit(policy, scope_key)
            ctx.rate_limit_results.append(result)
            if strictest is None or not result.allowed or result.remaining < strictest.remaining:
                strictest = result
                ctx.response_headers.update(result.headers())

            if not result.allowed:
                self.metrics.record_rate_limit_denial(policy.name)
                logger.warning(
                    f"🚫 [RATE-LIMIT] {policy.name} limit exceeded for {scope_key} on "
                    f"{ctx.method} {ctx.path}; retry in {result.retry_after}s"
                )
                return SecurityFailure.of(
                    FailureKind.RATE_LIMIT_EXCEEDED,
                    headers=result.headers(),
                    retry_after=result.retry_after,
                )

        return None

    async def complete(self, ctx: RequestContext, status_code: int) -> None:
        """Post-response hook: successful requests do not count under skip-success policies."""
        if not request_succeeded(status_code):
            return
        for result in ctx.rate_limit_results:
            if result.allowed and result.policy.skip_successful_requests:
                await self.limiter.release(result)
