"""
Audit Recorder - best-effort trail of data-mutating and security-relevant requests
==================================================================================

Entries are written after the response has gone out, in a background task.
A failed write is logged and counted but never reaches the request that
triggered it.

What gets recorded:
1. Successful (2xx) POST/PUT/PATCH/DELETE requests under /api/ whose entity
   type and id can be inferred from the route
2. Administrative and financial requests, even without an entity id
   (sentinel entity types ``system_config`` / ``financial_transaction``, id 0)
3. Requests refused by a security gate, as ``success=False`` entries
"""

import asyncio
import json
import logging
from collections import deque
from typing import Any, Deque, Dict, List, Mapping, Optional, Protocol, Set, Tuple

from config import settings
from middleware.redis_config import get_redis
from models.audit import AuditAction, AuditEntry, METHOD_ACTIONS
from models.identity import Identity
from monitoring.metrics import security_metrics
from utils.payload import get_field

logger = logging.getLogger(__name__)

MUTATING_METHODS: Set[str] = {"POST", "PUT", "PATCH", "DELETE"}

# Checked in order, first prefix wins
ENTITY_TYPE_MAP: List[Tuple[str, str]] = [
    ("/api/v1/students", "student"),
    ("/api/v1/staff", "staff"),
    ("/api/v1/academic/years", "academic_year"),
    ("/api/v1/academic/terms", "term"),
    ("/api/v1/academic/classes", "class"),
    ("/api/v1/academic/subjects", "subject"),
    ("/api/v1/academic/timetable", "timetable"),
    ("/api/v1/academic/syllabus", "syllabus"),
    ("/api/v1/attendance/student", "attendance"),
    ("/api/v1/attendance/leave", "leave_application"),
    ("/api/v1/exams", "exam"),
    ("/api/v1/finance/fee-structures", "fee_structure"),
    ("/api/v1/finance/invoices", "invoice"),
    ("/api/v1/finance/payments", "payment"),
    ("/api/v1/library/books", "book"),
    ("/api/v1/library/circulation", "circulation"),
    ("/api/v1/eca", "eca"),
    ("/api/v1/sports", "sport"),
    ("/api/v1/config/system-settings", "system_setting"),
    ("/api/v1/config/roles", "role"),
    ("/api/v1/config/permissions", "permission"),
    ("/api/v1/certificates/templates", "certificate_template"),
    ("/api/v1/certificates", "certificate"),
    ("/api/v1/documents", "document"),
]

ADMIN_ACTION_PREFIXES: Tuple[str, ...] = (
    "/api/v1/config",
    "/api/v1/auth/register",
    "/api/v1/users",
)

FINANCIAL_PREFIXES: Tuple[str, ...] = (
    "/api/v1/finance/payments",
    "/api/v1/finance/invoices",
    "/api/v1/finance/fee-structures",
    "/api/v1/payment-gateway",
)

ADMIN_SENTINEL_TYPE = "system_config"
FINANCIAL_SENTINEL_TYPE = "financial_transaction"
DENIED_REQUEST_TYPE = "request"


def infer_entity_type(path: str) -> Optional[str]:
    for prefix, entity_type in ENTITY_TYPE_MAP:
        if path.startswith(prefix):
            return entity_type
    return None


def is_admin_action(path: str) -> bool:
    return path.startswith(ADMIN_ACTION_PREFIXES)


def is_financial_transaction(path: str) -> bool:
    return path.startswith(FINANCIAL_PREFIXES)


def is_auditable_path(path: str) -> bool:
    return path.startswith("/api/") and "/health" not in path


def _positive_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return number or None


def infer_entity_id(
    path_params: Optional[Mapping[str, Any]],
    body: Any = None,
    explicit_id: Optional[Any] = None
) -> Optional[int]:
    """Entity id from the ``id`` path parameter, then the body ``id``, then a handler-provided id."""
    for candidate in (
        (path_params or {}).get("id"),
        get_field(body, "id"),
        explicit_id,
    ):
        entity_id = _positive_int(candidate)
        if entity_id is not None:
            return entity_id
    return None


class AuditStore(Protocol):
    """Audit storage collaborator."""

    async def append(self, entry: AuditEntry) -> None:
        ...


class InMemoryAuditStore:
    """Bounded in-process audit trail."""

    def __init__(self, max_entries: Optional[int] = None):
        self.entries: Deque[AuditEntry] = deque(maxlen=max_entries or settings.audit_max_entries)

    async def append(self, entry: AuditEntry) -> None:
        self.entries.append(entry)


class RedisAuditStore:
    """Audit trail kept as a capped Redis list of JSON entries, newest first."""

    def __init__(self, client=None, key: Optional[str] = None, max_entries: Optional[int] = None):
        self._client = client
        self.key = key or settings.audit_redis_key
        self.max_entries = max_entries or settings.audit_max_entries

    async def append(self, entry: AuditEntry) -> None:
        if self._client is None:
            self._client = await get_redis()
        if self._client is None:
            raise RuntimeError("Redis is not configured for the audit store")

        async with self._client.pipeline(transaction=True) as pipe:
            pipe.lpush(self.key, json.dumps(entry.to_log_dict()))
            pipe.ltrim(self.key, 0, self.max_entries - 1)
            await pipe.execute()


class AuditRecorder:
    """Fire-and-forget front end to an AuditStore."""

    def __init__(self, store: AuditStore, enabled: Optional[bool] = None, metrics=security_metrics):
        self.store = store
        self.enabled = settings.audit_enabled if enabled is None else enabled
        self.metrics = metrics
        self._pending: Set[asyncio.Task] = set()

    async def record(self, entry: AuditEntry) -> bool:
        """Write one entry. Returns False instead of raising when the store fails."""
        try:
            await self.store.append(entry)
        except Exception as e:
            self.metrics.record_audit_failure()
            logger.error(
                f"❌ [AUDIT] Failed to write audit entry "
                f"({entry.action.value} {entry.entity_type}#{entry.entity_id}): {e}"
            )
            return False

        self.metrics.record_audit_write(entry.action.value, entry.success)
        return True

    def record_in_background(self, entry: AuditEntry) -> Optional[asyncio.Task]:
        """Schedule a write without waiting for it."""
        if not self.enabled:
            return None
        task = asyncio.get_running_loop().create_task(self.record(entry))
        # Keep a strong reference until the task finishes
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for every scheduled write to finish."""
        while self._pending:
            pending = list(self._pending)
            await asyncio.gather(*pending, return_exceptions=True)
            self._pending.difference_update(pending)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def build_mutation_entry(
        self,
        method: str,
        path: str,
        status_code: int,
        identity: Optional[Identity] = None,
        path_params: Optional[Mapping[str, Any]] = None,
        body: Any = None,
        explicit_entity_id: Optional[Any] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None
    ) -> Optional[AuditEntry]:
        """Audit entry for a completed request, or None if it is not auditable."""
        method = method.upper()
        if method not in MUTATING_METHODS or not is_auditable_path(path):
            return None
        if not 200 <= status_code < 300:
            return None

        entity_type = infer_entity_type(path)
        entity_id = infer_entity_id(path_params, body, explicit_entity_id)

        metadata: Dict[str, Any] = {
            "method": method,
            "path": path,
            "statusCode": status_code,
        }
        if is_admin_action(path):
            metadata["category"] = "administrative_action"
        if is_financial_transaction(path):
            metadata["category"] = "financial_transaction"

        if is_admin_action(path):
            entity_type = entity_type or ADMIN_SENTINEL_TYPE
            entity_id = entity_id or 0
        elif is_financial_transaction(path):
            entity_type = entity_type or FINANCIAL_SENTINEL_TYPE
            entity_id = entity_id or 0
        elif not entity_type or not entity_id:
            return None

        return AuditEntry(
            actor_id=identity.subject_id if identity else None,
            entity_type=entity_type,
            entity_id=entity_id,
            action=METHOD_ACTIONS[method],
            success=True,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata=metadata,
        )

    def build_denial_entry(
        self,
        method: str,
        path: str,
        status_code: int,
        failure_code: str,
        identity: Optional[Identity] = None,
        path_params: Optional[Mapping[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None
    ) -> Optional[AuditEntry]:
        """Audit entry for a request refused by a security gate."""
        method = method.upper()
        if not is_auditable_path(path):
            return None

        entity_type = infer_entity_type(path)
        if entity_type is None:
            if is_admin_action(path):
                entity_type = ADMIN_SENTINEL_TYPE
            elif is_financial_transaction(path):
                entity_type = FINANCIAL_SENTINEL_TYPE
            else:
                entity_type = DENIED_REQUEST_TYPE

        return AuditEntry(
            actor_id=identity.subject_id if identity else None,
            entity_type=entity_type,
            entity_id=infer_entity_id(path_params) or 0,
            action=METHOD_ACTIONS.get(method, AuditAction.VIEW),
            success=False,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={
                "method": method,
                "path": path,
                "statusCode": status_code,
                "failure": failure_code,
            },
        )

    def record_mutation(self, **request_info) -> Optional[asyncio.Task]:
        entry = self.build_mutation_entry(**request_info)
        if entry is None:
            return None
        logger.info(
            f"📝 [AUDIT] {entry.action.value} {entry.entity_type}#{entry.entity_id} by {entry.actor_id}"
        )
        return self.record_in_background(entry)

    def record_denial(self, **request_info) -> Optional[asyncio.Task]:
        entry = self.build_denial_entry(**request_info)
        if entry is None:
            return None
        return self.record_in_background(entry)
