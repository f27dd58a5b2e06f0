"""
Audit trail models.
Entries are append-only and written after the response has been sent.
"""
from typing import Any, Dict, Optional
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class AuditAction(str, Enum):
    """Actions recorded in the audit trail."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    VIEW = "view"
    DOWNLOAD = "download"
    UPLOAD = "upload"
    PREVIEW = "preview"
    SHARE = "share"


METHOD_ACTIONS: Dict[str, AuditAction] = {
    "POST": AuditAction.CREATE,
    "PUT": AuditAction.UPDATE,
    "PATCH": AuditAction.UPDATE,
    "DELETE": AuditAction.DELETE,
    "GET": AuditAction.VIEW,
    "HEAD": AuditAction.VIEW,
}


class AuditEntry(BaseModel):
    """Single audit record. Stored with camelCase keys (actorId, entityType, ...)."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    actor_id: Optional[int] = None
    entity_type: str
    entity_id: int = 0
    action: AuditAction
    success: bool = True
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def to_log_dict(self) -> Dict[str, Any]:
        """Serialize for JSON storage."""
        return self.model_dump(mode="json", by_alias=True)
