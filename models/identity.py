"""
Identity models for authenticated requests.
An Identity is produced by the authentication gate and lives for one request only.
"""
from typing import FrozenSet, Optional
from enum import Enum

from pydantic import BaseModel, Field


class RoleTag(str, Enum):
    """Fixed set of school roles carried in access tokens."""
    SCHOOL_ADMIN = "School_Admin"
    SUBJECT_TEACHER = "Subject_Teacher"
    CLASS_TEACHER = "Class_Teacher"
    DEPARTMENT_HEAD = "Department_Head"
    ECA_COORDINATOR = "ECA_Coordinator"
    SPORTS_COORDINATOR = "Sports_Coordinator"
    STUDENT = "Student"
    PARENT = "Parent"
    LIBRARIAN = "Librarian"
    ACCOUNTANT = "Accountant"
    TRANSPORT_MANAGER = "Transport_Manager"
    HOSTEL_WARDEN = "Hostel_Warden"
    NON_TEACHING_STAFF = "Non_Teaching_Staff"

    @classmethod
    def parse(cls, value: str) -> "RoleTag":
        """Case-insensitive lookup; raises ValueError for unknown roles."""
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower()
        for role in cls:
            if role.value.lower() == normalized:
                return role
        raise ValueError(f"Unknown role: {value!r}")

    def matches(self, other: str) -> bool:
        """Compare against a role name ignoring case."""
        other_value = other.value if isinstance(other, RoleTag) else str(other)
        return self.value.lower() == other_value.strip().lower()


ADMIN_ROLE = RoleTag.SCHOOL_ADMIN


class Identity(BaseModel):
    """Authenticated subject attached to the request context."""
    subject_id: int
    display_name: str
    email: str = ""
    role: RoleTag
    permissions: FrozenSet[str] = Field(default_factory=frozenset)

    model_config = {
        "frozen": True
    }

    @property
    def is_admin(self) -> bool:
        return self.role is ADMIN_ROLE

    def has_role(self, *roles: str) -> bool:
        return any(self.role.matches(role) for role in roles)

    def has_permissions(self, required: FrozenSet[str]) -> bool:
        return set(required).issubset(self.permissions)

    def scope_key(self) -> str:
        return f"user:{self.subject_id}"


def identity_from_claims(claims: dict) -> Identity:
    """
    Build an Identity from decoded token claims.

    Accepts both the camelCase claim names issued by the auth service
    (userId, username) and the registered JWT ``sub`` claim.
    Raises ValueError when a required claim is missing or malformed.
    """
    raw_subject: Optional[object] = claims.get("userId", claims.get("sub"))
    if raw_subject is None or isinstance(raw_subject, bool):
        raise ValueError("Token is missing the subject claim")
    try:
        subject_id = int(raw_subject)
    except (TypeError, ValueError) as e:
        raise ValueError("Token subject is not numeric") from e

    role = claims.get("role")
    if not role:
        raise ValueError("Token is missing the role claim")

    permissions = claims.get("permissions") or []
    if isinstance(permissions, str):
        permissions = [permissions]

    return Identity(
        subject_id=subject_id,
        display_name=str(claims.get("username") or claims.get("displayName") or ""),
        email=str(claims.get("email") or ""),
        role=RoleTag.parse(role),
        permissions=frozenset(str(p) for p in permissions),
    )
