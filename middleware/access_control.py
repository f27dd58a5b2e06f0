"""
Authorization gates: role, permission, self-access and resource ownership.

Each factory returns an async gate ``(ctx) -> Optional[SecurityFailure]``.
All of them require the authentication gate to have attached an Identity;
without one they fail with AUTHENTICATION_REQUIRED, never PERMISSION_DENIED.
School administrators pass the self-access and ownership checks regardless
of who owns the target.
"""
import logging
from typing import Any, Awaitable, Callable, Optional

from models.identity import Identity, RoleTag
from models.request_context import RequestContext
from utils.exceptions import FailureKind, SecurityFailure

logger = logging.getLogger(__name__)

Gate = Callable[[RequestContext], Awaitable[Optional[SecurityFailure]]]
OwnerResolver = Callable[[RequestContext], Awaitable[Optional[Any]]]

ROLE_DENIED_MESSAGE = "You do not have permission to perform this action"
PERMISSION_DENIED_MESSAGE = "You do not have the required permissions"
SELF_ACCESS_DENIED_MESSAGE = "You can only access your own resources"
OWNERSHIP_DENIED_MESSAGE = "You do not own this resource"


def _authorization_gate(check: Gate, name: str) -> Gate:
    check.stage = "authorization"
    check.gate_name = name
    return check


def _owner_or_admin(identity: Identity, owner_id: int) -> bool:
    return owner_id == identity.subject_id or identity.is_admin


def parse_subject_id(value: Any) -> Optional[int]:
    """Strict integer parse of a path parameter; None for anything non-numeric."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if not text or not text.lstrip("-").isdigit():
        return None
    try:
        return int(text)
    except ValueError:
        return None


def require_role(*roles: Any) -> Gate:
    """Allow callers whose role equals any of ``roles`` (case-insensitive)."""
    allowed = [role.value if isinstance(role, RoleTag) else str(role) for role in roles]

    async def role_check(ctx: RequestContext) -> Optional[SecurityFailure]:
        identity = ctx.identity
        if identity is None:
            return SecurityFailure.of(FailureKind.AUTHENTICATION_REQUIRED)

        if not identity.has_role(*allowed):
            logger.warning(
                f"🚫 [AUTHZ] Role {identity.role.value} not in {allowed} "
                f"for subject {identity.subject_id} on {ctx.method} {ctx.path}"
            )
            return SecurityFailure.of(FailureKind.PERMISSION_DENIED, ROLE_DENIED_MESSAGE)
        return None

    return _authorization_gate(role_check, "require_role")


def require_permissions(*permissions: str) -> Gate:
    """Allow callers holding every one of ``permissions``."""
    required = frozenset(permissions)

    async def permission_check(ctx: RequestContext) -> Optional[SecurityFailure]:
        identity = ctx.identity
        if identity is None:
            return SecurityFailure.of(FailureKind.AUTHENTICATION_REQUIRED)

        if not identity.has_permissions(required):
            missing = sorted(required - identity.permissions)
            logger.warning(
                f"🚫 [AUTHZ] Subject {identity.subject_id} missing permissions {missing} "
                f"on {ctx.method} {ctx.path}"
            )
            return SecurityFailure.of(FailureKind.PERMISSION_DENIED, PERMISSION_DENIED_MESSAGE)
        return None

    return _authorization_gate(permission_check, "require_permissions")


def require_self_access(param_name: str = "userId") -> Gate:
    """Allow callers acting on their own subject id, taken from a path parameter."""

    async def self_access_check(ctx: RequestContext) -> Optional[SecurityFailure]:
        identity = ctx.identity
        if identity is None:
            return SecurityFailure.of(FailureKind.AUTHENTICATION_REQUIRED)

        target_id = parse_subject_id(ctx.path_params.get(param_name))
        if target_id is None:
            return SecurityFailure.of(FailureKind.INVALID_IDENTIFIER)

        if not _owner_or_admin(identity, target_id):
            logger.warning(
                f"🚫 [AUTHZ] Subject {identity.subject_id} attempted to access subject {target_id}"
            )
            return SecurityFailure.of(FailureKind.PERMISSION_DENIED, SELF_ACCESS_DENIED_MESSAGE)
        return None

    return _authorization_gate(self_access_check, "require_self_access")


def require_resource_ownership(resolve_owner: OwnerResolver) -> Gate:
    """
    Allow the owner of a resource, as reported by ``resolve_owner``.

    The resolver knows how to look the resource up (document, invoice,
    record) and returns its owner's subject id, or None when the resource
    does not exist. A missing resource is reported as RESOURCE_NOT_FOUND
    with a 403 status so non-owners learn nothing about existence.
    """

    async def ownership_check(ctx: RequestContext) -> Optional[SecurityFailure]:
        identity = ctx.identity
        if identity is None:
            return SecurityFailure.of(FailureKind.AUTHENTICATION_REQUIRED)

        owner = await resolve_owner(ctx)
        if owner is None:
            return SecurityFailure.of(FailureKind.RESOURCE_NOT_FOUND)

        owner_id = parse_subject_id(owner)
        if not identity.is_admin and owner_id != identity.subject_id:
            logger.warning(
                f"🚫 [AUTHZ] Subject {identity.subject_id} does not own resource at {ctx.path}"
            )
            return SecurityFailure.of(FailureKind.PERMISSION_DENIED, OWNERSHIP_DENIED_MESSAGE)
        return None

    return _authorization_gate(ownership_check, "require_resource_ownership")
