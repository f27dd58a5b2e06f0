"""
Failure taxonomy for the request-security pipeline.

Expected, client-facing failures are modelled as SecurityFailure values that
gates return. Exceptions are reserved for unexpected conditions; the only
exception carrying a SecurityFailure is SecurityFailureError, raised once at
the framework boundary so the outer error translator can render it.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for monitoring and alerting."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Error categorization for better handling and monitoring."""
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    VALIDATION = "validation"
    SECURITY = "security"
    RATE_LIMIT = "rate_limit"
    SYSTEM = "system"


class FailureKind(Enum):
    """Every way a security gate can stop a request."""
    NO_CREDENTIAL = "no_credential"
    INVALID_CREDENTIAL = "invalid_credential"
    AUTHENTICATION_REQUIRED = "authentication_required"
    PERMISSION_DENIED = "permission_denied"
    INVALID_IDENTIFIER = "invalid_identifier"
    RESOURCE_NOT_FOUND = "resource_not_found"
    SUSPICIOUS_INPUT = "suspicious_input"
    CSRF_TOKEN_MISSING = "csrf_token_missing"
    CSRF_TOKEN_INVALID = "csrf_token_invalid"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    INTERNAL_ERROR = "internal_error"

    @property
    def status_code(self) -> int:
        return _FAILURE_STATUS[self]

    @property
    def category(self) -> ErrorCategory:
        return _FAILURE_CATEGORY[self]

    @property
    def default_message(self) -> str:
        return _FAILURE_MESSAGES[self]


# ResourceNotFound is 403 so that non-owners cannot probe for existence.
_FAILURE_STATUS: Dict[FailureKind, int] = {
    FailureKind.NO_CREDENTIAL: 401,
    FailureKind.INVALID_CREDENTIAL: 401,
    FailureKind.AUTHENTICATION_REQUIRED: 401,
    FailureKind.PERMISSION_DENIED: 403,
    FailureKind.INVALID_IDENTIFIER: 403,
    FailureKind.RESOURCE_NOT_FOUND: 403,
    FailureKind.SUSPICIOUS_INPUT: 400,
    FailureKind.CSRF_TOKEN_MISSING: 400,
    FailureKind.CSRF_TOKEN_INVALID: 400,
    FailureKind.RATE_LIMIT_EXCEEDED: 429,
    FailureKind.INTERNAL_ERROR: 500,
}

_FAILURE_CATEGORY: Dict[FailureKind, ErrorCategory] = {
    FailureKind.NO_CREDENTIAL: ErrorCategory.AUTHENTICATION,
    FailureKind.INVALID_CREDENTIAL: ErrorCategory.AUTHENTICATION,
    FailureKind.AUTHENTICATION_REQUIRED: ErrorCategory.AUTHENTICATION,
    FailureKind.PERMISSION_DENIED: ErrorCategory.AUTHORIZATION,
    FailureKind.INVALID_IDENTIFIER: ErrorCategory.AUTHORIZATION,
    FailureKind.RESOURCE_NOT_FOUND: ErrorCategory.AUTHORIZATION,
    FailureKind.SUSPICIOUS_INPUT: ErrorCategory.VALIDATION,
    FailureKind.CSRF_TOKEN_MISSING: ErrorCategory.SECURITY,
    FailureKind.CSRF_TOKEN_INVALID: ErrorCategory.SECURITY,
    FailureKind.RATE_LIMIT_EXCEEDED: ErrorCategory.RATE_LIMIT,
    FailureKind.INTERNAL_ERROR: ErrorCategory.SYSTEM,
}

_FAILURE_MESSAGES: Dict[FailureKind, str] = {
    FailureKind.NO_CREDENTIAL: "No token provided",
    FailureKind.INVALID_CREDENTIAL: "Invalid access token",
    FailureKind.AUTHENTICATION_REQUIRED: "Authentication required",
    FailureKind.PERMISSION_DENIED: "You do not have permission to perform this action",
    FailureKind.INVALID_IDENTIFIER: "Invalid user ID",
    FailureKind.RESOURCE_NOT_FOUND: "Resource not found",
    FailureKind.SUSPICIOUS_INPUT: "Suspicious input detected",
    FailureKind.CSRF_TOKEN_MISSING: "CSRF token missing",
    FailureKind.CSRF_TOKEN_INVALID: "CSRF token invalid",
    FailureKind.RATE_LIMIT_EXCEEDED: "Too many requests, please try again later",
    FailureKind.INTERNAL_ERROR: "Internal security error",
}


@dataclass(frozen=True)
class FieldError:
    """One {field, message} detail entry."""
    field: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"field": self.field, "message": self.message}


@dataclass(frozen=True)
class SecurityFailure:
    """Typed result returned by a gate that refuses a request."""
    kind: FailureKind
    message: str
    details: Tuple[FieldError, ...] = ()
    headers: Dict[str, str] = field(default_factory=dict)
    retry_after: Optional[int] = None

    @classmethod
    def of(
        cls,
        kind: FailureKind,
        message: Optional[str] = None,
        details: Tuple[FieldError, ...] = (),
        headers: Optional[Dict[str, str]] = None,
        retry_after: Optional[int] = None
    ) -> "SecurityFailure":
        return cls(
            kind=kind,
            message=message or kind.default_message,
            details=tuple(details),
            headers=dict(headers or {}),
            retry_after=retry_after,
        )

    @property
    def code(self) -> str:
        return self.kind.value

    @property
    def status_code(self) -> int:
        return self.kind.status_code

    def to_dict(self) -> Dict[str, Any]:
        """Error body for the response envelope."""
        payload: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
        }
        if self.details:
            payload["details"] = [detail.to_dict() for detail in self.details]
        if self.retry_after is not None:
            payload["retryAfter"] = self.retry_after
        return payload


class SchoolGateError(Exception):
    """Base exception for unexpected conditions in the security layer."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.SYSTEM
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.severity = severity
        self.category = category

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging."""
        return {
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "details": self.details,
            "exception_type": self.__class__.__name__
        }


class SecurityFailureError(SchoolGateError):
    """Carries a SecurityFailure from the route wrapper to the error translator."""

    def __init__(self, failure: SecurityFailure):
        super().__init__(
            failure.message,
            details={"code": failure.code},
            severity=ErrorSeverity.HIGH if failure.kind.category is ErrorCategory.SECURITY else ErrorSeverity.MEDIUM,
            category=failure.kind.category
        )
        self.failure = failure


class TokenVerificationError(SchoolGateError):
    """Raised by a token verifier when a credential cannot be accepted."""

    def __init__(self, message: str = "Invalid access token", expired: bool = False):
        super().__init__(message, category=ErrorCategory.AUTHENTICATION)
        self.expired = expired


class CounterStoreUnavailable(SchoolGateError):
    """The shared rate-limit counter store could not be reached."""

    def __init__(self, message: str = "Rate limit counter store unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details=details, severity=ErrorSeverity.HIGH, category=ErrorCategory.RATE_LIMIT)
