"""
SQL-injection pattern detection for request payloads.

This is a heuristic secondary defense. It runs in addition to parameterized
queries at the data layer, never instead of them. False positives (a surname
like "Select Street") and false negatives are both possible; every match is
counted per pattern family so the cost of each family can be measured.
"""
import re
import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Pattern, Tuple

from models.request_context import RequestContext
from monitoring.metrics import security_metrics
from utils.exceptions import FailureKind, FieldError, SecurityFailure
from utils.payload import scan

logger = logging.getLogger(__name__)

_FLAGS = re.IGNORECASE | re.DOTALL

# Ordered (family, pattern) pairs; a string is suspicious if any of them matches
SQL_INJECTION_PATTERNS: List[Tuple[str, Pattern[str]]] = [
    ("union_select", re.compile(
        r"\b(union|select|insert|update|delete|drop|create|alter|exec|execute)\b"
        r".*\b(from|into|table|database|where)\b",
        _FLAGS
    )),
    ("or_tautology", re.compile(r"\bor\b.*=", _FLAGS)),
    ("and_tautology", re.compile(r"\band\b.*=", _FLAGS)),
    ("comment_terminator", re.compile(r"(--|;|#|/\*|\*/)")),
    ("stored_procedure", re.compile(r"\bxp_|\bsp_", _FLAGS)),
    ("quoted_tautology", re.compile(r"['\"]\s*(or|and)\s*['\"]\s*=\s*['\"]", _FLAGS)),
]

SUSPICIOUS_FIELD_MESSAGE = "Input contains potentially dangerous patterns"


def match_pattern_family(value: str) -> Optional[str]:
    """Name of the first pattern family matching ``value``, or None."""
    for family, pattern in SQL_INJECTION_PATTERNS:
        if pattern.search(value):
            return family
    return None


def is_suspicious(value: str) -> bool:
    """True if the string looks like an SQL-injection attempt."""
    return match_pattern_family(value) is not None


@dataclass(frozen=True)
class SqlInjectionFinding:
    """Location of the first suspicious leaf. The value itself is never kept."""
    section: str
    field_path: str
    family: str


def find_suspicious_field(payload: Any, section: str = "body") -> Optional[SqlInjectionFinding]:
    """Scan one request section and report the first suspicious leaf."""
    if payload is None:
        return None

    families: List[str] = []

    def check(value: str) -> bool:
        family = match_pattern_family(value)
        if family is None:
            return False
        families.append(family)
        return True

    field_path = scan(payload, check)
    if field_path is None:
        return None

    # A bare string section has no field name of its own
    return SqlInjectionFinding(section=section, field_path=field_path or section, family=families[-1])


class SqlInjectionGuard:
    """
    Pipeline gate rejecting requests whose body, query string or path
    parameters contain an SQL-injection-like string.

    The guard never mutates the request. Sections are scanned independently
    in the order body, query, path parameters, and the first hit wins.
    """

    stage = "sql_injection"

    def __init__(self, metrics=security_metrics):
        self.metrics = metrics

    async def __call__(self, ctx: RequestContext) -> Optional[SecurityFailure]:
        for section, payload in (
            ("body", ctx.body),
            ("query", ctx.query),
            ("params", ctx.path_params),
        ):
            finding = find_suspicious_field(payload, section)
            if finding is None:
                continue

            self.metrics.record_sql_injection_match(finding.family, finding.section)
            logger.warning(
                f"🛡️ [SQLI] Suspicious input in {finding.section} field '{finding.field_path}' "
                f"(family={finding.family}, path={ctx.path}, ip={ctx.client_ip})"
            )
            return SecurityFailure.of(
                FailureKind.SUSPICIOUS_INPUT,
                details=(FieldError(field=finding.field_path, message=SUSPICIOUS_FIELD_MESSAGE),)
            )

        return None
