"""
CSRF (Cross-Site Request Forgery) protection using the double-submit cookie pattern.

The server keeps no token state. A random token is issued in a cookie that
client script can read; every state-changing request must echo the same
value in the X-CSRF-Token header (or the csrfToken body field). A third-party
origin cannot read the cookie, so it cannot produce a matching echo.
"""
import hmac
import logging
import secrets
from typing import Callable, Optional, Set

from config import settings
from models.request_context import RequestContext, ResponseCookie
from utils.exceptions import FailureKind, FieldError, SecurityFailure
from utils.payload import get_field

logger = logging.getLogger(__name__)

SAFE_METHODS: Set[str] = {"GET", "HEAD", "OPTIONS"}
TOKEN_BYTES = 32


def csrf_exempt(func: Callable) -> Callable:
    """Mark an endpoint as exempt from CSRF validation."""
    func._csrf_exempt = True
    return func


def is_csrf_exempt(func: Optional[Callable]) -> bool:
    return bool(getattr(func, "_csrf_exempt", False))


class CsrfTokenService:
    """Issues and validates double-submit tokens."""

    def __init__(
        self,
        cookie_name: Optional[str] = None,
        header_name: Optional[str] = None,
        body_field: Optional[str] = None,
        max_age: Optional[int] = None,
        secure: Optional[bool] = None
    ):
        self.cookie_name = cookie_name or settings.csrf_cookie_name
        self.header_name = header_name or settings.csrf_header_name
        self.body_field = body_field or settings.csrf_body_field
        self.max_age = max_age if max_age is not None else settings.csrf_token_max_age
        self.secure = settings.is_production() if secure is None else secure

    @staticmethod
    def generate_token() -> str:
        """32 random bytes, hex-encoded (64 characters)."""
        return secrets.token_hex(TOKEN_BYTES)

    def ensure_token(self, ctx: RequestContext) -> str:
        """
        Return the request's token, issuing a new one if the cookie is absent.

        An existing token is reused as-is; tokens are never rotated silently.
        A newly issued token is queued on the context as a response cookie.
        """
        existing = ctx.cookies.get(self.cookie_name)
        if existing:
            return existing

        # Reuse a token issued earlier in this same request
        for cookie in ctx.response_cookies:
            if cookie.key == self.cookie_name:
                return cookie.value

        token = self.generate_token()
        ctx.response_cookies.append(ResponseCookie(
            key=self.cookie_name,
            value=token,
            max_age=self.max_age,
            httponly=False,  # client script must read it to echo it back
            secure=self.secure,
            samesite="strict",
        ))
        logger.debug(f"🛡️ [CSRF] Issued new CSRF token for {ctx.client_ip}")
        return token

    def candidate_token(self, ctx: RequestContext) -> Optional[str]:
        """Echoed token from the header, falling back to the body field."""
        header_token = ctx.headers.get(self.header_name)
        if header_token:
            return header_token

        body_token = get_field(ctx.body, self.body_field)
        if isinstance(body_token, str) and body_token:
            return body_token
        return None

    def verify_token(self, ctx: RequestContext) -> Optional[SecurityFailure]:
        """Validate the double-submit pair; side-effect-free methods always pass."""
        if ctx.method in SAFE_METHODS:
            return None

        cookie_token = ctx.cookies.get(self.cookie_name)
        candidate = self.candidate_token(ctx)

        if not cookie_token or not candidate:
            logger.warning(f"🛡️ [CSRF] Missing CSRF token on {ctx.method} {ctx.path} from {ctx.client_ip}")
            return SecurityFailure.of(
                FailureKind.CSRF_TOKEN_MISSING,
                details=(FieldError(field=self.body_field, message="CSRF token is required for this operation"),)
            )

        if not hmac.compare_digest(cookie_token.encode("utf-8"), candidate.encode("utf-8")):
            logger.warning(f"🛡️ [CSRF] CSRF token mismatch on {ctx.method} {ctx.path} from {ctx.client_ip}")
            return SecurityFailure.of(
                FailureKind.CSRF_TOKEN_INVALID,
                details=(FieldError(field=self.body_field, message="CSRF token validation failed"),)
            )

        return None


class CsrfGate:
    """Pipeline gate validating the double-submit token on mutating requests."""

    stage = "csrf"

    def __init__(self, service: CsrfTokenService, enabled: Optional[bool] = None):
        self.service = service
        self.enabled = settings.csrf_protection_enabled if enabled is None else enabled

    async def __call__(self, ctx: RequestContext) -> Optional[SecurityFailure]:
        if not self.enabled:
            return None
        return self.service.verify_token(ctx)
