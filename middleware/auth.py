"""
Authentication gate for bearer-token verification.

The gate only accepts ``Authorization: Bearer <token>`` with the scheme
keyword spelled exactly that way. A missing or malformed header is rejected
before any verification work is done. Token verification itself is delegated
to a TokenVerifier; the default one decodes HS256 JWTs with PyJWT.
"""
import logging
from typing import Any, Dict, Mapping, Optional, Protocol, Union

import jwt
from jwt import ExpiredSignatureError, InvalidTokenError

from config import settings
from models.identity import Identity, identity_from_claims
from models.request_context import RequestContext
from utils.exceptions import FailureKind, SecurityFailure, TokenVerificationError

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "


class TokenVerifier(Protocol):
    """Credential verification collaborator."""

    async def verify(self, token: str) -> Mapping[str, Any]:
        """Return decoded claims or raise."""
        ...


class JWTTokenVerifier:
    """Verify access tokens signed with the shared application secret."""

    def __init__(
        self,
        secret: Optional[str] = None,
        algorithm: Optional[str] = None,
        leeway: int = 0
    ):
        self.secret = secret or settings.jwt_secret
        self.algorithm = algorithm or settings.jwt_algorithm
        self.leeway = leeway

    async def verify(self, token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                leeway=self.leeway
            )
        except ExpiredSignatureError as e:
            raise TokenVerificationError("Access token expired", expired=True) from e
        except InvalidTokenError as e:
            raise TokenVerificationError("Invalid access token") from e


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Token part of a ``Bearer <token>`` header, or None if the header does not have that shape."""
    if not authorization or not authorization.startswith(BEARER_PREFIX):
        return None
    token = authorization[len(BEARER_PREFIX):]
    return token or None


async def authenticate(
    authorization: Optional[str],
    verifier: TokenVerifier
) -> Union[Identity, SecurityFailure]:
    """
    Resolve an Authorization header to an Identity.

    Returns a NO_CREDENTIAL failure without calling the verifier when the
    header is missing or malformed, and INVALID_CREDENTIAL when the verifier
    rejects the token or the claims do not describe a known subject.
    """
    token = extract_bearer_token(authorization)
    if token is None:
        return SecurityFailure.of(FailureKind.NO_CREDENTIAL)

    try:
        claims = await verifier.verify(token)
    except TokenVerificationError as e:
        logger.info(f"🔐 [AUTH] Token rejected: {e.message}")
        return SecurityFailure.of(FailureKind.INVALID_CREDENTIAL, e.message)
    except Exception as e:
        # Verifier timeouts and transport errors fail closed
        logger.error(f"❌ [AUTH] Token verification error: {type(e).__name__}: {e}")
        return SecurityFailure.of(FailureKind.INVALID_CREDENTIAL)

    try:
        return identity_from_claims(dict(claims))
    except ValueError as e:
        logger.info(f"🔐 [AUTH] Token claims rejected: {e}")
        return SecurityFailure.of(FailureKind.INVALID_CREDENTIAL)


async def optional_authenticate(
    authorization: Optional[str],
    verifier: TokenVerifier
) -> Optional[Identity]:
    """Same as authenticate, but any failure yields an anonymous request."""
    try:
        outcome = await authenticate(authorization, verifier)
    except Exception as e:
        logger.warning(f"⚠️ [AUTH] Unexpected error in optional auth: {e}")
        return None
    if isinstance(outcome, SecurityFailure):
        return None
    return outcome


class AuthenticationGate:
    """
    Pipeline gate attaching the caller's Identity to the request context.

    With ``optional=True`` the gate never fails: requests without a usable
    token simply proceed with no Identity attached.
    """

    stage = "authentication"

    def __init__(self, verifier: TokenVerifier, optional: bool = False):
        self.verifier = verifier
        self.optional = optional

    async def __call__(self, ctx: RequestContext) -> Optional[SecurityFailure]:
        authorization = ctx.headers.get("Authorization")

        if self.optional:
            ctx.identity = await optional_authenticate(authorization, self.verifier)
            return None

        outcome = await authenticate(authorization, self.verifier)
        if isinstance(outcome, SecurityFailure):
            return outcome

        ctx.identity = outcome
        logger.debug(f"✅ [AUTH] Authenticated subject {outcome.subject_id} ({outcome.role.value})")
        return None
