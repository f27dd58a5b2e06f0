"""
Per-request state shared by the security gates.
Built once from the inbound HTTP request and mutated only by the gates that own a field.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from starlette.datastructures import Headers

from models.identity import Identity


def resolve_client_ip(
    headers: Mapping[str, str],
    client_host: Optional[str],
    trust_proxy_headers: bool = False
) -> str:
    """Client address; proxy headers count only when the deployment sits behind a trusted proxy."""
    if trust_proxy_headers:
        forwarded_for = headers.get("X-Forwarded-For")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()

        real_ip = headers.get("X-Real-IP")
        if real_ip:
            return real_ip.strip()

    return client_host or "unknown"


@dataclass
class ResponseCookie:
    """Cookie queued by a gate, applied to the response after the handler runs."""
    key: str
    value: str
    max_age: Optional[int] = None
    httponly: bool = False
    secure: bool = False
    samesite: str = "strict"
    path: str = "/"


@dataclass
class RequestContext:
    """Everything a gate may look at, plus what the gates hand back to the route."""
    method: str
    path: str
    headers: Headers = field(default_factory=Headers)
    cookies: Dict[str, str] = field(default_factory=dict)
    query: Dict[str, Any] = field(default_factory=dict)
    path_params: Dict[str, Any] = field(default_factory=dict)
    body: Any = None
    client_host: Optional[str] = None
    trust_proxy_headers: bool = False
    identity: Optional[Identity] = None
    # Filled in by gates
    response_cookies: List[ResponseCookie] = field(default_factory=list)
    response_headers: Dict[str, str] = field(default_factory=dict)
    rate_limit_results: List[Any] = field(default_factory=list)
    state: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.method = self.method.upper()
        if not isinstance(self.headers, Headers):
            self.headers = Headers(headers=dict(self.headers or {}))

    @classmethod
    def build(
        cls,
        method: str,
        path: str,
        headers: Optional[Mapping[str, str]] = None,
        **kwargs
    ) -> "RequestContext":
        """Convenience constructor taking a plain header mapping."""
        return cls(method=method, path=path, headers=Headers(headers=dict(headers or {})), **kwargs)

    @property
    def client_ip(self) -> str:
        return resolve_client_ip(self.headers, self.client_host, self.trust_proxy_headers)

    @property
    def user_agent(self) -> Optional[str]:
        return self.headers.get("User-Agent")

    def scope_key(self) -> str:
        """Rate-limit scope: the subject when authenticated, else the network address."""
        if self.identity is not None:
            return self.identity.scope_key()
        return f"ip:{self.client_ip}"
