"""Immutable view of an inbound request, built once at the ASGI boundary."""

from dataclasses import dataclass
from typing import Optional

from starlette.datastructures import Headers, QueryParams
from starlette.types import Scope

ACCESS_ASSERTION_HEADER = "cf-access-jwt-assertion"
PROTOCOL_VERSION_HEADER = "mcp-protocol-version"


@dataclass(frozen=True)
class RequestContext:
    """Method, path, headers and query parameters of one request.

    Header lookups are case-insensitive.
    """

    method: str
    path: str
    headers: Headers
    query_params: QueryParams

    @classmethod
    def from_scope(cls, scope: Scope) -> "RequestContext":
        return cls(
            method=scope.get("method", "GET"),
            path=scope.get("path", "/"),
            headers=Headers(scope=scope),
            query_params=QueryParams(scope.get("query_string", b"")),
        )

    @property
    def origin(self) -> Optional[str]:
        return self.headers.get("origin")

    @property
    def protocol_version(self) -> Optional[str]:
        value = self.headers.get(PROTOCOL_VERSION_HEADER)
        return value.strip() if value and value.strip() else None

    def bearer_token(self) -> Optional[str]:
        """
        Bearer credential from ``Authorization: Bearer`` or ``?access_token=``.

        The header wins when both are present.
        """
        authorization = self.headers.get("authorization", "")
        scheme, _, credentials = authorization.strip().partition(" ")
        if scheme.lower() == "bearer" and credentials.strip():
            return credentials.strip()

        token = self.query_params.get("access_token", "").strip()
        return token or None

    def access_assertion(self) -> Optional[str]:
        """Identity assertion injected by a Cloudflare Access edge proxy."""
        value = self.headers.get(ACCESS_ASSERTION_HEADER, "").strip()
        return value or None
