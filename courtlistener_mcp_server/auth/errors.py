"""Error taxonomy for registration, grants, verification and transport checks."""

from enum import Enum
from typing import Any


class AuthErrorKind(Enum):
    """Closed set of authorization failures.

    Each member carries the OAuth/RFC error code sent to clients, the HTTP
    status it maps to, and the fixed client-facing description. Handlers
    switch on the member rather than on exception subclasses. The leading
    slug keeps members with the same wire code distinct.
    """

    # Client registration
    INVALID_CLIENT_METADATA = (
        "client_metadata",
        "invalid_client_metadata",
        400,
        "Invalid client metadata",
    )
    INVALID_CLIENT = ("client_auth", "invalid_client", 401, "Client authentication failed")

    # Authorization requests
    INVALID_REQUEST = ("request", "invalid_request", 400, "Malformed request")
    INVALID_REDIRECT_URI = (
        "redirect_uri",
        "invalid_request",
        400,
        "Unregistered redirect_uri",
    )
    UNAUTHORIZED_CLIENT = (
        "grant_not_allowed",
        "unauthorized_client",
        400,
        "Client is not allowed to use this grant type",
    )
    INVALID_SCOPE = ("scope", "invalid_scope", 400, "No valid scopes requested")
    UNSUPPORTED_GRANT_TYPE = (
        "grant_type",
        "unsupported_grant_type",
        400,
        "Unsupported grant_type",
    )

    # Grants
    INVALID_AUTHORIZATION_CODE = (
        "code",
        "invalid_grant",
        400,
        "Invalid authorization code",
    )
    CODE_CLIENT_MISMATCH = (
        "code_owner",
        "invalid_grant",
        400,
        "Authorization code was issued to a different client",
    )
    INVALID_GRANT = ("grant", "invalid_grant", 400, "Invalid grant")
    INVALID_REFRESH_TOKEN = (
        "refresh_token",
        "invalid_grant",
        400,
        "Invalid refresh token",
    )
    REFRESH_CLIENT_MISMATCH = (
        "refresh_owner",
        "invalid_grant",
        400,
        "Refresh token was issued to a different client",
    )
    INVALID_ACCESS_TOKEN = ("access_token", "invalid_token", 401, "Invalid access token")

    # Bearer verification
    DISCOVERY_FAILED = ("discovery", "invalid_token", 401, "Token verification failed")
    INVALID_TOKEN = ("bearer", "invalid_token", 401, "Token verification failed")
    INSUFFICIENT_SCOPE = ("scope_check", "insufficient_scope", 403, "insufficient_scope")

    # Transport
    FORBIDDEN_ORIGIN = ("origin", "forbidden_origin", 403, "Origin not allowed")
    MISSING_PROTOCOL_VERSION = (
        "protocol_missing",
        "missing_protocol_version",
        400,
        "Missing required MCP-Protocol-Version header",
    )
    UNSUPPORTED_PROTOCOL_VERSION = (
        "protocol_unsupported",
        "unsupported_protocol_version",
        400,
        "Unsupported MCP-Protocol-Version",
    )

    def __init__(self, slug: str, error_code: str, status_code: int, description: str):
        self.slug = slug
        self.error_code = error_code
        self.status_code = status_code
        self.description = description


class AuthError(Exception):
    """A terminal authorization failure.

    ``str(error)`` is the client-safe description for the kind. Anything
    sensitive (issuer URLs, upstream error text) goes in ``detail`` and is
    only ever logged.
    """

    def __init__(self, kind: AuthErrorKind, detail: str | None = None, **fields: Any):
        self.kind = kind
        self.detail = detail
        self.fields = fields
        super().__init__(kind.description)

    @property
    def error_code(self) -> str:
        return self.kind.error_code

    @property
    def status_code(self) -> int:
        return self.kind.status_code

    def to_dict(self) -> dict[str, Any]:
        """Client-facing RFC 6749 error body."""
        return {"error": self.kind.error_code, "error_description": str(self)}

    def __repr__(self) -> str:
        return f"AuthError({self.kind.name}, detail={self.detail!r}, fields={self.fields!r})"
