"""Origin allow-listing and MCP-Protocol-Version validation.

Runs before any credential is inspected.
"""

import logging
from collections.abc import Iterable
from typing import Optional

from courtlistener_mcp_server.auth.dispatcher import AuthVerdict
from courtlistener_mcp_server.auth.errors import AuthErrorKind
from courtlistener_mcp_server.auth.request_context import RequestContext
from courtlistener_mcp_server.config import DEFAULT_PROTOCOL_VERSIONS, Settings

logger = logging.getLogger(__name__)


class TransportGuard:
    """Rejects disallowed origins and unsupported protocol versions."""

    def __init__(
        self,
        allowed_origins: Iterable[str] = (),
        require_protocol_version: bool = False,
        supported_versions: Iterable[str] = DEFAULT_PROTOCOL_VERSIONS,
    ):
        self.allowed_origins = tuple(allowed_origins)
        self.require_protocol_version = require_protocol_version
        self.supported_versions = tuple(supported_versions)

    @classmethod
    def from_settings(cls, settings: Settings) -> "TransportGuard":
        return cls(
            allowed_origins=settings.allowed_origins,
            require_protocol_version=settings.require_protocol_version,
            supported_versions=settings.supported_protocol_versions,
        )

    def is_allowed_origin(self, origin: Optional[str]) -> bool:
        """
        An empty allow-list or ``*`` allows any origin. Requests without an
        Origin header come from non-browser clients and are allowed.
        """
        if not origin:
            return True
        if not self.allowed_origins or "*" in self.allowed_origins:
            return True
        return origin in self.allowed_origins

    def check(self, request: RequestContext) -> Optional[AuthVerdict]:
        """
        Validate transport-level headers.

        Returns:
            None if the request may proceed, otherwise a denial verdict
        """
        origin = request.origin
        if not self.is_allowed_origin(origin):
            logger.warning(f"Rejected request from disallowed origin {origin}")
            kind = AuthErrorKind.FORBIDDEN_ORIGIN
            return AuthVerdict.deny(kind.status_code, kind.error_code, kind.description)

        # CORS preflight never carries MCP headers
        if request.method == "OPTIONS":
            return None

        version = request.protocol_version
        if version is None:
            if self.require_protocol_version:
                kind = AuthErrorKind.MISSING_PROTOCOL_VERSION
                return AuthVerdict.deny(kind.status_code, kind.error_code, kind.description)
            return None

        if version not in self.supported_versions:
            logger.info(f"Rejected unsupported MCP-Protocol-Version {version}")
            kind = AuthErrorKind.UNSUPPORTED_PROTOCOL_VERSION
            return AuthVerdict.deny(
                kind.status_code,
                kind.error_code,
                f"{kind.description}: {version}",
                supported=list(self.supported_versions),
            )
        return None
