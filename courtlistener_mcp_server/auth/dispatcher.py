"""
Per-request authentication across several credential schemes.

Exactly one scheme is primary for a deployment. The static shared token is
consulted only when it is the primary scheme or when the migration fallback
(``MCP_ALLOW_STATIC_FALLBACK``) is explicitly enabled. With no scheme
configured every request is allowed.
"""

import hmac
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

import httpx
from starlette.responses import JSONResponse

from courtlistener_mcp_server.auth.api_keys import SupabaseApiKeyStore
from courtlistener_mcp_server.auth.authorization_server import AuthorizationServer
from courtlistener_mcp_server.auth.errors import AuthError, AuthErrorKind
from courtlistener_mcp_server.auth.oidc_verifier import OIDCConfig, OIDCTokenVerifier
from courtlistener_mcp_server.auth.request_context import RequestContext
from courtlistener_mcp_server.config import Settings

logger = logging.getLogger(__name__)


class AuthScheme(str, Enum):
    OIDC = "oidc"
    OAUTH = "oauth"
    SUPABASE = "supabase"
    STATIC = "static"
    NONE = "none"


DEFAULT_PRECEDENCE = (AuthScheme.OIDC, AuthScheme.OAUTH, AuthScheme.SUPABASE, AuthScheme.STATIC)


@dataclass(frozen=True)
class AuthVerdict:
    """Allow, or a structured denial with an HTTP status and challenge headers."""

    allowed: bool
    status_code: int = 200
    error: Optional[str] = None
    message: Optional[str] = None
    scheme: str = AuthScheme.NONE.value
    identity: Optional[dict[str, Any]] = None
    headers: dict[str, str] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def allow(cls, scheme: AuthScheme, identity: Optional[dict[str, Any]] = None) -> "AuthVerdict":
        return cls(allowed=True, scheme=scheme.value, identity=identity)

    @classmethod
    def deny(
        cls,
        status_code: int,
        error: str,
        message: str,
        scheme: AuthScheme = AuthScheme.NONE,
        headers: Optional[dict[str, str]] = None,
        **extra: Any,
    ) -> "AuthVerdict":
        return cls(
            allowed=False,
            status_code=status_code,
            error=error,
            message=message,
            scheme=scheme.value,
            headers=headers or {},
            extra=extra,
        )

    def to_response(self) -> JSONResponse:
        """JSON error body ``{"error", "message", ...}`` with challenge headers."""
        body: dict[str, Any] = {"error": self.error, "message": self.message}
        body.update(self.extra)
        return JSONResponse(body, status_code=self.status_code, headers=self.headers)


def bearer_challenge(
    error: str,
    description: Optional[str] = None,
    scope: Optional[str] = None,
    resource_metadata: Optional[str] = None,
) -> dict[str, str]:
    """Build a ``WWW-Authenticate: Bearer`` header (RFC 6750)."""
    params = ['realm="mcp"', f'error="{error}"']
    if description:
        params.append(f'error_description="{description}"')
    if scope:
        params.append(f'scope="{scope}"')
    if resource_metadata:
        params.append(f'resource_metadata="{resource_metadata}"')
    return {"WWW-Authenticate": "Bearer " + ", ".join(params)}


class AuthDispatcher:
    """Decides whether one MCP request is authenticated."""

    def __init__(
        self,
        settings: Settings,
        oidc_verifier: Optional[OIDCTokenVerifier] = None,
        api_key_store: Optional[SupabaseApiKeyStore] = None,
        authorization_server: Optional[AuthorizationServer] = None,
        resource_metadata_url: Optional[str] = None,
    ):
        """
        Initialize the dispatcher.

        Args:
            settings: Application settings
            oidc_verifier: Verifier for OIDC bearer JWTs (needed when OIDC_ISSUER is set)
            api_key_store: Service-role key store (needed when Supabase is configured)
            authorization_server: Built-in AS whose access tokens are accepted
            resource_metadata_url: Advertised in 401 challenges when OAuth is primary
        """
        self._static_token = settings.mcp_auth_token
        self._allow_static_fallback = settings.allow_static_fallback
        self._oidc_verifier = oidc_verifier
        self._api_key_store = api_key_store
        self._authorization_server = authorization_server
        self._resource_metadata_url = resource_metadata_url

        self.oidc_config: Optional[OIDCConfig] = None
        if settings.oidc_issuer:
            self.oidc_config = OIDCConfig(
                issuer=settings.oidc_issuer,
                audience=settings.oidc_audience,
                jwks_url=settings.oidc_jwks_url,
                required_scope=settings.oidc_required_scope,
            )

        self.schemes = self._available_schemes(settings)
        self.primary = self._select_primary(settings.auth_primary)
        # Tokens from the built-in server are only accepted when it is primary
        if self.primary is not AuthScheme.OAUTH:
            self._resource_metadata_url = None

        if self.primary is None:
            logger.warning(
                "No authentication scheme configured: MCP requests are accepted "
                "without credentials"
            )
        else:
            logger.info(
                f"Authentication schemes: {', '.join(s.value for s in self.schemes)} "
                f"(primary: {self.primary.value}, static fallback: {self.static_fallback_enabled})"
            )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        http_client: httpx.AsyncClient,
        authorization_server: Optional[AuthorizationServer] = None,
    ) -> "AuthDispatcher":
        """Build the dispatcher and its network-backed collaborators."""
        oidc_verifier = None
        if settings.oidc_issuer:
            oidc_verifier = OIDCTokenVerifier(http_client, timeout=settings.auth_request_timeout)

        api_key_store = None
        if settings.supabase_configured:
            api_key_store = SupabaseApiKeyStore(
                http_client,
                url=settings.supabase_url,
                service_role_key=settings.supabase_secret_key,
                table=settings.supabase_api_keys_table,
                timeout=settings.auth_request_timeout,
            )

        resource_metadata_url = None
        if settings.oauth_enabled:
            resource_metadata_url = (
                f"{settings.oauth_issuer_url}/.well-known/oauth-protected-resource"
            )

        return cls(
            settings,
            oidc_verifier=oidc_verifier,
            api_key_store=api_key_store,
            authorization_server=authorization_server,
            resource_metadata_url=resource_metadata_url,
        )

    @property
    def static_fallback_enabled(self) -> bool:
        return (
            bool(self._static_token)
            and self._allow_static_fallback
            and self.primary is not AuthScheme.STATIC
        )

    def _available_schemes(self, settings: Settings) -> list[AuthScheme]:
        available = []
        for name in settings.configured_schemes():
            scheme = AuthScheme(name)
            if scheme is AuthScheme.OIDC and self._oidc_verifier is None:
                logger.error("OIDC_ISSUER is set but no OIDC verifier was provided")
                continue
            if scheme is AuthScheme.SUPABASE and self._api_key_store is None:
                logger.error("Supabase is configured but no API key store was provided")
                continue
            if scheme is AuthScheme.OAUTH and self._authorization_server is None:
                logger.error("OAUTH_ENABLED is set but no authorization server was provided")
                continue
            available.append(scheme)
        return available

    def _select_primary(self, requested: Optional[str]) -> Optional[AuthScheme]:
        if not self.schemes:
            return None

        default = next(s for s in DEFAULT_PRECEDENCE if s in self.schemes)
        if requested:
            override = AuthScheme(requested)
            if override in self.schemes:
                if override is not default:
                    logger.warning(
                        f"MCP_AUTH_PRIMARY={override.value} replaces the default primary "
                        f"scheme {default.value}; review this non-default order"
                    )
                return override
            logger.warning(
                f"MCP_AUTH_PRIMARY={requested} is not configured; using {default.value}"
            )
        return default

    async def authorize(self, request: RequestContext) -> AuthVerdict:
        """
        Produce a single verdict for ``request``.

        Args:
            request: The request context built at the ASGI boundary

        Returns:
            AuthVerdict; denials carry a 401 or 403 status and a Bearer challenge
        """
        if self.primary is None:
            return AuthVerdict.allow(AuthScheme.NONE)

        bearer = request.bearer_token()

        if self.primary is AuthScheme.OIDC:
            verdict = await self._authorize_oidc(bearer, request.access_assertion())
        elif self.primary is AuthScheme.OAUTH:
            verdict = await self._authorize_oauth(bearer)
        elif self.primary is AuthScheme.SUPABASE:
            verdict = await self._authorize_supabase(bearer)
        else:
            return self._authorize_static(bearer)

        if verdict.allowed or not self.static_fallback_enabled:
            return verdict

        fallback = self._authorize_static(bearer)
        if fallback.allowed:
            logger.warning(
                f"Request accepted by static token fallback after {self.primary.value} "
                f"rejected it ({verdict.error})"
            )
            return fallback
        return verdict

    async def _authorize_oidc(
        self, bearer: Optional[str], assertion: Optional[str]
    ) -> AuthVerdict:
        candidates = [
            (source, token)
            for source, token in (("bearer", bearer), ("cf_access", assertion))
            if token
        ]
        if not candidates:
            return self._missing_token(
                AuthScheme.OIDC,
                "Missing access token (Authorization: Bearer or CF-Access-Jwt-Assertion)",
            )

        last_error: Optional[AuthError] = None
        for source, token in candidates:
            try:
                result = await self._oidc_verifier.verify_access_token(token, self.oidc_config)
            except AuthError as e:
                logger.info(
                    f"OIDC verification of {source} credential failed: "
                    f"{e.kind.name} ({e.detail or 'no detail'})"
                )
                last_error = e
                continue
            return AuthVerdict.allow(
                AuthScheme.OIDC,
                identity={"sub": result.subject, "scopes": result.scopes, "source": source},
            )

        if last_error is not None and last_error.kind is AuthErrorKind.INSUFFICIENT_SCOPE:
            scope = last_error.fields.get("scope") or self.oidc_config.required_scope
            return AuthVerdict.deny(
                403,
                "insufficient_scope",
                "Token missing required scope",
                scheme=AuthScheme.OIDC,
                headers=bearer_challenge("insufficient_scope", scope=scope),
                scope=scope,
            )
        return self._invalid_token(AuthScheme.OIDC, "Invalid OIDC access token")

    async def _authorize_oauth(self, bearer: Optional[str]) -> AuthVerdict:
        if not bearer:
            return self._missing_token(AuthScheme.OAUTH, "Missing bearer token")
        try:
            token = await self._authorization_server.verify_access_token(bearer)
        except AuthError as e:
            logger.info(f"Local access token rejected: {e.kind.name}")
            return self._invalid_token(AuthScheme.OAUTH, "Invalid access token")
        return AuthVerdict.allow(
            AuthScheme.OAUTH,
            identity={"client_id": token.client_id, "scopes": token.scopes},
        )

    async def _authorize_supabase(self, bearer: Optional[str]) -> AuthVerdict:
        if not bearer:
            return self._missing_token(AuthScheme.SUPABASE, "Missing bearer token")
        result = await self._api_key_store.validate(bearer)
        if result.valid:
            return AuthVerdict.allow(AuthScheme.SUPABASE, identity={"user_id": result.user_id})
        return self._invalid_token(AuthScheme.SUPABASE, "Invalid Supabase API key")

    def _authorize_static(self, bearer: Optional[str]) -> AuthVerdict:
        if not bearer:
            return self._missing_token(AuthScheme.STATIC, "Missing bearer token")
        if hmac.compare_digest(bearer.encode(), self._static_token.encode()):
            return AuthVerdict.allow(AuthScheme.STATIC)
        return self._invalid_token(AuthScheme.STATIC, "Invalid static bearer token")

    def _missing_token(self, scheme: AuthScheme, message: str) -> AuthVerdict:
        return AuthVerdict.deny(
            401,
            "missing_token",
            message,
            scheme=scheme,
            headers=bearer_challenge(
                "invalid_request", "missing_token", resource_metadata=self._resource_metadata_url
            ),
        )

    def _invalid_token(self, scheme: AuthScheme, message: str) -> AuthVerdict:
        return AuthVerdict.deny(
            401,
            "invalid_token",
            message,
            scheme=scheme,
            headers=bearer_challenge(
                "invalid_token", resource_metadata=self._resource_metadata_url
            ),
        )
