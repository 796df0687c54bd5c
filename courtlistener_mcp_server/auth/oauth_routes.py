"""
OAuth 2.1 HTTP endpoints for the built-in authorization server.

- GET|POST /authorize: authorization code + PKCE, redirects immediately
- POST /token: authorization_code and refresh_token grants
- POST /register: RFC 7591 dynamic client registration
- POST /revoke: RFC 7009 token revocation
- GET /.well-known/oauth-authorization-server: RFC 8414 metadata
- GET /.well-known/oauth-protected-resource: RFC 9728 metadata

The endpoints read their collaborators from ``request.app.state.oauth_context``.
"""

import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import unquote

from starlette.datastructures import URL
from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response
from starlette.routing import Route

from courtlistener_mcp_server.auth.authorization_server import (
    AuthorizationRequest,
    AuthorizationServer,
    verify_code_verifier,
)
from courtlistener_mcp_server.auth.client_registry import ClientRegistry, RegisteredClient
from courtlistener_mcp_server.auth.errors import AuthError, AuthErrorKind
from courtlistener_mcp_server.observability.metrics import record_oauth_grant

logger = logging.getLogger(__name__)

NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}


@dataclass
class OAuthContext:
    """Collaborators shared by the OAuth endpoints."""

    registry: ClientRegistry
    server: AuthorizationServer
    issuer_url: str

    @property
    def resource_url(self) -> str:
        return f"{self.issuer_url}/mcp"


def _error_response(error: AuthError) -> JSONResponse:
    """RFC 6749 JSON error body; the detail is logged, never returned."""
    logger.info(f"OAuth request rejected: {error.kind.name} ({error.detail or 'no detail'})")
    headers = dict(NO_STORE_HEADERS)
    if error.kind is AuthErrorKind.INVALID_CLIENT:
        headers["WWW-Authenticate"] = 'Basic realm="oauth"'
    return JSONResponse(error.to_dict(), status_code=error.status_code, headers=headers)


def _split_scope(scope: Optional[str]) -> Optional[list[str]]:
    if scope is None:
        return None
    return scope.split()


def _client_credentials(
    request: Request, form: Any
) -> tuple[Optional[str], Optional[str]]:
    """
    Extract client credentials from HTTP Basic or the request body.

    Returns:
        Tuple of (client_id, client_secret); either may be None
    """
    authorization = request.headers.get("authorization", "")
    scheme, _, encoded = authorization.partition(" ")
    if scheme.lower() == "basic" and encoded:
        try:
            decoded = base64.b64decode(encoded.strip(), validate=True).decode()
        except (binascii.Error, UnicodeDecodeError) as e:
            raise AuthError(AuthErrorKind.INVALID_CLIENT, detail="malformed Basic header") from e
        client_id, separator, client_secret = decoded.partition(":")
        if not separator:
            raise AuthError(AuthErrorKind.INVALID_CLIENT, detail="malformed Basic header")
        return unquote(client_id), unquote(client_secret)

    return form.get("client_id"), form.get("client_secret")


async def _request_params(request: Request) -> dict[str, str]:
    params = dict(request.query_params)
    if request.method == "POST":
        form = await request.form()
        params.update({k: v for k, v in form.items() if isinstance(v, str)})
    return params


async def oauth_authorize(request: Request) -> RedirectResponse | JSONResponse:
    """
    Authorization endpoint.

    Parameters (query string or form body):
        response_type: Must be "code"
        client_id: Registered client identifier (required)
        redirect_uri: One of the client's registered URIs
        code_challenge: PKCE challenge (required)
        code_challenge_method: "S256" (default) or "plain"
        scope: Space-delimited scopes (optional, defaults to all)
        state: Opaque value echoed back to the client
        resource: RFC 8707 resource indicator (optional)

    Returns:
        302 redirect to the client's redirect_uri with ``code`` and ``state``.
        Errors detected before the redirect URI is validated are returned as
        JSON; later errors are redirected back to the client.
    """
    oauth_ctx: OAuthContext = request.app.state.oauth_context
    params = await _request_params(request)

    client_id = params.get("client_id")
    if not client_id:
        return _error_response(
            AuthError(AuthErrorKind.INVALID_REQUEST, detail="client_id is required")
        )

    client = oauth_ctx.registry.get_client(client_id)
    if client is None:
        return _error_response(
            AuthError(AuthErrorKind.INVALID_CLIENT, detail=f"unknown client {client_id}")
        )

    try:
        redirect_uri = oauth_ctx.server.resolve_redirect_uri(client, params.get("redirect_uri"))
    except AuthError as e:
        # Never redirect to an unregistered URI
        return _error_response(e)

    state = params.get("state")

    if params.get("response_type") != "code":
        return _redirect_error(
            redirect_uri,
            "unsupported_response_type",
            "Only 'code' response_type is supported",
            state,
        )

    try:
        return await oauth_ctx.server.authorize(
            client,
            AuthorizationRequest(
                redirect_uri=redirect_uri,
                code_challenge=params.get("code_challenge", ""),
                code_challenge_method=params.get("code_challenge_method", "S256"),
                scopes=_split_scope(params.get("scope")),
                state=state,
                resource=params.get("resource"),
            ),
        )
    except AuthError as e:
        logger.info(f"Authorization request from {client_id} rejected: {e.kind.name}")
        return _redirect_error(redirect_uri, e.error_code, str(e), state)


def _redirect_error(
    redirect_uri: str, error: str, description: str, state: Optional[str]
) -> RedirectResponse:
    params = {"error": error, "error_description": description}
    if state is not None:
        params["state"] = state
    return RedirectResponse(
        str(URL(redirect_uri).include_query_params(**params)), status_code=302
    )


async def oauth_token(request: Request) -> JSONResponse:
    """
    Token endpoint (form-encoded).

    grant_type=authorization_code requires ``code`` and ``code_verifier``;
    grant_type=refresh_token requires ``refresh_token`` and accepts ``scope``.
    Clients authenticate with client_secret_post, client_secret_basic, or
    (public clients) ``client_id`` alone.
    """
    oauth_ctx: OAuthContext = request.app.state.oauth_context
    form = await request.form()
    grant_type = form.get("grant_type")
    grant_label = grant_type if grant_type in ("authorization_code", "refresh_token") else "other"

    try:
        client_id, client_secret = _client_credentials(request, form)
        client = oauth_ctx.registry.authenticate_client(client_id, client_secret)

        if grant_type == "authorization_code":
            tokens = await _authorization_code_grant(oauth_ctx, client, form)
        elif grant_type == "refresh_token":
            tokens = await _refresh_token_grant(oauth_ctx, client, form)
        else:
            raise AuthError(AuthErrorKind.UNSUPPORTED_GRANT_TYPE, detail=f"got {grant_type}")
    except AuthError as e:
        record_oauth_grant(grant_label, e.error_code)
        return _error_response(e)

    record_oauth_grant(grant_label, "issued")
    return JSONResponse(tokens.model_dump(), headers=NO_STORE_HEADERS)


async def _authorization_code_grant(
    oauth_ctx: OAuthContext, client: RegisteredClient, form: Any
):
    if "authorization_code" not in client.grant_types:
        raise AuthError(AuthErrorKind.UNAUTHORIZED_CLIENT)

    code = form.get("code")
    code_verifier = form.get("code_verifier")
    if not code or not code_verifier:
        raise AuthError(
            AuthErrorKind.INVALID_REQUEST, detail="code and code_verifier are required"
        )

    # PKCE is checked before redemption so a bad verifier leaves the code usable
    record = await oauth_ctx.server.load_authorization_code(client, code)
    if not verify_code_verifier(
        code_verifier, record.code_challenge, record.code_challenge_method
    ):
        logger.warning(f"PKCE verification failed for client {client.client_id}")
        raise AuthError(AuthErrorKind.INVALID_GRANT, detail="PKCE verification failed")

    return await oauth_ctx.server.exchange_authorization_code(
        client, code, redirect_uri=form.get("redirect_uri") or None
    )


async def _refresh_token_grant(oauth_ctx: OAuthContext, client: RegisteredClient, form: Any):
    if "refresh_token" not in client.grant_types:
        raise AuthError(AuthErrorKind.UNAUTHORIZED_CLIENT)

    refresh_token = form.get("refresh_token")
    if not refresh_token:
        raise AuthError(AuthErrorKind.INVALID_REQUEST, detail="refresh_token is required")

    return await oauth_ctx.server.exchange_refresh_token(
        client, refresh_token, requested_scopes=_split_scope(form.get("scope"))
    )


async def oauth_register(request: Request) -> JSONResponse:
    """Dynamic client registration (RFC 7591)."""
    oauth_ctx: OAuthContext = request.app.state.oauth_context

    try:
        metadata = await request.json()
    except ValueError:
        return _error_response(
            AuthError(AuthErrorKind.INVALID_CLIENT_METADATA, detail="body is not JSON")
        )
    if not isinstance(metadata, dict):
        return _error_response(
            AuthError(AuthErrorKind.INVALID_CLIENT_METADATA, detail="body is not an object")
        )

    try:
        client = oauth_ctx.registry.register_client(metadata)
    except AuthError as e:
        return _error_response(e)

    return JSONResponse(client.to_dict(), status_code=201, headers=NO_STORE_HEADERS)


async def oauth_revoke(request: Request) -> Response:
    """Token revocation (RFC 7009). Unknown tokens still yield 200."""
    oauth_ctx: OAuthContext = request.app.state.oauth_context
    form = await request.form()

    try:
        client_id, client_secret = _client_credentials(request, form)
        client = oauth_ctx.registry.authenticate_client(client_id, client_secret)
        token = form.get("token")
        if not token:
            raise AuthError(AuthErrorKind.INVALID_REQUEST, detail="token is required")
    except AuthError as e:
        return _error_response(e)

    await oauth_ctx.server.revoke_token(client, token, form.get("token_type_hint"))
    return Response(status_code=200, headers=NO_STORE_HEADERS)


async def authorization_server_metadata(request: Request) -> JSONResponse:
    """OAuth 2.0 Authorization Server Metadata (RFC 8414)."""
    oauth_ctx: OAuthContext = request.app.state.oauth_context
    issuer = oauth_ctx.issuer_url
    return JSONResponse(
        {
            "issuer": issuer,
            "authorization_endpoint": f"{issuer}/authorize",
            "token_endpoint": f"{issuer}/token",
            "registration_endpoint": f"{issuer}/register",
            "revocation_endpoint": f"{issuer}/revoke",
            "scopes_supported": list(oauth_ctx.server.supported_scopes),
            "response_types_supported": ["code"],
            "grant_types_supported": ["authorization_code", "refresh_token"],
            "token_endpoint_auth_methods_supported": [
                "client_secret_post",
                "client_secret_basic",
                "none",
            ],
            "revocation_endpoint_auth_methods_supported": [
                "client_secret_post",
                "client_secret_basic",
                "none",
            ],
            "code_challenge_methods_supported": ["S256", "plain"],
        }
    )


async def protected_resource_metadata(request: Request) -> JSONResponse:
    """OAuth 2.0 Protected Resource Metadata (RFC 9728)."""
    oauth_ctx: OAuthContext = request.app.state.oauth_context
    return JSONResponse(
        {
            "resource": oauth_ctx.resource_url,
            "authorization_servers": [oauth_ctx.issuer_url],
            "scopes_supported": list(oauth_ctx.server.supported_scopes),
            "bearer_methods_supported": ["header", "query"],
            "resource_name": "CourtListener Legal Research MCP Server",
        }
    )


def create_oauth_routes() -> list[Route]:
    return [
        Route("/authorize", oauth_authorize, methods=["GET", "POST"]),
        Route("/token", oauth_token, methods=["POST"]),
        Route("/register", oauth_register, methods=["POST"]),
        Route("/revoke", oauth_revoke, methods=["POST"]),
        Route(
            "/.well-known/oauth-authorization-server",
            authorization_server_metadata,
            methods=["GET"],
        ),
        Route(
            "/.well-known/oauth-protected-resource",
            protected_resource_metadata,
            methods=["GET"],
        ),
    ]
