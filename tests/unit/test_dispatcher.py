"""Unit tests for per-request credential dispatch."""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from mcp.server.auth.provider import AccessToken

from courtlistener_mcp_server.auth.api_keys import ApiKeyValidation, SupabaseApiKeyStore
from courtlistener_mcp_server.auth.authorization_server import AuthorizationServer
from courtlistener_mcp_server.auth.dispatcher import (
    AuthDispatcher,
    AuthScheme,
    AuthVerdict,
    bearer_challenge,
)
from courtlistener_mcp_server.auth.errors import AuthError, AuthErrorKind
from courtlistener_mcp_server.auth.oidc_verifier import OIDCTokenVerifier, VerificationResult
from courtlistener_mcp_server.auth.request_context import RequestContext
from courtlistener_mcp_server.config import Settings

pytestmark = pytest.mark.unit

STATIC_TOKEN = "migration-secret"


def make_request(headers=None, query: str = "", method: str = "POST") -> RequestContext:
    raw_headers = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    return RequestContext.from_scope(
        {
            "type": "http",
            "method": method,
            "path": "/mcp",
            "headers": raw_headers,
            "query_string": query.encode(),
        }
    )


def bearer(token: str) -> RequestContext:
    return make_request({"Authorization": f"Bearer {token}"})


def oidc_verifier(valid=(), insufficient=()):
    """Verifier accepting ``valid`` tokens and failing ``insufficient`` on scope."""

    async def verify(token, config):
        if token in valid:
            return VerificationResult(payload={"sub": f"user-{token}"}, scopes=["legal:read"])
        if token in insufficient:
            raise AuthError(AuthErrorKind.INSUFFICIENT_SCOPE, scope=config.required_scope)
        raise AuthError(AuthErrorKind.INVALID_TOKEN, detail="bad signature")

    verifier = MagicMock(spec=OIDCTokenVerifier)
    verifier.verify_access_token = AsyncMock(side_effect=verify)
    return verifier


def api_key_store(valid=()):
    async def validate(api_key):
        if api_key in valid:
            return ApiKeyValidation(valid=True, user_id="user-42")
        return ApiKeyValidation(valid=False, reason="invalid_api_key")

    store = MagicMock(spec=SupabaseApiKeyStore)
    store.validate = AsyncMock(side_effect=validate)
    return store


def oidc_settings(**overrides) -> Settings:
    return Settings(
        oidc_issuer="https://idp.example.com",
        oidc_required_scope="legal:read",
        **overrides,
    )


def supabase_settings(**overrides) -> Settings:
    return Settings(
        supabase_url="https://project.supabase.co",
        supabase_secret_key="service-role",
        **overrides,
    )


class TestNoScheme:
    async def test_everything_is_allowed(self):
        dispatcher = AuthDispatcher(Settings())

        verdict = await dispatcher.authorize(make_request())

        assert dispatcher.primary is None
        assert verdict.allowed
        assert verdict.scheme == "none"


class TestStaticScheme:
    @pytest.fixture
    def dispatcher(self):
        return AuthDispatcher(Settings(mcp_auth_token=STATIC_TOKEN))

    async def test_missing_header(self, dispatcher):
        verdict = await dispatcher.authorize(make_request())

        assert not verdict.allowed
        assert verdict.status_code == 401
        assert verdict.error == "missing_token"
        assert verdict.headers["WWW-Authenticate"] == (
            'Bearer realm="mcp", error="invalid_request", error_description="missing_token"'
        )

    async def test_matching_token(self, dispatcher):
        verdict = await dispatcher.authorize(bearer(STATIC_TOKEN))

        assert verdict.allowed
        assert verdict.scheme == "static"

    async def test_wrong_token(self, dispatcher):
        verdict = await dispatcher.authorize(bearer("guess"))

        assert verdict.status_code == 401
        assert verdict.error == "invalid_token"
        assert verdict.message == "Invalid static bearer token"
        assert verdict.headers["WWW-Authenticate"] == 'Bearer realm="mcp", error="invalid_token"'

    async def test_lowercase_scheme_is_accepted(self, dispatcher):
        verdict = await dispatcher.authorize(make_request({"Authorization": f"bearer {STATIC_TOKEN}"}))
        assert verdict.allowed

    async def test_query_parameter(self, dispatcher):
        verdict = await dispatcher.authorize(make_request(query=f"access_token={STATIC_TOKEN}"))
        assert verdict.allowed

    async def test_header_wins_over_query(self, dispatcher):
        request = make_request(
            {"Authorization": "Bearer guess"}, query=f"access_token={STATIC_TOKEN}"
        )
        assert not (await dispatcher.authorize(request)).allowed

    async def test_non_bearer_authorization_is_missing(self, dispatcher):
        verdict = await dispatcher.authorize(make_request({"Authorization": "Basic dXNlcjpwdw=="}))
        assert verdict.error == "missing_token"


class TestOIDCScheme:
    async def test_valid_bearer(self):
        dispatcher = AuthDispatcher(oidc_settings(), oidc_verifier=oidc_verifier(valid={"good"}))

        verdict = await dispatcher.authorize(bearer("good"))

        assert verdict.allowed
        assert verdict.scheme == "oidc"
        assert verdict.identity == {"sub": "user-good", "scopes": ["legal:read"], "source": "bearer"}

    async def test_missing_credentials(self):
        dispatcher = AuthDispatcher(oidc_settings(), oidc_verifier=oidc_verifier())

        verdict = await dispatcher.authorize(make_request())

        assert verdict.status_code == 401
        assert verdict.message == (
            "Missing access token (Authorization: Bearer or CF-Access-Jwt-Assertion)"
        )

    async def test_invalid_token(self):
        dispatcher = AuthDispatcher(oidc_settings(), oidc_verifier=oidc_verifier())

        verdict = await dispatcher.authorize(bearer("forged"))

        assert verdict.status_code == 401
        assert verdict.error == "invalid_token"
        assert verdict.message == "Invalid OIDC access token"

    async def test_insufficient_scope_is_forbidden(self):
        dispatcher = AuthDispatcher(
            oidc_settings(), oidc_verifier=oidc_verifier(insufficient={"narrow"})
        )

        verdict = await dispatcher.authorize(bearer("narrow"))

        assert verdict.status_code == 403
        assert verdict.error == "insufficient_scope"
        assert verdict.message == "Token missing required scope"
        assert 'error="insufficient_scope"' in verdict.headers["WWW-Authenticate"]
        assert 'scope="legal:read"' in verdict.headers["WWW-Authenticate"]

    async def test_access_assertion_rescues_failed_bearer(self):
        verifier = oidc_verifier(valid={"edge-jwt"})
        dispatcher = AuthDispatcher(oidc_settings(), oidc_verifier=verifier)

        verdict = await dispatcher.authorize(
            make_request({"Authorization": "Bearer stale", "Cf-Access-Jwt-Assertion": "edge-jwt"})
        )

        assert verdict.allowed
        assert verdict.identity["source"] == "cf_access"
        assert verifier.verify_access_token.await_count == 2

    async def test_access_assertion_alone(self):
        dispatcher = AuthDispatcher(oidc_settings(), oidc_verifier=oidc_verifier(valid={"edge-jwt"}))

        verdict = await dispatcher.authorize(make_request({"Cf-Access-Jwt-Assertion": "edge-jwt"}))

        assert verdict.allowed

    async def test_static_token_is_ignored_without_fallback(self):
        dispatcher = AuthDispatcher(
            oidc_settings(mcp_auth_token=STATIC_TOKEN), oidc_verifier=oidc_verifier()
        )

        verdict = await dispatcher.authorize(bearer(STATIC_TOKEN))

        assert dispatcher.primary is AuthScheme.OIDC
        assert not verdict.allowed
        assert verdict.message == "Invalid OIDC access token"

    async def test_static_fallback_rescues(self):
        dispatcher = AuthDispatcher(
            oidc_settings(mcp_auth_token=STATIC_TOKEN, allow_static_fallback=True),
            oidc_verifier=oidc_verifier(),
        )

        verdict = await dispatcher.authorize(bearer(STATIC_TOKEN))

        assert verdict.allowed
        assert verdict.scheme == "static"

    async def test_failed_fallback_keeps_primary_denial(self):
        dispatcher = AuthDispatcher(
            oidc_settings(mcp_auth_token=STATIC_TOKEN, allow_static_fallback=True),
            oidc_verifier=oidc_verifier(insufficient={"narrow"}),
        )

        verdict = await dispatcher.authorize(bearer("narrow"))

        assert verdict.status_code == 403
        assert verdict.scheme == "oidc"

    async def test_malformed_discovery_document_is_unauthorized(self, issue_jwt):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=["not", "an", "object"])

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            dispatcher = AuthDispatcher(oidc_settings(), oidc_verifier=OIDCTokenVerifier(client))
            verdict = await dispatcher.authorize(bearer(issue_jwt()))

        assert verdict.status_code == 401
        assert verdict.error == "invalid_token"
        assert verdict.message == "Invalid OIDC access token"


class TestSupabaseScheme:
    async def test_valid_key(self):
        dispatcher = AuthDispatcher(supabase_settings(), api_key_store=api_key_store({"key-1"}))

        verdict = await dispatcher.authorize(bearer("key-1"))

        assert verdict.allowed
        assert verdict.identity == {"user_id": "user-42"}

    async def test_invalid_key(self):
        dispatcher = AuthDispatcher(supabase_settings(), api_key_store=api_key_store())

        verdict = await dispatcher.authorize(bearer("key-x"))

        assert verdict.status_code == 401
        assert verdict.message == "Invalid Supabase API key"

    async def test_missing_key(self):
        store = api_key_store()
        dispatcher = AuthDispatcher(supabase_settings(), api_key_store=store)

        verdict = await dispatcher.authorize(make_request())

        assert verdict.message == "Missing bearer token"
        store.validate.assert_not_awaited()

    async def test_static_token_denied_without_fallback(self):
        dispatcher = AuthDispatcher(
            supabase_settings(mcp_auth_token=STATIC_TOKEN), api_key_store=api_key_store()
        )

        verdict = await dispatcher.authorize(bearer(STATIC_TOKEN))

        assert not verdict.allowed
        assert verdict.message == "Invalid Supabase API key"

    async def test_static_token_accepted_with_fallback(self):
        dispatcher = AuthDispatcher(
            supabase_settings(mcp_auth_token=STATIC_TOKEN, allow_static_fallback=True),
            api_key_store=api_key_store(),
        )

        assert (await dispatcher.authorize(bearer(STATIC_TOKEN))).allowed


class TestOAuthScheme:
    @pytest.fixture
    def authorization_server(self):
        async def verify(token):
            if token == "local-token":
                return AccessToken(
                    token=token, client_id="client-1", scopes=["legal:read"], expires_at=None
                )
            raise AuthError(AuthErrorKind.INVALID_ACCESS_TOKEN)

        server = MagicMock(spec=AuthorizationServer)
        server.verify_access_token = AsyncMock(side_effect=verify)
        return server

    async def test_issued_token_is_accepted(self, authorization_server):
        dispatcher = AuthDispatcher(
            Settings(oauth_enabled=True), authorization_server=authorization_server
        )

        verdict = await dispatcher.authorize(bearer("local-token"))

        assert verdict.allowed
        assert verdict.identity == {"client_id": "client-1", "scopes": ["legal:read"]}

    async def test_unknown_token(self, authorization_server):
        dispatcher = AuthDispatcher(
            Settings(oauth_enabled=True),
            authorization_server=authorization_server,
            resource_metadata_url="http://localhost:8000/.well-known/oauth-protected-resource",
        )

        verdict = await dispatcher.authorize(bearer("other"))

        assert verdict.status_code == 401
        assert verdict.headers["WWW-Authenticate"] == (
            'Bearer realm="mcp", error="invalid_token", '
            'resource_metadata="http://localhost:8000/.well-known/oauth-protected-resource"'
        )

    async def test_oidc_primary_does_not_advertise_resource_metadata(self, authorization_server):
        async with httpx.AsyncClient() as client:
            dispatcher = AuthDispatcher.from_settings(
                oidc_settings(oauth_enabled=True),
                client,
                authorization_server=authorization_server,
            )
            missing = await dispatcher.authorize(make_request())

        assert dispatcher.primary is AuthScheme.OIDC
        assert missing.status_code == 401
        assert "resource_metadata" not in missing.headers["WWW-Authenticate"]


class TestPrimarySelection:
    def test_default_precedence(self):
        dispatcher = AuthDispatcher(
            oidc_settings(
                supabase_url="https://project.supabase.co",
                supabase_secret_key="service-role",
                mcp_auth_token=STATIC_TOKEN,
            ),
            oidc_verifier=oidc_verifier(),
            api_key_store=api_key_store(),
        )

        assert dispatcher.schemes == [AuthScheme.OIDC, AuthScheme.SUPABASE, AuthScheme.STATIC]
        assert dispatcher.primary is AuthScheme.OIDC

    def test_override_is_honoured_and_logged(self, caplog):
        dispatcher = AuthDispatcher(
            oidc_settings(
                supabase_url="https://project.supabase.co",
                supabase_secret_key="service-role",
                auth_primary="supabase",
            ),
            oidc_verifier=oidc_verifier(),
            api_key_store=api_key_store(),
        )

        assert dispatcher.primary is AuthScheme.SUPABASE
        assert "non-default" in caplog.text

    def test_override_for_unconfigured_scheme_is_ignored(self):
        dispatcher = AuthDispatcher(Settings(mcp_auth_token=STATIC_TOKEN, auth_primary="oidc"))
        assert dispatcher.primary is AuthScheme.STATIC

    def test_scheme_without_collaborator_is_unavailable(self):
        dispatcher = AuthDispatcher(oidc_settings(mcp_auth_token=STATIC_TOKEN))

        assert dispatcher.schemes == [AuthScheme.STATIC]
        assert dispatcher.primary is AuthScheme.STATIC

    def test_static_primary_has_no_fallback(self):
        dispatcher = AuthDispatcher(
            Settings(mcp_auth_token=STATIC_TOKEN, allow_static_fallback=True)
        )
        assert not dispatcher.static_fallback_enabled


class TestVerdict:
    def test_response_body_and_headers(self):
        verdict = AuthVerdict.deny(
            400, "unsupported_protocol_version", "Unsupported", supported=["2025-06-18"]
        )

        response = verdict.to_response()

        assert response.status_code == 400
        assert response.body == (
            b'{"error":"unsupported_protocol_version","message":"Unsupported",'
            b'"supported":["2025-06-18"]}'
        )

    def test_bearer_challenge_with_scope(self):
        assert bearer_challenge("insufficient_scope", scope="legal:read") == {
            "WWW-Authenticate": 'Bearer realm="mcp", error="insufficient_scope", scope="legal:read"'
        }
