"""Unit tests for McpAuthMiddleware."""

import json

import pytest

from courtlistener_mcp_server.auth.dispatcher import AuthDispatcher
from courtlistener_mcp_server.auth.middleware import McpAuthMiddleware
from courtlistener_mcp_server.auth.transport_guard import TransportGuard
from courtlistener_mcp_server.config import Settings

pytestmark = pytest.mark.unit

STATIC_TOKEN = "migration-secret"


class MockApp:
    """Mock ASGI app for testing middleware."""

    def __init__(self):
        self.called = False
        self.received_scope = None

    async def __call__(self, scope, receive, send):
        self.called = True
        self.received_scope = scope


class ResponseRecorder:
    """Collects ASGI send events."""

    def __init__(self):
        self.messages = []

    async def __call__(self, message):
        self.messages.append(message)

    @property
    def status(self):
        return self.messages[0]["status"]

    @property
    def headers(self):
        return {k.decode(): v.decode() for k, v in self.messages[0]["headers"]}

    def json(self):
        return json.loads(b"".join(m.get("body", b"") for m in self.messages[1:]))


async def receive():
    return {"type": "http.request", "body": b"", "more_body": False}


def http_scope(path="/mcp", method="POST", headers=None):
    return {
        "type": "http",
        "method": method,
        "path": path,
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "query_string": b"",
    }


@pytest.fixture
def app():
    return MockApp()


@pytest.fixture
def middleware(app):
    return McpAuthMiddleware(
        app,
        AuthDispatcher(Settings(mcp_auth_token=STATIC_TOKEN)),
        TransportGuard(allowed_origins=["https://app.example.com"], require_protocol_version=False),
    )


async def test_authorized_request_reaches_app(middleware, app):
    scope = http_scope(headers={"Authorization": f"Bearer {STATIC_TOKEN}"})

    await middleware(scope, receive, ResponseRecorder())

    assert app.called
    assert scope["state"]["auth"] == {"scheme": "static"}


async def test_missing_token_is_rejected(middleware, app):
    send = ResponseRecorder()

    await middleware(http_scope(), receive, send)

    assert not app.called
    assert send.status == 401
    assert send.json() == {
        "error": "missing_token",
        "message": "Missing bearer token",
    }
    assert send.headers["www-authenticate"].startswith('Bearer realm="mcp"')


async def test_origin_is_checked_before_credentials(middleware, app):
    send = ResponseRecorder()
    scope = http_scope(
        headers={"Authorization": f"Bearer {STATIC_TOKEN}", "Origin": "https://evil.example.com"}
    )

    await middleware(scope, receive, send)

    assert not app.called
    assert send.status == 403
    assert send.json()["error"] == "forbidden_origin"


async def test_unsupported_protocol_version_lists_supported(middleware, app):
    send = ResponseRecorder()
    scope = http_scope(
        headers={"Authorization": f"Bearer {STATIC_TOKEN}", "MCP-Protocol-Version": "1999-01-01"}
    )

    await middleware(scope, receive, send)

    assert send.status == 400
    body = send.json()
    assert body["error"] == "unsupported_protocol_version"
    assert "2025-06-18" in body["supported"]


async def test_preflight_passes_without_credentials(middleware, app):
    scope = http_scope(method="OPTIONS", headers={"Origin": "https://app.example.com"})

    await middleware(scope, receive, ResponseRecorder())

    assert app.called


@pytest.mark.parametrize("path", ["/health/live", "/oauth/token", "/.well-known/oauth-authorization-server", "/mcpx"])
async def test_unprotected_paths_pass_through(middleware, app, path):
    await middleware(http_scope(path=path), receive, ResponseRecorder())
    assert app.called


async def test_nested_protected_path(middleware, app):
    send = ResponseRecorder()
    await middleware(http_scope(path="/mcp/messages"), receive, send)

    assert not app.called
    assert send.status == 401


async def test_non_http_scope_passes_through(middleware, app):
    await middleware({"type": "lifespan"}, receive, ResponseRecorder())
    assert app.called


async def test_no_scheme_configured_allows(app):
    middleware = McpAuthMiddleware(app, AuthDispatcher(Settings()), TransportGuard())

    scope = http_scope()
    await middleware(scope, receive, ResponseRecorder())

    assert app.called
    assert scope["state"]["auth"] == {"scheme": "none"}
