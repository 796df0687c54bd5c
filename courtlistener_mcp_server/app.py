import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Optional

import anyio
import httpx
from mcp.server.fastmcp import FastMCP
from mcp.server.transport_security import TransportSecuritySettings
from starlette.applications import Starlette
from starlette.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse
from starlette.routing import Mount, Route

from courtlistener_mcp_server.auth import (
    AuthDispatcher,
    AuthorizationServer,
    ClientRegistry,
    McpAuthMiddleware,
    OAuthContext,
    TransportGuard,
    cleanup_task,
    create_oauth_routes,
    create_storage,
)
from courtlistener_mcp_server.config import Settings, get_settings
from courtlistener_mcp_server.observability import setup_metrics

logger = logging.getLogger(__name__)


def create_oauth_context(settings: Settings) -> OAuthContext:
    """Build the client registry and authorization server for OAuth mode."""
    registry = ClientRegistry(settings.supported_scopes)
    if settings.oauth_client_id:
        registry.register_static_client(
            settings.oauth_client_id,
            settings.oauth_client_secret,
            settings.oauth_client_redirect_uris,
        )

    server = AuthorizationServer(
        create_storage(settings.token_storage_db),
        supported_scopes=settings.supported_scopes,
        access_token_ttl=settings.access_token_ttl,
        refresh_token_ttl=settings.refresh_token_ttl,
        authorization_code_ttl=settings.authorization_code_ttl,
    )
    return OAuthContext(registry=registry, server=server, issuer_url=settings.oauth_issuer_url)


def get_app(settings: Optional[Settings] = None, mcp: Optional[FastMCP] = None) -> Starlette:
    """
    Build the Starlette application.

    Args:
        settings: Application settings (read from the environment if omitted)
        mcp: FastMCP server carrying the legal research tools. A bare server
            is created when omitted.

    Returns:
        Starlette app serving /mcp behind the auth middleware, plus health
        checks and (when enabled) the OAuth endpoints
    """
    if settings is None:
        settings = get_settings()

    http_client = httpx.AsyncClient(timeout=settings.auth_request_timeout)

    oauth_ctx = create_oauth_context(settings) if settings.oauth_enabled else None
    dispatcher = AuthDispatcher.from_settings(
        settings,
        http_client,
        authorization_server=oauth_ctx.server if oauth_ctx else None,
    )
    guard = TransportGuard.from_settings(settings)

    if mcp is None:
        mcp = FastMCP(
            "CourtListener Legal Research",
            # Origin checks are done by the transport guard
            transport_security=TransportSecuritySettings(
                enable_dns_rebinding_protection=False
            ),
        )
    mcp_app = mcp.streamable_http_app()

    @asynccontextmanager
    async def starlette_lifespan(app: Starlette):
        if settings.metrics_enabled:
            setup_metrics(settings.metrics_port)

        shutdown_event = anyio.Event()
        async with anyio.create_task_group() as tg:
            if oauth_ctx is not None:
                await tg.start(
                    cleanup_task,
                    oauth_ctx.server.storage,
                    shutdown_event,
                    settings.token_cleanup_interval,
                )

            async with AsyncExitStack() as stack:
                stack.push_async_callback(http_client.aclose)
                await stack.enter_async_context(mcp.session_manager.run())
                logger.info("CourtListener MCP server started")
                try:
                    yield
                finally:
                    shutdown_event.set()
        logger.info("CourtListener MCP server stopped")

    def health_live(request):
        """Liveness probe: the process is running."""
        return JSONResponse({"status": "alive"})

    async def health_ready(request):
        """Readiness probe reporting which auth schemes are active."""
        return JSONResponse(
            {
                "status": "ready",
                "auth": {
                    "schemes": [scheme.value for scheme in dispatcher.schemes],
                    "primary": dispatcher.primary.value if dispatcher.primary else None,
                    "static_fallback": dispatcher.static_fallback_enabled,
                    "oauth_server": oauth_ctx is not None,
                },
            }
        )

    routes = [
        Route("/health/live", health_live, methods=["GET"]),
        Route("/health/ready", health_ready, methods=["GET"]),
    ]
    if oauth_ctx is not None:
        routes.extend(create_oauth_routes())
        logger.info(
            "OAuth routes enabled: /authorize, /token, /register, /revoke, "
            "/.well-known/oauth-authorization-server, /.well-known/oauth-protected-resource"
        )

    # Mount FastMCP at root last (catch-all, serves /mcp)
    routes.append(Mount("/", app=mcp_app))

    app = Starlette(routes=routes, lifespan=starlette_lifespan)
    app.state.settings = settings
    app.state.oauth_context = oauth_ctx
    app.state.dispatcher = dispatcher

    app.add_middleware(McpAuthMiddleware, dispatcher=dispatcher, guard=guard)

    # Added last so it is outermost and answers preflight requests
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins or ["*"],
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["Mcp-Session-Id", "WWW-Authenticate"],
    )

    return app
