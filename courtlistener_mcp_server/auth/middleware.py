import logging
from collections.abc import Iterable

from starlette.types import ASGIApp, Receive, Scope, Send

from courtlistener_mcp_server.auth.dispatcher import AuthDispatcher
from courtlistener_mcp_server.auth.request_context import RequestContext
from courtlistener_mcp_server.auth.transport_guard import TransportGuard
from courtlistener_mcp_server.observability.metrics import record_auth_decision

logger = logging.getLogger(__name__)


class McpAuthMiddleware:
    """Guards MCP endpoints with the transport guard and the auth dispatcher.

    Requests outside ``protected_prefixes`` (health checks, OAuth endpoints,
    metadata) pass straight through. For protected requests the transport
    guard runs first; only then are credentials inspected. The allowed
    identity is stored in ``scope["state"]["auth"]`` for downstream handlers.
    """

    def __init__(
        self,
        app: ASGIApp,
        dispatcher: AuthDispatcher,
        guard: TransportGuard,
        protected_prefixes: Iterable[str] = ("/mcp",),
    ):
        self.app = app
        self.dispatcher = dispatcher
        self.guard = guard
        self.protected_prefixes = tuple(protected_prefixes)

    def _is_protected(self, path: str) -> bool:
        return any(
            path == prefix or path.startswith(prefix.rstrip("/") + "/")
            for prefix in self.protected_prefixes
        )

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or not self._is_protected(scope.get("path", "")):
            await self.app(scope, receive, send)
            return

        request = RequestContext.from_scope(scope)

        verdict = self.guard.check(request)
        if verdict is not None:
            record_auth_decision("transport", False, verdict.status_code)
            await verdict.to_response()(scope, receive, send)
            return

        # CORS preflight carries no credentials
        if request.method == "OPTIONS":
            await self.app(scope, receive, send)
            return

        verdict = await self.dispatcher.authorize(request)
        record_auth_decision(verdict.scheme, verdict.allowed, verdict.status_code)

        if not verdict.allowed:
            logger.info(
                f"Denied {request.method} {request.path}: {verdict.status_code} "
                f"{verdict.error} (scheme={verdict.scheme})"
            )
            await verdict.to_response()(scope, receive, send)
            return

        scope.setdefault("state", {})["auth"] = {
            "scheme": verdict.scheme,
            **(verdict.identity or {}),
        }
        await self.app(scope, receive, send)
