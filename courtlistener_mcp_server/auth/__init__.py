"""Authorization components for the CourtListener MCP server."""

from .api_keys import ApiKeyValidation, SupabaseApiKeyStore
from .authorization_server import (
    AuthorizationRequest,
    AuthorizationServer,
    TokenResponse,
    verify_code_verifier,
)
from .client_registry import ClientRegistry, RegisteredClient
from .dispatcher import AuthDispatcher, AuthScheme, AuthVerdict
from .errors import AuthError, AuthErrorKind
from .middleware import McpAuthMiddleware
from .oauth_routes import OAuthContext, create_oauth_routes
from .oidc_verifier import OIDCConfig, OIDCTokenVerifier
from .request_context import RequestContext
from .storage import (
    InMemoryStorage,
    SQLiteStorage,
    StorageBackend,
    cleanup_task,
    create_storage,
)
from .transport_guard import TransportGuard

__all__ = [
    "ApiKeyValidation",
    "AuthDispatcher",
    "AuthError",
    "AuthErrorKind",
    "AuthScheme",
    "AuthVerdict",
    "AuthorizationRequest",
    "AuthorizationServer",
    "ClientRegistry",
    "InMemoryStorage",
    "McpAuthMiddleware",
    "OAuthContext",
    "OIDCConfig",
    "OIDCTokenVerifier",
    "RegisteredClient",
    "RequestContext",
    "SQLiteStorage",
    "StorageBackend",
    "SupabaseApiKeyStore",
    "TokenResponse",
    "TransportGuard",
    "cleanup_task",
    "create_oauth_routes",
    "create_storage",
    "verify_code_verifier",
]
