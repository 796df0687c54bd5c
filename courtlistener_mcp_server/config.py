import logging
import os
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger(__name__)

SUPPORTED_SCOPES = ("legal:read", "legal:search", "legal:analyze")

DEFAULT_PROTOCOL_VERSIONS = ("2025-06-18", "2025-03-26", "2024-11-05")

AUTH_PRIMARY_CHOICES = ("oidc", "oauth", "supabase", "static")


def parse_bool(value: Optional[str]) -> bool:
    """Interpret an environment flag. Accepts 1/true/yes/on, case-insensitive."""
    if not value:
        return False
    return value.strip().lower() in ("1", "true", "yes", "on")


def parse_list(value: Optional[str]) -> list[str]:
    """Split a comma-separated environment value, dropping blanks."""
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _env(name: str) -> Optional[str]:
    """Read an environment variable, treating whitespace-only values as unset."""
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from e


@dataclass
class Settings:
    """Application settings, built once at startup and passed explicitly."""

    # OIDC bearer tokens issued by an external identity platform
    oidc_issuer: Optional[str] = None
    oidc_audience: Optional[str] = None
    oidc_jwks_url: Optional[str] = None
    oidc_required_scope: Optional[str] = None

    # Static shared secret, kept only for migrations
    mcp_auth_token: Optional[str] = None
    allow_static_fallback: bool = False

    # Optional override of the dispatcher's primary scheme
    auth_primary: Optional[str] = None

    # Supabase-style service-role API key store
    supabase_url: Optional[str] = None
    supabase_secret_key: Optional[str] = None
    supabase_api_keys_table: str = "mcp_api_keys"

    # Transport guard
    allowed_origins: list[str] = field(default_factory=list)
    require_protocol_version: bool = False
    supported_protocol_versions: list[str] = field(
        default_factory=lambda: list(DEFAULT_PROTOCOL_VERSIONS)
    )

    # Built-in OAuth 2.1 authorization server
    oauth_enabled: bool = False
    oauth_issuer_url: str = "http://localhost:8000"
    oauth_client_id: Optional[str] = None
    oauth_client_secret: Optional[str] = None
    oauth_client_redirect_uris: list[str] = field(
        default_factory=lambda: ["http://localhost:3000/callback"]
    )
    access_token_ttl: int = 3600
    refresh_token_ttl: int = 86400
    authorization_code_ttl: int = 600
    supported_scopes: list[str] = field(default_factory=lambda: list(SUPPORTED_SCOPES))

    # Storage: in-memory unless a SQLite path is configured
    token_storage_db: Optional[str] = None
    # Seconds between sweeps of expired codes and tokens
    token_cleanup_interval: int = 300

    # Upper bound for discovery, JWKS and key-store calls (seconds)
    auth_request_timeout: float = 10.0

    # Observability
    metrics_enabled: bool = False
    metrics_port: int = 9090
    log_format: str = "text"  # "json" or "text"
    log_level: str = "INFO"

    def __post_init__(self):
        """Validate scheme configuration and normalise values."""
        if self.oidc_issuer:
            self.oidc_issuer = self.oidc_issuer.strip()
        if self.supabase_url:
            self.supabase_url = self.supabase_url.rstrip("/")
        self.oauth_issuer_url = self.oauth_issuer_url.rstrip("/")

        if self.auth_primary is not None:
            self.auth_primary = self.auth_primary.strip().lower()
            if self.auth_primary not in AUTH_PRIMARY_CHOICES:
                raise ValueError(
                    f"MCP_AUTH_PRIMARY must be one of {', '.join(AUTH_PRIMARY_CHOICES)}, "
                    f"got {self.auth_primary!r}"
                )

        for name in (
            "access_token_ttl",
            "refresh_token_ttl",
            "authorization_code_ttl",
            "token_cleanup_interval",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name.upper()} must be positive")

        if self.auth_request_timeout <= 0:
            raise ValueError("AUTH_REQUEST_TIMEOUT must be positive")

        if not self.supported_protocol_versions:
            raise ValueError("MCP_SUPPORTED_PROTOCOL_VERSIONS cannot be empty")

        if self.allow_static_fallback and not self.mcp_auth_token:
            logger.warning(
                "MCP_ALLOW_STATIC_FALLBACK is set but MCP_AUTH_TOKEN is empty. "
                "The static fallback will never match."
            )

        if bool(self.supabase_url) != bool(self.supabase_secret_key):
            logger.warning(
                "Supabase API key auth needs both SUPABASE_URL and SUPABASE_SECRET_KEY; "
                "the scheme stays disabled."
            )

        if self.auth_primary and self.auth_primary not in self.configured_schemes():
            logger.warning(
                f"MCP_AUTH_PRIMARY={self.auth_primary} names a scheme that is not "
                "configured and will be ignored"
            )

    @property
    def supabase_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_secret_key)

    def configured_schemes(self) -> list[str]:
        """Configured credential schemes in default precedence order."""
        schemes = []
        if self.oidc_issuer:
            schemes.append("oidc")
        if self.oauth_enabled:
            schemes.append("oauth")
        if self.supabase_configured:
            schemes.append("supabase")
        if self.mcp_auth_token:
            schemes.append("static")
        return schemes

    @property
    def auth_configured(self) -> bool:
        return bool(self.configured_schemes())


def get_settings() -> Settings:
    """Get application settings from environment variables.

    Returns:
        Settings object with configuration values
    """
    return Settings(
        # OIDC settings
        oidc_issuer=_env("OIDC_ISSUER"),
        oidc_audience=_env("OIDC_AUDIENCE"),
        oidc_jwks_url=_env("OIDC_JWKS_URL"),
        oidc_required_scope=_env("OIDC_REQUIRED_SCOPE"),
        # Static token
        mcp_auth_token=_env("MCP_AUTH_TOKEN"),
        allow_static_fallback=parse_bool(os.getenv("MCP_ALLOW_STATIC_FALLBACK")),
        auth_primary=_env("MCP_AUTH_PRIMARY"),
        # Supabase
        supabase_url=_env("SUPABASE_URL"),
        supabase_secret_key=_env("SUPABASE_SECRET_KEY")
        or _env("SUPABASE_SERVICE_ROLE_KEY"),
        supabase_api_keys_table=_env("SUPABASE_API_KEYS_TABLE") or "mcp_api_keys",
        # Transport guard
        allowed_origins=parse_list(os.getenv("MCP_ALLOWED_ORIGINS")),
        require_protocol_version=parse_bool(os.getenv("MCP_REQUIRE_PROTOCOL_VERSION")),
        supported_protocol_versions=parse_list(
            os.getenv("MCP_SUPPORTED_PROTOCOL_VERSIONS")
        )
        or list(DEFAULT_PROTOCOL_VERSIONS),
        # Authorization server
        oauth_enabled=parse_bool(os.getenv("OAUTH_ENABLED")),
        oauth_issuer_url=_env("OAUTH_ISSUER_URL") or "http://localhost:8000",
        oauth_client_id=_env("OAUTH_CLIENT_ID"),
        oauth_client_secret=_env("OAUTH_CLIENT_SECRET"),
        oauth_client_redirect_uris=parse_list(os.getenv("OAUTH_CLIENT_REDIRECT_URIS"))
        or ["http://localhost:3000/callback"],
        access_token_ttl=_env_int("OAUTH_ACCESS_TOKEN_TTL", 3600),
        refresh_token_ttl=_env_int("OAUTH_REFRESH_TOKEN_TTL", 86400),
        authorization_code_ttl=_env_int("OAUTH_CODE_TTL", 600),
        token_storage_db=_env("TOKEN_STORAGE_DB"),
        token_cleanup_interval=_env_int("TOKEN_CLEANUP_INTERVAL", 300),
        auth_request_timeout=float(_env("AUTH_REQUEST_TIMEOUT") or "10"),
        # Observability
        metrics_enabled=parse_bool(os.getenv("METRICS_ENABLED")),
        metrics_port=_env_int("METRICS_PORT", 9090),
        log_format=(_env("LOG_FORMAT") or "text").lower(),
        log_level=(_env("LOG_LEVEL") or "INFO").upper(),
    )
