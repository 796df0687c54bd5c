"""
OAuth client registry with RFC 7591 dynamic client registration.

Registered clients are immutable and live for the lifetime of the process.
There is no update or delete operation.
"""

import hmac
import logging
import secrets
import time
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Literal, Optional
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from courtlistener_mcp_server.auth.errors import AuthError, AuthErrorKind

logger = logging.getLogger(__name__)

AuthMethod = Literal["none", "client_secret_post", "client_secret_basic"]
GrantType = Literal["authorization_code", "refresh_token"]


class ClientRegistrationRequest(BaseModel):
    """Client metadata accepted at the registration endpoint."""

    model_config = ConfigDict(extra="ignore")

    redirect_uris: list[str] = Field(min_length=1)
    token_endpoint_auth_method: AuthMethod = "client_secret_post"
    grant_types: list[GrantType] = Field(
        default_factory=lambda: ["authorization_code", "refresh_token"], min_length=1
    )
    response_types: list[Literal["code"]] = Field(
        default_factory=lambda: ["code"], min_length=1
    )
    scope: Optional[str] = None
    client_name: Optional[str] = None

    @field_validator("redirect_uris")
    @classmethod
    def _absolute_without_fragment(cls, uris: list[str]) -> list[str]:
        for uri in uris:
            parts = urlsplit(uri)
            if not parts.scheme:
                raise ValueError(f"redirect_uri must be absolute: {uri}")
            if parts.fragment:
                raise ValueError(f"redirect_uri must not contain a fragment: {uri}")
            if parts.scheme in ("http", "https") and not parts.netloc:
                raise ValueError(f"redirect_uri is missing a host: {uri}")
        return uris


@dataclass(frozen=True)
class RegisteredClient:
    """A registered OAuth client. ``client_secret`` is None for public clients."""

    client_id: str
    client_id_issued_at: int
    redirect_uris: tuple[str, ...]
    grant_types: tuple[str, ...]
    response_types: tuple[str, ...]
    token_endpoint_auth_method: str
    scope: Optional[str] = None
    client_secret: Optional[str] = None
    client_name: Optional[str] = None

    @property
    def is_public(self) -> bool:
        return self.token_endpoint_auth_method == "none"

    def to_dict(self) -> dict[str, Any]:
        """RFC 7591 client information response."""
        result: dict[str, Any] = {
            "client_id": self.client_id,
            "client_id_issued_at": self.client_id_issued_at,
            "redirect_uris": list(self.redirect_uris),
            "grant_types": list(self.grant_types),
            "response_types": list(self.response_types),
            "token_endpoint_auth_method": self.token_endpoint_auth_method,
        }
        if self.client_secret:
            result["client_secret"] = self.client_secret
            result["client_secret_expires_at"] = 0  # never expires
        if self.scope:
            result["scope"] = self.scope
        if self.client_name:
            result["client_name"] = self.client_name
        return result


class ClientRegistry:
    """In-memory registry of OAuth clients."""

    def __init__(self, supported_scopes: Iterable[str]):
        self.supported_scopes = tuple(supported_scopes)
        self._clients: dict[str, RegisteredClient] = {}

    def register_client(self, metadata: Mapping[str, Any]) -> RegisteredClient:
        """
        Register a new client from RFC 7591 metadata.

        Confidential clients (any auth method other than ``none``) get a fresh
        secret. Public clients never do.

        Args:
            metadata: Client metadata from the registration request

        Returns:
            The registered client

        Raises:
            AuthError: INVALID_CLIENT_METADATA if the metadata is malformed
        """
        try:
            request = ClientRegistrationRequest.model_validate(dict(metadata))
        except ValidationError as e:
            logger.info(f"Rejected client registration: {e.error_count()} validation error(s)")
            raise AuthError(AuthErrorKind.INVALID_CLIENT_METADATA, detail=str(e)) from e

        scope = self._validate_scope(request.scope)

        client_secret = None
        if request.token_endpoint_auth_method != "none":
            client_secret = secrets.token_urlsafe(32)

        client = RegisteredClient(
            client_id=str(uuid.uuid4()),
            client_secret=client_secret,
            client_id_issued_at=int(time.time()),
            redirect_uris=tuple(request.redirect_uris),
            grant_types=tuple(request.grant_types),
            response_types=tuple(request.response_types),
            token_endpoint_auth_method=request.token_endpoint_auth_method,
            scope=scope,
            client_name=request.client_name,
        )
        self._clients[client.client_id] = client
        logger.info(
            f"Registered OAuth client {client.client_id} "
            f"({'public' if client.is_public else 'confidential'}, "
            f"name={client.client_name or 'unnamed'})"
        )
        return client

    def register_static_client(
        self,
        client_id: str,
        client_secret: Optional[str],
        redirect_uris: Iterable[str],
    ) -> RegisteredClient:
        """Pre-register a configured client. Confidential only if a secret is given."""
        client = RegisteredClient(
            client_id=client_id,
            client_secret=client_secret or None,
            client_id_issued_at=int(time.time()),
            redirect_uris=tuple(redirect_uris),
            grant_types=("authorization_code", "refresh_token"),
            response_types=("code",),
            token_endpoint_auth_method="client_secret_post" if client_secret else "none",
            scope=" ".join(self.supported_scopes),
            client_name="CourtListener MCP Default Client",
        )
        self._clients[client_id] = client
        logger.info(f"Registered static OAuth client: {client_id}")
        return client

    def get_client(self, client_id: str) -> Optional[RegisteredClient]:
        """
        Get client information.

        Args:
            client_id: The client identifier

        Returns:
            Client if found, None otherwise
        """
        return self._clients.get(client_id)

    def authenticate_client(
        self, client_id: Optional[str], client_secret: Optional[str]
    ) -> RegisteredClient:
        """
        Authenticate a client at the token or revocation endpoint.

        Raises:
            AuthError: INVALID_CLIENT for unknown clients or a wrong secret
        """
        client = self._clients.get(client_id) if client_id else None
        if client is None:
            raise AuthError(AuthErrorKind.INVALID_CLIENT, detail=f"unknown client {client_id}")

        if client.client_secret:
            if not client_secret or not hmac.compare_digest(
                client.client_secret.encode(), client_secret.encode()
            ):
                raise AuthError(
                    AuthErrorKind.INVALID_CLIENT,
                    detail=f"secret mismatch for client {client_id}",
                )
        return client

    def _validate_scope(self, scope: Optional[str]) -> str:
        if not scope:
            return " ".join(self.supported_scopes)
        requested = scope.split()
        unknown = [s for s in requested if s not in self.supported_scopes]
        if unknown:
            raise AuthError(
                AuthErrorKind.INVALID_CLIENT_METADATA,
                detail=f"unsupported scopes: {', '.join(unknown)}",
            )
        return " ".join(requested)
