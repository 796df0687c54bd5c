"""
OAuth 2.1 authorization server: authorization code + PKCE, refresh token
rotation with replay detection, and scope narrowing.

Codes and tokens are opaque random strings. They are stored through a
``StorageBackend`` under ``"<kind>:" + sha256(token)`` so a leaked store does
not leak usable credentials.

Refresh tokens belong to a rotation family. Redeeming a refresh token takes
it out of storage atomically and leaves a tombstone behind. Presenting a
tombstoned token again is treated as replay: the family's live refresh token
and its paired access token are revoked.
"""

import base64
import hashlib
import hmac
import logging
import secrets
import time
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Literal, Optional, TypeVar

from mcp.server.auth.provider import AccessToken
from pydantic import BaseModel
from starlette.datastructures import URL
from starlette.responses import RedirectResponse

from courtlistener_mcp_server.auth.client_registry import RegisteredClient
from courtlistener_mcp_server.auth.errors import AuthError, AuthErrorKind
from courtlistener_mcp_server.auth.storage import StorageBackend
from courtlistener_mcp_server.config import SUPPORTED_SCOPES

logger = logging.getLogger(__name__)

ChallengeMethod = Literal["S256", "plain"]

Record = TypeVar("Record", bound=BaseModel)


class AuthorizationCodeRecord(BaseModel):
    client_id: str
    redirect_uri: str
    code_challenge: str
    code_challenge_method: ChallengeMethod = "S256"
    scopes: list[str]
    expires_at: float
    resource: Optional[str] = None


class AccessTokenRecord(BaseModel):
    client_id: str
    scopes: list[str]
    expires_at: float
    resource: Optional[str] = None
    family_id: Optional[str] = None


class RefreshTokenRecord(BaseModel):
    client_id: str
    scopes: list[str]
    expires_at: float
    family_id: str
    access_token_hash: str
    resource: Optional[str] = None


class TokenFamily(BaseModel):
    """Current members of a refresh token rotation chain."""

    refresh_token_hash: str
    access_token_hash: str


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: Literal["Bearer"] = "Bearer"
    expires_in: int
    scope: str


@dataclass(frozen=True)
class AuthorizationRequest:
    """Parameters of an authorization request after client lookup."""

    code_challenge: str
    redirect_uri: Optional[str] = None
    code_challenge_method: str = "S256"
    scopes: Optional[list[str]] = None
    state: Optional[str] = None
    resource: Optional[str] = None


def token_digest(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def verify_code_verifier(verifier: str, challenge: str, method: str = "S256") -> bool:
    """
    Check a PKCE code verifier against the stored challenge (RFC 7636).

    Args:
        verifier: The ``code_verifier`` sent to the token endpoint
        challenge: The ``code_challenge`` bound to the authorization code
        method: "S256" or "plain"

    Returns:
        True if the verifier matches
    """
    if not verifier or not challenge:
        return False
    if method == "S256":
        computed = (
            base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest())
            .rstrip(b"=")
            .decode()
        )
    elif method == "plain":
        computed = verifier
    else:
        return False
    return hmac.compare_digest(computed.encode(), challenge.encode())


def _unique(items: Iterable[str]) -> list[str]:
    seen: list[str] = []
    for item in items:
        if item not in seen:
            seen.append(item)
    return seen


class AuthorizationServer:
    """Issues and redeems authorization codes, access tokens and refresh tokens."""

    def __init__(
        self,
        storage: StorageBackend,
        supported_scopes: Iterable[str] = SUPPORTED_SCOPES,
        access_token_ttl: int = 3600,
        refresh_token_ttl: int = 86400,
        authorization_code_ttl: int = 600,
        clock: Callable[[], float] = time.time,
    ):
        self.storage = storage
        self.supported_scopes = tuple(supported_scopes)
        self.access_token_ttl = access_token_ttl
        self.refresh_token_ttl = refresh_token_ttl
        self.authorization_code_ttl = authorization_code_ttl
        self._clock = clock

    # ------------------------------------------------------------------
    # Scopes
    # ------------------------------------------------------------------

    def grant_scopes(
        self,
        requested: Optional[Iterable[str]],
        registered: Optional[str] = None,
    ) -> list[str]:
        """
        Scopes granted for an authorization request.

        ``registered`` is the space-delimited scope the client registered
        with and bounds the grant. An omitted or empty request grants every
        allowed scope. Otherwise the allowed entries are kept in request order.

        Raises:
            AuthError: INVALID_SCOPE if none of the requested scopes is allowed
        """
        allowed = list(self.supported_scopes)
        if registered:
            ceiling = set(registered.split())
            allowed = [scope for scope in allowed if scope in ceiling]

        requested = _unique(requested or [])
        if not requested:
            if not allowed:
                raise AuthError(
                    AuthErrorKind.INVALID_SCOPE, detail=f"registered: {registered}"
                )
            return allowed

        granted = [scope for scope in requested if scope in allowed]
        if not granted:
            raise AuthError(
                AuthErrorKind.INVALID_SCOPE, detail=f"requested: {' '.join(requested)}"
            )
        return granted

    # ------------------------------------------------------------------
    # Authorization endpoint
    # ------------------------------------------------------------------

    def resolve_redirect_uri(self, client: RegisteredClient, redirect_uri: Optional[str]) -> str:
        """
        Return the redirect URI to use for ``client``.

        The URI may be omitted only when the client registered exactly one.

        Raises:
            AuthError: INVALID_REDIRECT_URI if the URI is not registered
        """
        if redirect_uri is None:
            if len(client.redirect_uris) == 1:
                return client.redirect_uris[0]
            raise AuthError(
                AuthErrorKind.INVALID_REDIRECT_URI,
                detail=f"redirect_uri required for client {client.client_id}",
            )
        if redirect_uri not in client.redirect_uris:
            raise AuthError(
                AuthErrorKind.INVALID_REDIRECT_URI,
                detail=f"{redirect_uri} not registered for client {client.client_id}",
            )
        return redirect_uri

    async def authorize(
        self, client: RegisteredClient, request: AuthorizationRequest
    ) -> RedirectResponse:
        """
        Mint an authorization code and redirect back to the client.

        Args:
            client: The authenticated (looked up) client
            request: Redirect URI, PKCE challenge, scopes, state and resource

        Returns:
            302 redirect to ``redirect_uri`` carrying ``code`` and ``state``

        Raises:
            AuthError: INVALID_REDIRECT_URI, UNAUTHORIZED_CLIENT,
                INVALID_REQUEST or INVALID_SCOPE
        """
        redirect_uri = self.resolve_redirect_uri(client, request.redirect_uri)

        if "authorization_code" not in client.grant_types:
            raise AuthError(
                AuthErrorKind.UNAUTHORIZED_CLIENT,
                detail=f"client {client.client_id} grant_types={client.grant_types}",
            )
        if not request.code_challenge:
            raise AuthError(AuthErrorKind.INVALID_REQUEST, detail="code_challenge required")
        if request.code_challenge_method not in ("S256", "plain"):
            raise AuthError(
                AuthErrorKind.INVALID_REQUEST,
                detail=f"unsupported code_challenge_method {request.code_challenge_method}",
            )

        scopes = self.grant_scopes(request.scopes, client.scope)

        code = secrets.token_urlsafe(32)
        record = AuthorizationCodeRecord(
            client_id=client.client_id,
            redirect_uri=redirect_uri,
            code_challenge=request.code_challenge,
            code_challenge_method=request.code_challenge_method,
            scopes=scopes,
            expires_at=self._clock() + self.authorization_code_ttl,
            resource=request.resource,
        )
        await self._put("code", code, record)
        logger.info(
            f"Issued authorization code for client {client.client_id} "
            f"(scopes: {' '.join(scopes)})"
        )

        params = {"code": code}
        if request.state is not None:
            params["state"] = request.state
        target = URL(redirect_uri).include_query_params(**params)
        return RedirectResponse(str(target), status_code=302)

    # ------------------------------------------------------------------
    # Authorization code grant
    # ------------------------------------------------------------------

    async def load_authorization_code(
        self, client: RegisteredClient, code: str
    ) -> AuthorizationCodeRecord:
        """
        Look up a live code issued to ``client`` without redeeming it.

        Raises:
            AuthError: INVALID_AUTHORIZATION_CODE if unknown or expired,
                CODE_CLIENT_MISMATCH if issued to another client
        """
        record = await self._get_live("code", code, AuthorizationCodeRecord)
        if record is None:
            raise AuthError(AuthErrorKind.INVALID_AUTHORIZATION_CODE)

        if record.client_id != client.client_id:
            logger.warning(
                f"Client {client.client_id} presented a code issued to {record.client_id}"
            )
            raise AuthError(
                AuthErrorKind.CODE_CLIENT_MISMATCH,
                detail=f"owner={record.client_id} presenter={client.client_id}",
            )
        return record

    async def challenge_for_authorization_code(self, client: RegisteredClient, code: str) -> str:
        """Return the PKCE challenge bound to ``code``."""
        record = await self.load_authorization_code(client, code)
        return record.code_challenge

    async def exchange_authorization_code(
        self, client: RegisteredClient, code: str, redirect_uri: Optional[str] = None
    ) -> TokenResponse:
        """
        Redeem an authorization code for an access/refresh token pair.

        Args:
            client: The authenticated client
            code: The authorization code
            redirect_uri: If given, must equal the URI the code was issued for

        Returns:
            TokenResponse carrying the code's granted scopes

        Raises:
            AuthError: INVALID_AUTHORIZATION_CODE (unknown, expired or already
                redeemed), CODE_CLIENT_MISMATCH, or INVALID_GRANT
        """
        record = await self.load_authorization_code(client, code)

        if redirect_uri is not None and redirect_uri != record.redirect_uri:
            raise AuthError(AuthErrorKind.INVALID_GRANT, detail="redirect_uri mismatch")

        # Only one concurrent redemption can take the code
        if await self.storage.take(self._key("code", code)) is None:
            raise AuthError(AuthErrorKind.INVALID_AUTHORIZATION_CODE, detail="lost redemption race")

        tokens = await self._mint_tokens(
            client.client_id, record.scopes, record.resource, family_id=str(uuid.uuid4())
        )
        logger.info(f"Authorization code redeemed by client {client.client_id}")
        return tokens

    # ------------------------------------------------------------------
    # Refresh token grant
    # ------------------------------------------------------------------

    async def exchange_refresh_token(
        self,
        client: RegisteredClient,
        refresh_token: str,
        requested_scopes: Optional[Iterable[str]] = None,
    ) -> TokenResponse:
        """
        Rotate a refresh token, optionally narrowing scopes.

        Args:
            client: The authenticated client
            refresh_token: The refresh token being redeemed
            requested_scopes: Subset of the original grant to request

        Returns:
            TokenResponse with a new refresh token and access token

        Raises:
            AuthError: INVALID_REFRESH_TOKEN (unknown, expired, rotated or
                replayed), REFRESH_CLIENT_MISMATCH, or INVALID_SCOPE
        """
        token_hash = token_digest(refresh_token)

        family_id = await self.storage.get(f"rotated:{token_hash}")
        if family_id is not None:
            logger.warning(
                f"Refresh token replay detected for client {client.client_id}; "
                f"revoking token family {family_id}"
            )
            await self._revoke_family(family_id)
            raise AuthError(AuthErrorKind.INVALID_REFRESH_TOKEN, detail="replayed")

        record = await self._get_live("refresh", refresh_token, RefreshTokenRecord)
        if record is None:
            raise AuthError(AuthErrorKind.INVALID_REFRESH_TOKEN)

        if record.client_id != client.client_id:
            logger.warning(
                f"Client {client.client_id} attempted to redeem a refresh token issued to "
                f"{record.client_id}"
            )
            raise AuthError(
                AuthErrorKind.REFRESH_CLIENT_MISMATCH,
                detail=f"owner={record.client_id} presenter={client.client_id}",
            )

        scopes = record.scopes
        requested = _unique(requested_scopes or [])
        if requested:
            scopes = [scope for scope in requested if scope in record.scopes]
            if not scopes:
                raise AuthError(
                    AuthErrorKind.INVALID_SCOPE,
                    detail=f"requested {' '.join(requested)} outside grant",
                )

        # Invalidate before minting; a concurrent loser sees None here
        if await self.storage.take(self._key("refresh", refresh_token)) is None:
            raise AuthError(AuthErrorKind.INVALID_REFRESH_TOKEN, detail="lost rotation race")

        await self.storage.set(
            f"rotated:{token_hash}", record.family_id, ttl=self.refresh_token_ttl
        )
        await self.storage.delete(f"access:{record.access_token_hash}")

        tokens = await self._mint_tokens(
            client.client_id, scopes, record.resource, family_id=record.family_id
        )
        logger.info(
            f"Refresh token rotated for client {client.client_id} (scopes: {tokens.scope})"
        )
        return tokens

    # ------------------------------------------------------------------
    # Verification and revocation
    # ------------------------------------------------------------------

    async def verify_access_token(self, token: str) -> AccessToken:
        """
        Verify a locally issued access token.

        Unknown and expired tokens fail identically.

        Raises:
            AuthError: INVALID_ACCESS_TOKEN
        """
        record = await self._get_live("access", token, AccessTokenRecord)
        if record is None:
            raise AuthError(AuthErrorKind.INVALID_ACCESS_TOKEN)

        return AccessToken(
            token=token,
            client_id=record.client_id,
            scopes=list(record.scopes),
            expires_at=int(record.expires_at),
            resource=record.resource,
        )

    async def revoke_token(
        self, client: RegisteredClient, token: str, token_type_hint: Optional[str] = None
    ) -> bool:
        """
        Revoke an access or refresh token owned by ``client`` (RFC 7009).

        Unknown tokens and tokens owned by other clients are ignored.

        Returns:
            True if a token was revoked
        """
        kinds = ["access", "refresh"]
        if token_type_hint == "refresh_token":
            kinds.reverse()

        for kind in kinds:
            model = AccessTokenRecord if kind == "access" else RefreshTokenRecord
            record = await self._get_live(kind, token, model)
            if record is None:
                continue
            if record.client_id != client.client_id:
                logger.warning(
                    f"Client {client.client_id} attempted to revoke a token owned by "
                    f"{record.client_id}"
                )
                return False

            if isinstance(record, RefreshTokenRecord):
                await self._revoke_family(record.family_id)
            await self.storage.delete(self._key(kind, token))
            logger.info(f"Revoked {kind} token for client {client.client_id}")
            return True

        return False

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _mint_tokens(
        self,
        client_id: str,
        scopes: list[str],
        resource: Optional[str],
        family_id: str,
    ) -> TokenResponse:
        now = self._clock()
        access_token = secrets.token_urlsafe(32)
        refresh_token = secrets.token_urlsafe(32)
        access_hash = token_digest(access_token)
        refresh_hash = token_digest(refresh_token)

        await self._put(
            "access",
            access_token,
            AccessTokenRecord(
                client_id=client_id,
                scopes=scopes,
                expires_at=now + self.access_token_ttl,
                resource=resource,
                family_id=family_id,
            ),
        )
        await self._put(
            "refresh",
            refresh_token,
            RefreshTokenRecord(
                client_id=client_id,
                scopes=scopes,
                expires_at=now + self.refresh_token_ttl,
                family_id=family_id,
                access_token_hash=access_hash,
                resource=resource,
            ),
        )
        await self.storage.set(
            f"family:{family_id}",
            TokenFamily(
                refresh_token_hash=refresh_hash, access_token_hash=access_hash
            ).model_dump_json(),
            ttl=self.refresh_token_ttl,
        )

        return TokenResponse(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.access_token_ttl,
            scope=" ".join(scopes),
        )

    async def _revoke_family(self, family_id: str) -> None:
        raw = await self.storage.take(f"family:{family_id}")
        if raw is None:
            return
        family = TokenFamily.model_validate_json(raw)
        await self.storage.delete(f"refresh:{family.refresh_token_hash}")
        await self.storage.delete(f"access:{family.access_token_hash}")
        logger.info(f"Revoked token family {family_id}")

    @staticmethod
    def _key(kind: str, token: str) -> str:
        return f"{kind}:{token_digest(token)}"

    async def _put(self, kind: str, token: str, record: BaseModel) -> None:
        ttl = max(record.expires_at - self._clock(), 0)
        await self.storage.set(self._key(kind, token), record.model_dump_json(), ttl=ttl)

    async def _get_live(self, kind: str, token: str, model: type[Record]) -> Optional[Record]:
        raw = await self.storage.get(self._key(kind, token))
        if raw is None:
            return None
        record = model.model_validate_json(raw)
        if record.expires_at <= self._clock():
            return None
        return record
