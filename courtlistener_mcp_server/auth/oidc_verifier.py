"""
Bearer JWT verification against an OIDC issuer.

The issuer's signing keys are located through OIDC discovery
(``/.well-known/openid-configuration``) unless an explicit JWKS URL is
configured. Discovered ``jwks_uri`` values and fetched key sets are cached
for ``cache_ttl`` seconds; cache entries are replaced wholesale so readers
never observe a partially updated entry.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Optional

import anyio
import httpx
import jwt

from courtlistener_mcp_server.auth.errors import AuthError, AuthErrorKind
from courtlistener_mcp_server.observability.metrics import record_oidc_discovery

logger = logging.getLogger(__name__)

DISCOVERY_PATH = "/.well-known/openid-configuration"

JwtDecoder = Callable[[str, dict[str, Any], str, Optional[str]], dict[str, Any]]


@dataclass(frozen=True)
class OIDCConfig:
    """Verification parameters for one issuer."""

    issuer: str
    audience: Optional[str] = None
    jwks_url: Optional[str] = None
    required_scope: Optional[str] = None


@dataclass(frozen=True)
class VerificationResult:
    payload: dict[str, Any]
    scopes: list[str] = field(default_factory=list)

    @property
    def subject(self) -> Optional[str]:
        return self.payload.get("sub")


def default_jwt_decoder(
    token: str, jwks: dict[str, Any], issuer: str, audience: Optional[str]
) -> dict[str, Any]:
    """
    Verify signature and registered claims with PyJWT.

    The signing key is selected by the token's ``kid`` header. A token without
    ``kid`` is accepted only when the key set holds exactly one key.

    Raises:
        jwt.InvalidTokenError: On any signature or claim failure
    """
    header = jwt.get_unverified_header(token)
    key_set = jwt.PyJWKSet.from_dict(jwks)

    kid = header.get("kid")
    if kid:
        try:
            signing_key = key_set[kid]
        except KeyError as e:
            raise jwt.InvalidTokenError(f"No signing key for kid {kid}") from e
    elif len(key_set.keys) == 1:
        signing_key = key_set.keys[0]
    else:
        raise jwt.InvalidTokenError("Token has no kid and the key set is ambiguous")

    return jwt.decode(
        token,
        signing_key.key,
        algorithms=[signing_key.algorithm_name],
        issuer=issuer,
        audience=audience,
        options={
            "verify_signature": True,
            "verify_exp": True,
            "verify_nbf": True,
            "verify_iss": True,
            "verify_aud": audience is not None,
            "require": ["exp", "iss"],
        },
    )


def extract_scopes(payload: dict[str, Any]) -> list[str]:
    """
    Granted scopes from a ``scope`` string or an ``scp`` list claim.

    Anything else (missing, wrong type) means no scopes were granted.
    """
    scope = payload.get("scope")
    if isinstance(scope, str):
        return scope.split()

    scp = payload.get("scp")
    if isinstance(scp, list):
        return [entry for entry in scp if isinstance(entry, str)]

    return []


class OIDCTokenVerifier:
    """
    Verifies bearer JWTs issued by an external identity platform.

    Discovery, JWKS retrieval and signature verification are injectable:
    ``http_client`` performs the fetches and ``jwt_decoder`` checks the token.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        jwt_decoder: JwtDecoder = default_jwt_decoder,
        cache_ttl: float = 600,
        timeout: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the verifier.

        Args:
            http_client: Client used for discovery and JWKS requests
            jwt_decoder: Callable verifying a token against a key set
            cache_ttl: Lifetime of cached discovery results and key sets (seconds)
            timeout: Upper bound for one complete verification (seconds)
            clock: Monotonic time source
        """
        self._client = http_client
        self._decode = jwt_decoder
        self.cache_ttl = cache_ttl
        self.timeout = timeout
        self._clock = clock

        # issuer -> (jwks_uri, expires_at)
        self._jwks_uri_cache: dict[str, tuple[str, float]] = {}
        # jwks_uri -> (jwks document, expires_at)
        self._jwks_cache: dict[str, tuple[dict[str, Any], float]] = {}

    async def verify_access_token(self, token: str, config: OIDCConfig) -> VerificationResult:
        """
        Verify a bearer JWT and, if configured, its required scope.

        Args:
            token: The raw JWT
            config: Issuer, audience, JWKS override and required scope

        Returns:
            VerificationResult with the decoded payload and granted scopes

        Raises:
            AuthError: DISCOVERY_FAILED or INVALID_TOKEN when the token cannot
                be verified, INSUFFICIENT_SCOPE when the required scope is absent
        """
        try:
            with anyio.fail_after(self.timeout):
                payload = await self._verify_signature(token, config)
        except TimeoutError as e:
            logger.warning(
                f"Token verification for issuer {config.issuer} timed out after {self.timeout}s"
            )
            raise AuthError(AuthErrorKind.INVALID_TOKEN, detail="verification timeout") from e

        scopes = extract_scopes(payload)
        if config.required_scope and config.required_scope not in scopes:
            logger.info(
                f"Token for sub={payload.get('sub')} lacks required scope "
                f"{config.required_scope} (granted: {scopes})"
            )
            raise AuthError(
                AuthErrorKind.INSUFFICIENT_SCOPE,
                detail=f"missing scope {config.required_scope}",
                scope=config.required_scope,
            )

        return VerificationResult(payload=payload, scopes=scopes)

    async def _verify_signature(self, token: str, config: OIDCConfig) -> dict[str, Any]:
        try:
            kid = jwt.get_unverified_header(token).get("kid")
        except jwt.InvalidTokenError as e:
            raise AuthError(AuthErrorKind.INVALID_TOKEN, detail=f"malformed JWT: {e}") from e

        jwks_uri = config.jwks_url or await self._resolve_jwks_uri(config.issuer)
        jwks = await self._get_jwks(jwks_uri)

        if kid and not _has_kid(jwks, kid):
            # Key rotation at the issuer; refetch once
            logger.info(f"Unknown kid {kid} for {jwks_uri}, refreshing key set")
            jwks = await self._get_jwks(jwks_uri, force=True)

        try:
            return self._decode(token, jwks, config.issuer, config.audience)
        except AuthError:
            raise
        except jwt.ExpiredSignatureError as e:
            logger.info("JWT token has expired")
            raise AuthError(AuthErrorKind.INVALID_TOKEN, detail="expired") from e
        except jwt.InvalidIssuerError as e:
            logger.warning(f"JWT issuer validation failed: {e}")
            raise AuthError(AuthErrorKind.INVALID_TOKEN, detail=str(e)) from e
        except jwt.PyJWTError as e:
            logger.warning(f"JWT validation failed: {e}")
            raise AuthError(AuthErrorKind.INVALID_TOKEN, detail=str(e)) from e
        except Exception as e:
            logger.error(f"Unexpected error during JWT verification: {e}")
            raise AuthError(AuthErrorKind.INVALID_TOKEN, detail=str(e)) from e

    async def _resolve_jwks_uri(self, issuer: str) -> str:
        """Return the issuer's ``jwks_uri``, from cache when fresh."""
        now = self._clock()
        cached = self._jwks_uri_cache.get(issuer)
        if cached and cached[1] > now:
            record_oidc_discovery("cached")
            return cached[0]

        discovery_url = issuer.rstrip("/") + DISCOVERY_PATH
        try:
            response = await self._client.get(
                discovery_url, headers={"Accept": "application/json"}
            )
        except httpx.HTTPError as e:
            record_oidc_discovery("failed")
            logger.error(f"OIDC discovery request for issuer {issuer} failed: {e}")
            raise AuthError(
                AuthErrorKind.DISCOVERY_FAILED,
                detail=f"OIDC discovery failed for issuer {issuer}: {e}",
            ) from e

        if not response.is_success:
            record_oidc_discovery("failed")
            detail = f"OIDC discovery failed ({response.status_code}) for issuer {issuer}"
            logger.error(detail)
            raise AuthError(AuthErrorKind.DISCOVERY_FAILED, detail=detail)

        try:
            document = response.json()
        except ValueError:
            document = None
        jwks_uri = document.get("jwks_uri") if isinstance(document, dict) else None
        if not isinstance(jwks_uri, str) or not jwks_uri:
            record_oidc_discovery("failed")
            detail = f"OIDC discovery for issuer {issuer} is missing jwks_uri"
            logger.error(detail)
            raise AuthError(AuthErrorKind.DISCOVERY_FAILED, detail=detail)

        self._jwks_uri_cache[issuer] = (jwks_uri, now + self.cache_ttl)
        record_oidc_discovery("fetched")
        logger.debug(f"Discovered jwks_uri {jwks_uri} for issuer {issuer}")
        return jwks_uri

    async def _get_jwks(self, jwks_uri: str, force: bool = False) -> dict[str, Any]:
        now = self._clock()
        cached = self._jwks_cache.get(jwks_uri)
        if not force and cached and cached[1] > now:
            return cached[0]

        try:
            response = await self._client.get(jwks_uri, headers={"Accept": "application/json"})
        except httpx.HTTPError as e:
            logger.error(f"JWKS request to {jwks_uri} failed: {e}")
            raise AuthError(
                AuthErrorKind.DISCOVERY_FAILED, detail=f"JWKS fetch failed: {e}"
            ) from e

        if not response.is_success:
            detail = f"JWKS fetch failed ({response.status_code}) for {jwks_uri}"
            logger.error(detail)
            raise AuthError(AuthErrorKind.DISCOVERY_FAILED, detail=detail)

        try:
            jwks = response.json()
        except ValueError as e:
            raise AuthError(
                AuthErrorKind.DISCOVERY_FAILED, detail=f"JWKS at {jwks_uri} is not JSON"
            ) from e
        if not isinstance(jwks, dict) or not isinstance(jwks.get("keys"), list):
            raise AuthError(
                AuthErrorKind.DISCOVERY_FAILED, detail=f"JWKS at {jwks_uri} has no keys"
            )

        self._jwks_cache[jwks_uri] = (jwks, now + self.cache_ttl)
        return jwks

    def clear_cache(self) -> None:
        """Clear discovery and key set caches."""
        self._jwks_uri_cache = {}
        self._jwks_cache = {}
        logger.info("OIDC discovery cache cleared")


def _has_kid(jwks: dict[str, Any], kid: str) -> bool:
    return any(
        isinstance(key, dict) and key.get("kid") == kid for key in jwks.get("keys", [])
    )
