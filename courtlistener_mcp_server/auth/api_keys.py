"""
Service-role API key validation against a Supabase-style REST store.

Keys are never sent upstream in the clear: the store is queried by the
SHA-256 hex digest of the presented key (column ``key_hash``).
"""

import hashlib
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import quote

import anyio
import httpx

logger = logging.getLogger(__name__)

NEGATIVE_CACHE_TTL = 5.0
NEGATIVE_CACHE_MAX_ENTRIES = 10_000


@dataclass(frozen=True)
class ApiKeyValidation:
    """Outcome of a key lookup. ``reason`` is set when ``valid`` is False."""

    valid: bool
    reason: Optional[str] = None
    user_id: Optional[str] = None


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode()).hexdigest()


def _is_expired(expires_at: Any) -> bool:
    if not expires_at:
        return False
    try:
        expiry = datetime.fromisoformat(str(expires_at))
    except ValueError:
        # An unparseable expiry is treated as expired
        return True
    if expiry.tzinfo is None:
        expiry = expiry.replace(tzinfo=timezone.utc)
    return expiry <= datetime.now(timezone.utc)


class SupabaseApiKeyStore:
    """
    Looks up hashed API keys in a PostgREST table using the service-role key.

    Failed validations are cached for a few seconds so a client hammering the
    endpoint with a bad key does not translate into one upstream query per
    request. Successful validations are never cached, so revocation takes
    effect immediately.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        url: str,
        service_role_key: str,
        table: str = "mcp_api_keys",
        timeout: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._client = http_client
        self.url = url.rstrip("/")
        self._service_role_key = service_role_key
        self.table = table
        self.timeout = timeout
        self._clock = clock

        # key hash -> (result, expires_at)
        self._negative_cache: dict[str, tuple[ApiKeyValidation, float]] = {}

    async def validate(self, api_key: str) -> ApiKeyValidation:
        """
        Validate a presented key.

        Args:
            api_key: The bearer token presented by the client

        Returns:
            ApiKeyValidation; ``reason`` is one of missing_token,
            invalid_api_key, api_key_inactive, api_key_revoked,
            api_key_expired or supabase_unreachable on failure
        """
        api_key = api_key.strip()
        if not api_key:
            return ApiKeyValidation(valid=False, reason="missing_token")

        key_hash = hash_api_key(api_key)
        now = self._clock()
        cached = self._negative_cache.get(key_hash)
        if cached and cached[1] > now:
            return cached[0]

        result = await self._lookup(key_hash)

        if result.valid:
            self._negative_cache.pop(key_hash, None)
        else:
            self._prune_negative_cache()
            self._negative_cache[key_hash] = (result, self._clock() + NEGATIVE_CACHE_TTL)
            logger.info(f"API key rejected: {result.reason}")
        return result

    async def _lookup(self, key_hash: str) -> ApiKeyValidation:
        endpoint = (
            f"{self.url}/rest/v1/{quote(self.table, safe='')}"
            f"?select=user_id,is_active,revoked_at,expires_at"
            f"&key_hash=eq.{quote(key_hash, safe='')}&limit=1"
        )
        headers = {
            "apikey": self._service_role_key,
            "Authorization": f"Bearer {self._service_role_key}",
            "Accept": "application/json",
            "Prefer": "count=none",
        }

        try:
            with anyio.fail_after(self.timeout):
                response = await self._client.get(endpoint, headers=headers)
        except TimeoutError:
            logger.error(f"API key lookup at {self.url} timed out after {self.timeout}s")
            return ApiKeyValidation(valid=False, reason="supabase_unreachable")
        except httpx.HTTPError as e:
            logger.error(f"API key lookup at {self.url} failed: {e}")
            return ApiKeyValidation(valid=False, reason="supabase_unreachable")

        if not response.is_success:
            logger.error(
                f"API key lookup returned HTTP {response.status_code}: "
                f"{response.text[:200] if response.text else 'empty'}"
            )
            return ApiKeyValidation(valid=False, reason="supabase_unreachable")

        try:
            rows = response.json()
        except ValueError:
            logger.error("API key lookup returned a non-JSON body")
            return ApiKeyValidation(valid=False, reason="supabase_unreachable")

        if not isinstance(rows, list) or not rows:
            return ApiKeyValidation(valid=False, reason="invalid_api_key")

        record = rows[0]
        if not isinstance(record, dict) or record.get("is_active") is False:
            return ApiKeyValidation(valid=False, reason="api_key_inactive")
        if record.get("revoked_at"):
            return ApiKeyValidation(valid=False, reason="api_key_revoked")
        if _is_expired(record.get("expires_at")):
            return ApiKeyValidation(valid=False, reason="api_key_expired")

        user_id = record.get("user_id")
        return ApiKeyValidation(valid=True, user_id=str(user_id) if user_id else None)

    def _prune_negative_cache(self) -> None:
        now = self._clock()
        self._negative_cache = {
            key_hash: entry
            for key_hash, entry in self._negative_cache.items()
            if entry[1] > now
        }
        # Entries are inserted in expiry order, so the oldest come first
        overflow = len(self._negative_cache) - NEGATIVE_CACHE_MAX_ENTRIES + 1
        for key_hash in list(self._negative_cache)[: max(overflow, 0)]:
            del self._negative_cache[key_hash]

    def clear_cache(self) -> None:
        self._negative_cache = {}
