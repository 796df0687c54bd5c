import json
import time
from typing import Any

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from courtlistener_mcp_server.auth.client_registry import ClientRegistry
from courtlistener_mcp_server.auth.storage import InMemoryStorage
from courtlistener_mcp_server.config import SUPPORTED_SCOPES

ISSUER = "https://idp.example.com"
JWKS_URI = "https://idp.example.com/.well-known/jwks.json"
KEY_ID = "test-key-1"


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float | None = None):
        self.now = start if start is not None else time.time()

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(scope="session")
def rsa_private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def jwks(rsa_private_key) -> dict[str, Any]:
    """Public JWKS document for the test signing key."""
    jwk = json.loads(RSAAlgorithm.to_jwk(rsa_private_key.public_key()))
    jwk.update({"kid": KEY_ID, "alg": "RS256", "use": "sig"})
    return {"keys": [jwk]}


@pytest.fixture
def issue_jwt(rsa_private_key):
    """Factory signing JWTs with the test key."""

    def _issue(kid: str = KEY_ID, expires_in: int = 300, **claims: Any) -> str:
        now = int(time.time())
        payload = {
            "iss": ISSUER,
            "sub": "attorney@example.com",
            "iat": now,
            "exp": now + expires_in,
            **claims,
        }
        return jwt.encode(payload, rsa_private_key, algorithm="RS256", headers={"kid": kid})

    return _issue


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def registry():
    return ClientRegistry(SUPPORTED_SCOPES)


@pytest.fixture
def confidential_client(registry):
    return registry.register_client(
        {
            "redirect_uris": ["https://app.example.com/callback"],
            "token_endpoint_auth_method": "client_secret_post",
            "client_name": "Research Desk",
        }
    )


@pytest.fixture
def public_client(registry):
    return registry.register_client(
        {
            "redirect_uris": ["http://127.0.0.1:8765/callback"],
            "token_endpoint_auth_method": "none",
        }
    )
