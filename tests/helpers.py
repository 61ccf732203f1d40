"""Test helpers: signing keys, provider metadata, tokens, and clocks."""

from __future__ import annotations

import base64
import time
from dataclasses import dataclass
from typing import Any

from authlib.jose import JsonWebKey
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jose import jwt as jose_jwt

from authgate.core.oidc import ProviderMetadata

ISSUER = "https://cognito-idp.us-east-1.amazonaws.com/us-east-1_TestPool"
CLIENT_ID = "client-123"


def _base64url_uint(value: int) -> str:
    """Encode an integer to base64url without padding."""
    value_bytes = value.to_bytes((value.bit_length() + 7) // 8, "big")
    return base64.urlsafe_b64encode(value_bytes).rstrip(b"=").decode("ascii")


@dataclass(frozen=True)
class SigningKey:
    """RSA keypair with its PEM private key and public JWK."""

    kid: str
    private_pem: str
    public_jwk: dict[str, str]

    def sign(self, claims: dict[str, Any], kid: str | None = None) -> str:
        """Sign claims as an RS256 JWT."""
        return jose_jwt.encode(
            claims, self.private_pem, algorithm="RS256", headers={"kid": kid or self.kid}
        )


def generate_signing_key(kid: str = "kid-1") -> SigningKey:
    """Create an ephemeral RSA signing key."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")
    numbers = private_key.public_key().public_numbers()
    public_jwk = {
        "kty": "RSA",
        "use": "sig",
        "alg": "RS256",
        "kid": kid,
        "n": _base64url_uint(numbers.n),
        "e": _base64url_uint(numbers.e),
    }
    return SigningKey(kid=kid, private_pem=private_pem, public_jwk=public_jwk)


def id_token_claims(**overrides: Any) -> dict[str, Any]:
    """Build a Cognito-shaped ID token claim set."""
    now = int(time.time())
    claims: dict[str, Any] = {
        "sub": "sub-123",
        "iss": ISSUER,
        "aud": CLIENT_ID,
        "iat": now,
        "exp": now + 3600,
        "token_use": "id",
        "email": "jane.doe@example.com",
        "given_name": "Jane",
        "family_name": "Doe",
        "picture": "https://cdn.example.com/jane.png",
        "cognito:username": "jdoe",
    }
    claims.update(overrides)
    return {key: value for key, value in claims.items() if value is not None}


def unsigned_token(claims: dict[str, Any]) -> str:
    """Build a JWT-shaped token whose signature nobody checks."""
    return jose_jwt.encode(claims, "test-secret", algorithm="HS256")


class FakeClock:
    """Controllable wall clock."""

    def __init__(self, current: float = 1_700_000_000.0) -> None:
        self.current = current

    def now(self) -> float:
        """Return current synthetic time."""
        return self.current


class MetadataLoaderStub:
    """Metadata loader returning fixed provider metadata."""

    def __init__(self, signing_key: SigningKey, issuer: str = ISSUER) -> None:
        self.issuer = issuer
        self.calls = 0
        self._metadata = ProviderMetadata(
            issuer=issuer,
            authorization_endpoint=f"{issuer}/oauth2/authorize",
            token_endpoint=f"{issuer}/oauth2/token",
            jwks_uri=f"{issuer}/.well-known/jwks.json",
            key_set=JsonWebKey.import_key_set({"keys": [signing_key.public_jwk]}),
        )

    async def get(self) -> ProviderMetadata:
        """Return provider metadata."""
        self.calls += 1
        return self._metadata
