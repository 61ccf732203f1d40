"""OpenID Connect protocol operations via authlib."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

import httpx
import structlog
from authlib.common.errors import AuthlibBaseError
from authlib.integrations.httpx_client import AsyncOAuth2Client
from authlib.jose import JoseError, JsonWebKey, KeySet, jwt

from authgate.config import get_settings
from authgate.core.claims import (
    DefaultRoleFunc,
    Principal,
    load_default_role_func,
    normalize_claims,
)
from authgate.core.errors import (
    CodeExchangeError,
    MissingInputError,
    TokenValidationError,
    UpstreamProviderError,
)

logger = structlog.get_logger(__name__)

DISCOVERY_PATH = "/.well-known/openid-configuration"


@dataclass(frozen=True)
class ProviderMetadata:
    """Discovery document fields and signing keys of the identity provider."""

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    jwks_uri: str
    key_set: KeySet


class ProviderMetadataLoader:
    """Fetch provider discovery metadata once and reuse it for the process lifetime."""

    def __init__(
        self,
        issuer: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._issuer = issuer.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._metadata: ProviderMetadata | None = None
        self._lock = asyncio.Lock()

    @property
    def issuer(self) -> str:
        return self._issuer

    async def get(self) -> ProviderMetadata:
        """Return cached metadata, performing discovery on first use."""
        if self._metadata is not None:
            return self._metadata

        async with self._lock:
            if self._metadata is not None:
                return self._metadata
            self._metadata = await self._discover()
            logger.info("oidc_provider_initialized", issuer=self._issuer)
            return self._metadata

    async def _discover(self) -> ProviderMetadata:
        """Load the discovery document and JWKS from the provider."""
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            document = await self._get_json(client, f"{self._issuer}{DISCOVERY_PATH}")
            try:
                issuer = str(document["issuer"]).rstrip("/")
                authorization_endpoint = str(document["authorization_endpoint"])
                token_endpoint = str(document["token_endpoint"])
                jwks_uri = str(document["jwks_uri"])
            except KeyError as exc:
                raise UpstreamProviderError(
                    f"OIDC discovery document is missing {exc.args[0]!r}."
                ) from exc
            if issuer != self._issuer:
                raise UpstreamProviderError("OIDC discovery issuer does not match configuration.")
            jwks = await self._get_json(client, jwks_uri)

        try:
            key_set = JsonWebKey.import_key_set(jwks)
        except (JoseError, ValueError, TypeError, KeyError) as exc:
            raise UpstreamProviderError("OIDC provider published an invalid key set.") from exc
        return ProviderMetadata(
            issuer=issuer,
            authorization_endpoint=authorization_endpoint,
            token_endpoint=token_endpoint,
            jwks_uri=jwks_uri,
            key_set=key_set,
        )

    async def _get_json(self, client: httpx.AsyncClient, url: str) -> dict[str, Any]:
        """GET a JSON object and normalize upstream failures."""
        try:
            response = await client.get(url)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as exc:
            logger.warning("oidc_provider_request_failed", url=url, error=type(exc).__name__)
            raise UpstreamProviderError("OIDC provider unavailable.") from exc
        except ValueError as exc:
            raise UpstreamProviderError("OIDC provider returned invalid JSON.") from exc
        if not isinstance(payload, dict):
            raise UpstreamProviderError("OIDC provider returned invalid JSON object.")
        return payload


class TokenVerifier:
    """Verify identity tokens against provider keys and normalize their claims."""

    def __init__(
        self,
        metadata_loader: ProviderMetadataLoader,
        client_id: str,
        role_claim: str = "custom:role",
        default_role: DefaultRoleFunc | None = None,
        fallback_role: str = "user",
    ) -> None:
        self._metadata_loader = metadata_loader
        self._client_id = client_id
        self._role_claim = role_claim
        self._default_role = default_role
        self._fallback_role = fallback_role

    async def verify(self, token: str) -> Principal:
        """Verify signature, issuer, audience, and expiry, then build a principal."""
        if not token or not token.strip():
            raise MissingInputError("Identity token is required.")

        metadata = await self._metadata_loader.get()
        claims_options = {
            "iss": {"essential": True, "value": self._metadata_loader.issuer},
            "aud": {"essential": True, "value": self._client_id},
            "exp": {"essential": True},
            "sub": {"essential": True},
        }
        try:
            claims = jwt.decode(token, metadata.key_set, claims_options=claims_options)
            claims.validate()
        except (JoseError, ValueError) as exc:
            logger.warning(
                "id_token_rejected",
                error=type(exc).__name__,
                reason=getattr(exc, "error", "invalid_token"),
            )
            raise TokenValidationError("Invalid identity token.") from exc

        return normalize_claims(
            dict(claims),
            raw_token=token,
            role_claim=self._role_claim,
            default_role=self._default_role,
            fallback_role=self._fallback_role,
        )


class OIDCClient:
    """Authlib-backed authorization-code client for the identity provider."""

    def __init__(
        self,
        metadata_loader: ProviderMetadataLoader,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        scopes: list[str],
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._metadata_loader = metadata_loader
        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_uri = redirect_uri
        self._scopes = scopes
        self._timeout = timeout
        self._transport = transport

    async def create_authorization_url(self, state: str, **extra_params: str) -> str:
        """Build the provider authorization URL for the code grant."""
        metadata = await self._metadata_loader.get()
        client = self._build_client()
        try:
            authorization_url, _ = client.create_authorization_url(
                metadata.authorization_endpoint,
                state=state,
                access_type="offline",
                **extra_params,
            )
        finally:
            await client.aclose()
        return authorization_url

    async def exchange_code(self, code: str) -> dict[str, Any]:
        """Exchange an authorization code for the provider token response."""
        metadata = await self._metadata_loader.get()
        client = self._build_client()
        try:
            return dict(
                await client.fetch_token(
                    metadata.token_endpoint,
                    grant_type="authorization_code",
                    code=code,
                    redirect_uri=self._redirect_uri,
                )
            )
        except AuthlibBaseError as exc:
            raise CodeExchangeError("Authorization code was rejected.") from exc
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code < 500:
                raise CodeExchangeError("Authorization code was rejected.") from exc
            raise UpstreamProviderError("OAuth token exchange failed.") from exc
        except httpx.HTTPError as exc:
            raise UpstreamProviderError("OAuth token exchange failed.") from exc
        except ValueError as exc:
            raise UpstreamProviderError("OAuth token endpoint returned invalid JSON.") from exc
        finally:
            await client.aclose()

    def _build_client(self) -> AsyncOAuth2Client:
        """Build authlib OAuth2 client for provider endpoints."""
        client = AsyncOAuth2Client(
            client_id=self._client_id,
            client_secret=self._client_secret,
            scope=" ".join(self._scopes),
            redirect_uri=self._redirect_uri,
            token_endpoint_auth_method="client_secret_basic",
            timeout=self._timeout,
            transport=self._transport,
        )
        client.register_compliance_hook("access_token_response", _raise_for_server_error)
        return client


def _raise_for_server_error(response: httpx.Response) -> httpx.Response:
    """Surface provider 5xx token responses as HTTP errors instead of token payloads."""
    if response.status_code >= 500:
        response.raise_for_status()
    return response


@lru_cache
def get_metadata_loader() -> ProviderMetadataLoader:
    """Build and cache the provider metadata loader from settings."""
    settings = get_settings()
    return ProviderMetadataLoader(
        issuer=settings.provider.issuer,
        timeout=settings.provider.http_timeout_seconds,
    )


@lru_cache
def get_token_verifier() -> TokenVerifier:
    """Build and cache the identity token verifier from settings."""
    settings = get_settings()
    return TokenVerifier(
        metadata_loader=get_metadata_loader(),
        client_id=settings.provider.client_id,
        role_claim=settings.identity.role_claim,
        default_role=load_default_role_func(settings.identity.default_role_callable),
        fallback_role=settings.identity.fallback_role,
    )


@lru_cache
def get_oidc_client() -> OIDCClient:
    """Build and cache the authorization-code client from settings."""
    settings = get_settings()
    return OIDCClient(
        metadata_loader=get_metadata_loader(),
        client_id=settings.provider.client_id,
        client_secret=settings.provider.client_secret.get_secret_value(),
        redirect_uri=str(settings.provider.redirect_uri),
        scopes=settings.provider.scopes,
        timeout=settings.provider.http_timeout_seconds,
    )
