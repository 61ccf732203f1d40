"""Integration tests for the temporary credentials route."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from authgate.config import Settings
from authgate.core.credential_cache import CredentialCache
from authgate.core.errors import UpstreamFederationError
from authgate.core.federation import FederatedCredentials
from authgate.core.oidc import TokenVerifier, get_token_verifier
from authgate.dependencies import get_app_settings
from authgate.error_handlers import register_exception_handlers
from authgate.routers.credentials import router
from authgate.services.credential_service import CredentialBroker, get_credential_service
from tests.helpers import CLIENT_ID, MetadataLoaderStub, SigningKey, id_token_claims

ROLE_ARN = "arn:aws:iam::123456789012:role/Reader"
EXPIRATION = datetime.now(UTC) + timedelta(hours=1)


class _FederationStub:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls = 0

    async def assume_role_with_web_identity(self, **kwargs: object) -> FederatedCredentials:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return FederatedCredentials(
            access_key_id="ASIAEXAMPLE",
            secret_access_key="secret",
            session_token="session",
            expiration=EXPIRATION,
        )


def _build_app(
    settings: Settings, signing_key: SigningKey, federation: _FederationStub
) -> FastAPI:
    verifier = TokenVerifier(
        metadata_loader=MetadataLoaderStub(signing_key),  # type: ignore[arg-type]
        client_id=CLIENT_ID,
    )
    broker = CredentialBroker(
        federation_client=federation,  # type: ignore[arg-type]
        cache=CredentialCache(),
        fallback_role=ROLE_ARN,
    )
    app = FastAPI()
    register_exception_handlers(app, environment="development")
    app.include_router(router)
    app.dependency_overrides[get_token_verifier] = lambda: verifier
    app.dependency_overrides[get_credential_service] = lambda: broker
    app.dependency_overrides[get_app_settings] = lambda: settings
    return app


def _client(app: FastAPI) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver")


@pytest.mark.asyncio
async def test_sts_credentials_from_cookie(settings: Settings, signing_key: SigningKey) -> None:
    """A verified cookie token yields credentials; a repeat call is served from cache."""
    federation = _FederationStub()
    app = _build_app(settings, signing_key, federation)
    token = signing_key.sign(id_token_claims())

    async with _client(app) as client:
        client.cookies.set("jwt", token)
        first = await client.get("/auth/sts-credentials")
        second = await client.get("/auth/sts-credentials")

    assert first.status_code == 200
    body = first.json()
    assert body["access_key_id"] == "ASIAEXAMPLE"
    assert body["secret_access_key"] == "secret"
    assert body["session_token"] == "session"
    assert datetime.fromisoformat(body["expiration"].replace("Z", "+00:00")) == EXPIRATION
    assert second.json() == body
    assert federation.calls == 1


@pytest.mark.asyncio
async def test_sts_credentials_from_bearer_header(
    settings: Settings, signing_key: SigningKey
) -> None:
    """Bearer tokens are accepted when no cookie is present."""
    app = _build_app(settings, signing_key, _FederationStub())
    token = signing_key.sign(id_token_claims())

    async with _client(app) as client:
        response = await client.get(
            "/auth/sts-credentials", headers={"Authorization": f"Bearer {token}"}
        )

    assert response.status_code == 200


@pytest.mark.asyncio
async def test_sts_credentials_without_token(settings: Settings, signing_key: SigningKey) -> None:
    """Requests without any identity token are rejected as missing input."""
    app = _build_app(settings, signing_key, _FederationStub())

    async with _client(app) as client:
        response = await client.get("/auth/sts-credentials")

    assert response.status_code == 400
    assert response.json()["code"] == "missing_input"


@pytest.mark.asyncio
async def test_sts_credentials_rejects_unverified_token(
    settings: Settings, signing_key: SigningKey
) -> None:
    """Tokens failing verification never reach federation."""
    federation = _FederationStub()
    app = _build_app(settings, signing_key, federation)
    token = signing_key.sign(id_token_claims(aud="another-client"))

    async with _client(app) as client:
        response = await client.get(
            "/auth/sts-credentials", headers={"Authorization": f"Bearer {token}"}
        )

    assert response.status_code == 401
    assert response.json()["code"] == "token_validation_failed"
    assert federation.calls == 0


@pytest.mark.asyncio
async def test_sts_credentials_role_not_permitted(
    settings: Settings, signing_key: SigningKey
) -> None:
    """A preferred role outside the allowed list is forbidden."""
    app = _build_app(settings, signing_key, _FederationStub())
    token = signing_key.sign(
        id_token_claims(
            **{
                "cognito:preferred_role": "arn:aws:iam::123456789012:role/Admin",
                "cognito:roles": [ROLE_ARN],
            }
        )
    )

    async with _client(app) as client:
        response = await client.get(
            "/auth/sts-credentials", headers={"Authorization": f"Bearer {token}"}
        )

    assert response.status_code == 403
    assert response.json()["code"] == "role_not_permitted"


@pytest.mark.asyncio
async def test_sts_credentials_federation_failure(
    settings: Settings, signing_key: SigningKey
) -> None:
    """Federation failures surface as 502 upstream_federation_failure."""
    federation = _FederationStub(error=UpstreamFederationError("Credential exchange failed."))
    app = _build_app(settings, signing_key, federation)
    token = signing_key.sign(id_token_claims())

    async with _client(app) as client:
        response = await client.get(
            "/auth/sts-credentials", headers={"Authorization": f"Bearer {token}"}
        )

    assert response.status_code == 502
    assert response.json() == {
        "detail": "Credential exchange failed.",
        "code": "upstream_federation_failure",
    }


def test_sts_credentials_documents_error_contract(
    settings: Settings, signing_key: SigningKey
) -> None:
    """The OpenAPI schema advertises the error payload for failure statuses."""
    schema = _build_app(settings, signing_key, _FederationStub()).openapi()

    responses = schema["paths"]["/auth/sts-credentials"]["get"]["responses"]
    assert "ErrorResponse" in schema["components"]["schemas"]
    assert {"200", "400", "401", "403", "502", "503"} <= set(responses)
