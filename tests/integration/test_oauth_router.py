"""Integration tests for OAuth router behavior."""

from __future__ import annotations

from typing import Any
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from authgate.config import ProviderSettings, Settings
from authgate.core.claims import Principal
from authgate.core.errors import CodeExchangeError, UpstreamProviderError
from authgate.core.state import StateCodec, derive_state_key
from authgate.dependencies import get_app_settings
from authgate.error_handlers import register_exception_handlers
from authgate.routers.oauth import router, token_max_age
from authgate.services.flow_service import FlowOrchestrator, get_flow_service
from tests.helpers import FakeClock, id_token_claims, unsigned_token

AUTHORIZE_URL = "https://idp.example.com/oauth2/authorize"


class _OIDCClientStub:
    """Stub authorization-code client for router-level integration tests."""

    def __init__(self, exchange_results: list[Any] | None = None) -> None:
        self.exchange_results = list(exchange_results or [])
        self.exchanged_codes: list[str] = []

    async def create_authorization_url(self, state: str, **extra_params: str) -> str:
        query = "&".join([f"state={state}"] + [f"{k}={v}" for k, v in extra_params.items()])
        return f"{AUTHORIZE_URL}?{query}"

    async def exchange_code(self, code: str) -> dict[str, Any]:
        self.exchanged_codes.append(code)
        result = self.exchange_results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


class _VerifierStub:
    async def verify(self, token: str) -> Principal:
        return Principal(
            subject_id="sub-123",
            email="jane.doe@example.com",
            given_name="Jane",
            family_name="Doe",
            picture_url="",
            username="jdoe",
            role="user",
            raw_token=token,
        )


def _build_app(settings: Settings, oidc_client: _OIDCClientStub) -> FastAPI:
    clock = FakeClock()
    flow_service = FlowOrchestrator(
        state_codec=StateCodec(key=derive_state_key("router-tests"), now=clock.now),
        oidc_client=oidc_client,  # type: ignore[arg-type]
        token_verifier=_VerifierStub(),  # type: ignore[arg-type]
        default_redirect=settings.app.default_redirect_url,
    )
    app = FastAPI()
    register_exception_handlers(app, environment="development")
    app.include_router(router)
    app.dependency_overrides[get_flow_service] = lambda: flow_service
    app.dependency_overrides[get_app_settings] = lambda: settings
    return app


def _client(app: FastAPI) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver")


def _state_from(location: str) -> str:
    return parse_qs(urlparse(location).query)["state"][0]


@pytest.mark.asyncio
async def test_login_redirects_to_provider(settings: Settings) -> None:
    """Login endpoint redirects the browser to the provider with a sealed state."""
    app = _build_app(settings, _OIDCClientStub())

    async with _client(app) as client:
        response = await client.get(
            "/auth/oauth/login", params={"redirect_url": "https://app.example.com/reports"}
        )

    assert response.status_code == 302
    assert response.headers["location"].startswith(AUTHORIZE_URL)
    assert _state_from(response.headers["location"])


@pytest.mark.asyncio
async def test_callback_sets_identity_cookie_and_redirects(settings: Settings) -> None:
    """A successful callback stores the identity token cookie and follows the state redirect."""
    id_token = unsigned_token(id_token_claims())
    oidc_client = _OIDCClientStub(exchange_results=[{"id_token": id_token}])
    app = _build_app(settings, oidc_client)

    async with _client(app) as client:
        login = await client.get(
            "/auth/oauth/login", params={"redirect_url": "https://app.example.com/reports"}
        )
        response = await client.get(
            "/auth/oauth/callback",
            params={"code": "auth-code", "state": _state_from(login.headers["location"])},
        )

    assert response.status_code == 302
    assert response.headers["location"] == "https://app.example.com/reports"
    cookie_header = response.headers["set-cookie"]
    assert cookie_header.startswith(f"jwt={id_token}")
    assert "HttpOnly" in cookie_header
    assert "Secure" in cookie_header
    assert "samesite=none" in cookie_header.lower()
    assert "Path=/" in cookie_header
    assert oidc_client.exchanged_codes == ["auth-code"]


@pytest.mark.asyncio
async def test_callback_with_invalid_state_redirects_to_retry(settings: Settings) -> None:
    """A forged state restarts login with an incremented retry counter."""
    oidc_client = _OIDCClientStub()
    app = _build_app(settings, oidc_client)

    async with _client(app) as client:
        response = await client.get(
            "/auth/oauth/callback", params={"code": "auth-code", "state": "forged"}
        )

    assert response.status_code == 302
    location = response.headers["location"]
    assert location.startswith(AUTHORIZE_URL)
    assert parse_qs(urlparse(location).query)["oauth_retry"] == ["1"]
    assert "set-cookie" not in response.headers
    assert oidc_client.exchanged_codes == []


@pytest.mark.asyncio
async def test_callback_with_exhausted_retries_returns_error(settings: Settings) -> None:
    """Once the retry budget is spent the callback fails with retries_exhausted."""
    app = _build_app(settings, _OIDCClientStub())

    async with _client(app) as client:
        response = await client.get(
            "/auth/oauth/callback",
            params={"code": "auth-code", "state": "forged", "oauth_retry": "3"},
        )

    assert response.status_code == 400
    assert response.json()["code"] == "retries_exhausted"


@pytest.mark.asyncio
async def test_callback_counts_retries_from_provider_round_trip(settings: Settings) -> None:
    """Callbacks carrying only code and state still end after the retry budget."""
    failures = [CodeExchangeError("invalid_grant") for _ in range(4)]
    app = _build_app(settings, _OIDCClientStub(exchange_results=failures))

    async with _client(app) as client:
        location = (await client.get("/auth/oauth/login")).headers["location"]
        for _ in range(3):
            response = await client.get(
                "/auth/oauth/callback",
                params={"code": "stale", "state": _state_from(location)},
            )
            assert response.status_code == 302
            location = response.headers["location"]
        final = await client.get(
            "/auth/oauth/callback",
            params={"code": "stale", "state": _state_from(location)},
        )

    assert final.status_code == 400
    assert final.json()["code"] == "retries_exhausted"


@pytest.mark.asyncio
async def test_callback_exchange_rejection_retries(settings: Settings) -> None:
    """Rejected authorization codes trigger a retry redirect."""
    oidc_client = _OIDCClientStub(exchange_results=[CodeExchangeError("invalid_grant")])
    app = _build_app(settings, oidc_client)

    async with _client(app) as client:
        login = await client.get("/auth/oauth/login")
        response = await client.get(
            "/auth/oauth/callback",
            params={"code": "stale", "state": _state_from(login.headers["location"])},
        )

    assert response.status_code == 302
    assert "oauth_retry=1" in response.headers["location"]


@pytest.mark.asyncio
async def test_callback_upstream_failure_returns_503(settings: Settings) -> None:
    """Provider outages surface as upstream_provider_failure without retrying."""
    oidc_client = _OIDCClientStub(exchange_results=[UpstreamProviderError("down")])
    app = _build_app(settings, oidc_client)

    async with _client(app) as client:
        login = await client.get("/auth/oauth/login")
        response = await client.get(
            "/auth/oauth/callback",
            params={"code": "auth-code", "state": _state_from(login.headers["location"])},
        )

    assert response.status_code == 503
    assert response.json() == {"detail": "down", "code": "upstream_provider_failure"}


@pytest.mark.asyncio
async def test_callback_without_code_returns_missing_input(settings: Settings) -> None:
    """Callbacks lacking an authorization code are client errors."""
    app = _build_app(settings, _OIDCClientStub())

    async with _client(app) as client:
        response = await client.get("/auth/oauth/callback", params={"state": "anything"})

    assert response.status_code == 400
    assert response.json()["code"] == "missing_input"


@pytest.mark.asyncio
async def test_logout_clears_cookie_and_redirects_to_frontend(settings: Settings) -> None:
    """Without a hosted logout domain the browser returns to the frontend."""
    app = _build_app(settings, _OIDCClientStub())

    async with _client(app) as client:
        response = await client.get("/auth/oauth/logout")

    assert response.status_code == 302
    assert response.headers["location"] == "https://app.example.com/"
    assert 'jwt=""' in response.headers["set-cookie"]
    assert "Max-Age=0" in response.headers["set-cookie"]


@pytest.mark.asyncio
async def test_logout_ends_provider_session_when_domain_configured(settings: Settings) -> None:
    """Configured hosted domains receive the logout redirect."""
    provider = ProviderSettings(
        **{
            **settings.provider.model_dump(mode="json"),
            "client_secret": "client-secret",
            "domain": "https://login.example.com",
        }
    )
    settings = settings.model_copy(update={"provider": provider})
    app = _build_app(settings, _OIDCClientStub())

    async with _client(app) as client:
        response = await client.get(
            "/auth/oauth/logout", params={"redirect_url": "https://app.example.com/bye"}
        )

    location = urlparse(response.headers["location"])
    assert f"{location.scheme}://{location.netloc}{location.path}" == (
        "https://login.example.com/logout"
    )
    assert parse_qs(location.query) == {
        "client_id": ["client-123"],
        "logout_uri": ["https://app.example.com/bye"],
    }


def test_token_max_age_follows_exp_claim() -> None:
    """Cookie lifetime tracks the token expiry, with a default for opaque tokens."""
    token = unsigned_token({"sub": "s", "exp": 1_000_600})

    assert token_max_age(token, now=1_000_000) == 600
    assert token_max_age(token, now=2_000_000) == 3600
    assert token_max_age("opaque-token") == 3600
