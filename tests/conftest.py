"""Shared fixtures for unit and integration tests."""

from __future__ import annotations

import pytest

from authgate.config import AppSettings, ProviderSettings, Settings
from tests.helpers import CLIENT_ID, FakeClock, SigningKey, generate_signing_key


@pytest.fixture(scope="session")
def signing_key() -> SigningKey:
    """Session-wide provider signing key."""
    return generate_signing_key()


@pytest.fixture
def clock() -> FakeClock:
    """Fresh fake clock."""
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    """Minimal valid application settings."""
    return Settings(
        app=AppSettings(environment="development", frontend_url="https://app.example.com"),
        provider=ProviderSettings(
            region="us-east-1",
            user_pool_id="us-east-1_TestPool",
            client_id=CLIENT_ID,
            client_secret="client-secret",
            redirect_uri="https://auth.example.com/auth/oauth/callback",
        ),
    )
