"""Web-identity federation against AWS STS via boto3."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any

import boto3
import structlog
from botocore import UNSIGNED
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from authgate.config import get_settings
from authgate.core.errors import UpstreamFederationError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class FederatedCredentials:
    """Credentials returned by a successful web-identity exchange."""

    access_key_id: str
    secret_access_key: str
    session_token: str
    expiration: datetime


class FederationClient:
    """Exchange identity tokens for temporary credentials with AssumeRoleWithWebIdentity."""

    def __init__(
        self,
        region: str | None,
        timeout_seconds: float = 10.0,
        sts_client: Any | None = None,
    ) -> None:
        self._timeout_seconds = timeout_seconds
        # AssumeRoleWithWebIdentity is authenticated by the web identity token itself.
        self._sts_client = sts_client or boto3.client(
            "sts",
            region_name=region or None,
            config=Config(
                signature_version=UNSIGNED,
                connect_timeout=timeout_seconds,
                read_timeout=timeout_seconds,
                retries={"max_attempts": 1, "mode": "standard"},
            ),
        )

    async def assume_role_with_web_identity(
        self,
        role_arn: str,
        session_name: str,
        web_identity_token: str,
        duration_seconds: int,
    ) -> FederatedCredentials:
        """Call STS in a worker thread, bounded by the configured deadline."""
        try:
            response = await asyncio.wait_for(
                asyncio.to_thread(
                    self._sts_client.assume_role_with_web_identity,
                    RoleArn=role_arn,
                    RoleSessionName=session_name,
                    WebIdentityToken=web_identity_token,
                    DurationSeconds=duration_seconds,
                ),
                timeout=self._timeout_seconds,
            )
        except TimeoutError as exc:
            logger.warning("federation_timeout", role_arn=role_arn)
            raise UpstreamFederationError("Credential exchange timed out.") from exc
        except ClientError as exc:
            error_code = exc.response.get("Error", {}).get("Code", "unknown")
            logger.warning("federation_rejected", role_arn=role_arn, error_code=error_code)
            raise UpstreamFederationError(f"Credential exchange failed: {error_code}.") from exc
        except BotoCoreError as exc:
            logger.warning("federation_unavailable", role_arn=role_arn, error=type(exc).__name__)
            raise UpstreamFederationError("Credential exchange endpoint unavailable.") from exc

        return self._parse_credentials(response)

    @staticmethod
    def _parse_credentials(response: dict[str, Any]) -> FederatedCredentials:
        """Extract credentials from an STS response."""
        credentials = response.get("Credentials")
        if not isinstance(credentials, dict):
            raise UpstreamFederationError("Credential exchange returned no credentials.")
        try:
            expiration = credentials["Expiration"]
            if isinstance(expiration, str):
                expiration = datetime.fromisoformat(expiration.replace("Z", "+00:00"))
            if expiration.tzinfo is None:
                expiration = expiration.replace(tzinfo=UTC)
            return FederatedCredentials(
                access_key_id=str(credentials["AccessKeyId"]),
                secret_access_key=str(credentials["SecretAccessKey"]),
                session_token=str(credentials["SessionToken"]),
                expiration=expiration,
            )
        except (KeyError, AttributeError, ValueError) as exc:
            raise UpstreamFederationError(
                "Credential exchange returned malformed credentials."
            ) from exc


@lru_cache
def get_federation_client() -> FederationClient:
    """Build and cache the federation client from settings."""
    settings = get_settings()
    return FederationClient(
        region=settings.federation.region or settings.provider.region,
        timeout_seconds=settings.federation.timeout_seconds,
    )
