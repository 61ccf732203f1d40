"""Exchange verified identity tokens for cached temporary credentials."""

from __future__ import annotations

import re
from collections.abc import Mapping
from functools import lru_cache
from typing import Any

import structlog
from jose import jwt
from jose.exceptions import JWTError

from authgate.config import get_settings
from authgate.core.claims import (
    PREFERRED_ROLE_CLAIM,
    allowed_roles_from_claims,
)
from authgate.core.credential_cache import (
    CachedCredential,
    CredentialCache,
    CredentialStore,
    token_fingerprint,
)
from authgate.core.errors import (
    MissingInputError,
    NoResolvableRoleError,
    RoleNotPermittedError,
)
from authgate.core.federation import FederationClient, get_federation_client

logger = structlog.get_logger(__name__)

DEFAULT_SESSION_NAME_PREFIX = "user-session"
MAX_SESSION_NAME_LENGTH = 64
_SESSION_NAME_DISALLOWED = re.compile(r"[^A-Za-z0-9=.@-]")


def select_role(claims: Mapping[str, Any], fallback_role: str | None) -> str | None:
    """Pick the federation role: preferred claim, first allowed role, configured fallback."""
    preferred = str(claims.get(PREFERRED_ROLE_CLAIM) or "").strip()
    if preferred:
        return preferred
    allowed_roles = allowed_roles_from_claims(claims)
    if allowed_roles:
        return allowed_roles[0]
    return fallback_role or None


def sanitize_session_component(value: str) -> str:
    """Strip characters that are not valid in a federation session name."""
    return _SESSION_NAME_DISALLOWED.sub("", value)


def build_session_name(email: str | None, prefix: str | None) -> str:
    """Build a diagnosable session name from prefix and sanitized email."""
    session_name = prefix or DEFAULT_SESSION_NAME_PREFIX
    sanitized = sanitize_session_component(email or "")
    if sanitized:
        session_name = f"{session_name}-{sanitized}"
    return session_name[:MAX_SESSION_NAME_LENGTH]


class CredentialBroker:
    """Select a role, call the federation endpoint, and cache the result."""

    def __init__(
        self,
        federation_client: FederationClient,
        cache: CredentialStore,
        fallback_role: str | None = None,
        session_name_prefix: str | None = None,
        duration_seconds: int = 3600,
    ) -> None:
        self._federation_client = federation_client
        self._cache = cache
        self._fallback_role = fallback_role
        self._session_name_prefix = session_name_prefix
        self._duration_seconds = duration_seconds

    async def get_credentials(self, raw_id_token: str) -> CachedCredential:
        """Return fresh cached credentials or exchange the token for new ones."""
        if not raw_id_token or not raw_id_token.strip():
            raise MissingInputError("Identity token is required.")

        cache_key = token_fingerprint(raw_id_token)
        cached = await self._cache.get(cache_key)
        if cached is not None:
            logger.debug("credential_cache_hit", cache_key=cache_key)
            return cached

        claims = self._parse_claims(raw_id_token)
        role_arn = select_role(claims, self._fallback_role)
        if role_arn is None:
            raise NoResolvableRoleError("No federation role could be resolved for this token.")

        allowed_roles = allowed_roles_from_claims(claims)
        if allowed_roles is not None and role_arn not in allowed_roles:
            logger.warning("federation_role_not_permitted", role_arn=role_arn, cache_key=cache_key)
            raise RoleNotPermittedError("Requested role is not permitted for this identity.")

        session_name = build_session_name(
            email=str(claims.get("email") or ""),
            prefix=self._session_name_prefix,
        )
        federated = await self._federation_client.assume_role_with_web_identity(
            role_arn=role_arn,
            session_name=session_name,
            web_identity_token=raw_id_token,
            duration_seconds=self._duration_seconds,
        )
        credential = CachedCredential(
            access_key_id=federated.access_key_id,
            secret_access_key=federated.secret_access_key,
            session_token=federated.session_token,
            expiration=federated.expiration,
            cache_key=cache_key,
        )
        await self._cache.set(cache_key, credential, credential.expiration)
        logger.info(
            "credentials_issued",
            role_arn=role_arn,
            session_name=session_name,
            expiration=credential.expiration.isoformat(),
            cache_key=cache_key,
        )
        return credential

    @staticmethod
    def _parse_claims(raw_id_token: str) -> dict[str, Any]:
        """Read token claims without signature checks; the token was verified upstream."""
        try:
            claims = jwt.get_unverified_claims(raw_id_token)
        except JWTError as exc:
            raise MissingInputError("Identity token is malformed.") from exc
        if not isinstance(claims, dict):
            raise MissingInputError("Identity token is malformed.")
        return claims


@lru_cache
def get_credential_cache() -> CredentialCache:
    """Build and cache the process-wide credential cache."""
    settings = get_settings()
    return CredentialCache(
        safety_buffer_seconds=settings.federation.cache_safety_buffer_seconds,
        maxsize=settings.federation.cache_maxsize,
    )


@lru_cache
def get_credential_service() -> CredentialBroker:
    """Build and cache the credential broker."""
    settings = get_settings()
    return CredentialBroker(
        federation_client=get_federation_client(),
        cache=get_credential_cache(),
        fallback_role=settings.federation.role_arn,
        session_name_prefix=settings.federation.session_name_prefix,
        duration_seconds=settings.federation.duration_seconds,
    )
