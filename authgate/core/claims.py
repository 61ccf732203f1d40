"""Normalized principal built from verified identity token claims."""

from __future__ import annotations

import importlib
import json
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

from authgate.core.errors import TokenValidationError

DefaultRoleFunc = Callable[[Mapping[str, Any]], str]

USERNAME_CLAIMS = ("cognito:username", "username", "preferred_username")
USER_ROLE_CLAIM = "custom:userRole"
PREFERRED_ROLE_CLAIM = "cognito:preferred_role"
ALLOWED_ROLES_CLAIM = "cognito:roles"
TENANT_CLAIM = "custom:tenantId"
SERVICE_PROVIDER_CLAIM = "custom:serviceProviderId"
IDENTITIES_CLAIM = "identities"
UNKNOWN_PROVIDER = "Unknown"
SOCIAL_PROVIDER_TYPES = frozenset({"Google", "Facebook", "LoginWithAmazon", "SignInWithApple"})


@dataclass(frozen=True)
class LinkedIdentity:
    """One federated identity linked to the user pool account."""

    provider_name: str
    provider_type: str = ""
    user_id: str = ""
    primary: bool = False
    is_social: bool = False


@dataclass(frozen=True)
class Principal:
    """Verified, normalized identity of an authenticated subject."""

    subject_id: str
    email: str
    given_name: str
    family_name: str
    picture_url: str
    username: str
    role: str
    raw_token: str
    preferred_role: str | None = None
    allowed_roles: tuple[str, ...] | None = None
    tenant_id: str | None = None
    service_provider_id: str | None = None
    provider: str = UNKNOWN_PROVIDER
    is_social: bool = False
    identities: tuple[LinkedIdentity, ...] = ()

    def __repr__(self) -> str:
        return (
            f"Principal(subject_id={self.subject_id!r}, username={self.username!r}, "
            f"role={self.role!r})"
        )

    @property
    def is_google_user(self) -> bool:
        return any(
            "Google" in (identity.provider_name, identity.provider_type)
            for identity in self.identities
        )


def _claim_str(claims: Mapping[str, Any], name: str) -> str:
    """Return a stripped string claim, or empty string when absent."""
    value = claims.get(name)
    if value is None:
        return ""
    return str(value).strip()


def _optional_claim(claims: Mapping[str, Any], name: str) -> str | None:
    value = _claim_str(claims, name)
    return value or None


def _flag(value: Any) -> bool:
    """Read a boolean that providers may send as a JSON bool or a string."""
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return value is True


def identities_from_claims(claims: Mapping[str, Any]) -> tuple[LinkedIdentity, ...]:
    """Parse the linked identities claim, accepting a list or its JSON encoding.

    Malformed entries are skipped; an unreadable claim yields no identities.
    """
    raw = claims.get(IDENTITIES_CLAIM)
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return ()
    if not isinstance(raw, list):
        return ()
    identities = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        provider_type = _claim_str(entry, "providerType")
        identities.append(
            LinkedIdentity(
                provider_name=_claim_str(entry, "providerName"),
                provider_type=provider_type,
                user_id=_claim_str(entry, "userId"),
                primary=_flag(entry.get("primary")),
                is_social=_flag(entry.get("isSocial")) or provider_type in SOCIAL_PROVIDER_TYPES,
            )
        )
    return tuple(identities)


def primary_identity(identities: tuple[LinkedIdentity, ...]) -> LinkedIdentity | None:
    """Return the identity flagged primary, else the first one."""
    for identity in identities:
        if identity.primary:
            return identity
    return identities[0] if identities else None


def allowed_roles_from_claims(claims: Mapping[str, Any]) -> tuple[str, ...] | None:
    """Read the allowed-roles claim; ``None`` means the claim is absent."""
    if ALLOWED_ROLES_CLAIM not in claims:
        return None
    raw = claims[ALLOWED_ROLES_CLAIM]
    if raw is None:
        return ()
    if isinstance(raw, str):
        return (raw,) if raw.strip() else ()
    if isinstance(raw, list | tuple):
        return tuple(str(item).strip() for item in raw if str(item).strip())
    return ()


def resolve_role(
    claims: Mapping[str, Any],
    role_claim: str = "custom:role",
    default_role: DefaultRoleFunc | None = None,
    fallback_role: str = "user",
) -> str:
    """Pick the principal role: explicit claim, then default function, then fallback."""
    role = _claim_str(claims, role_claim) or _claim_str(claims, USER_ROLE_CLAIM)
    if role:
        return role
    if default_role is not None:
        computed = default_role(MappingProxyType(dict(claims)))
        if isinstance(computed, str) and computed.strip():
            return computed.strip()
    return fallback_role


def normalize_claims(
    claims: Mapping[str, Any],
    raw_token: str,
    role_claim: str = "custom:role",
    default_role: DefaultRoleFunc | None = None,
    fallback_role: str = "user",
) -> Principal:
    """Convert verified raw claims into a principal."""
    email = _claim_str(claims, "email")
    if not email:
        raise TokenValidationError("Identity token has no email attribute.")

    username = next(
        (_claim_str(claims, name) for name in USERNAME_CLAIMS if _claim_str(claims, name)),
        email,
    )
    identities = identities_from_claims(claims)
    primary = primary_identity(identities)
    return Principal(
        subject_id=_claim_str(claims, "sub"),
        email=email,
        given_name=_claim_str(claims, "given_name"),
        family_name=_claim_str(claims, "family_name"),
        picture_url=_claim_str(claims, "picture"),
        username=username,
        role=resolve_role(
            claims,
            role_claim=role_claim,
            default_role=default_role,
            fallback_role=fallback_role,
        ),
        raw_token=raw_token,
        preferred_role=_optional_claim(claims, PREFERRED_ROLE_CLAIM),
        allowed_roles=allowed_roles_from_claims(claims),
        tenant_id=_optional_claim(claims, TENANT_CLAIM),
        service_provider_id=_optional_claim(claims, SERVICE_PROVIDER_CLAIM),
        provider=(primary.provider_name if primary else "") or UNKNOWN_PROVIDER,
        is_social=any(identity.is_social for identity in identities),
        identities=identities,
    )


def load_default_role_func(import_path: str | None) -> DefaultRoleFunc | None:
    """Resolve a ``package.module:function`` path into a default-role function."""
    if not import_path:
        return None
    module_name, _, attribute = import_path.partition(":")
    if not module_name or not attribute:
        raise ValueError("identity.default_role_callable must look like 'package.module:function'.")
    function = getattr(importlib.import_module(module_name), attribute)
    if not callable(function):
        raise ValueError(f"{import_path} is not callable.")
    return function
