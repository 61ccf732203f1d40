"""Structured audit events for login and credential issuance."""

from __future__ import annotations

import ipaddress
import re
from functools import lru_cache
from typing import Any

import structlog
from fastapi import Request

logger = structlog.get_logger(__name__)

_REDACTED = "***REDACTED***"
_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _coerce_ip(value: str | None) -> str | None:
    """Normalize IP address strings to canonical values."""
    if not value:
        return None
    try:
        return str(ipaddress.ip_address(value.strip()))
    except ValueError:
        return None


def extract_client_ip(request: Request) -> str:
    """Extract client IP using forwarding headers when present."""
    forwarded_for = request.headers.get("x-forwarded-for", "").strip()
    if forwarded_for:
        parsed = _coerce_ip(forwarded_for.split(",")[0])
        if parsed is not None:
            return parsed
    client = request.client
    return client.host if client else "unknown"


def extract_correlation_id(request: Request) -> str:
    """Return the request correlation ID bound by middleware."""
    return str(
        getattr(
            request.state,
            "correlation_id",
            request.headers.get("x-correlation-id", "unknown"),
        )
    )


def mask_identifier(value: str | None) -> str | None:
    """Mask email-like identifiers before they reach audit logs."""
    if value is None:
        return None
    if _EMAIL_PATTERN.match(value.strip()):
        return _REDACTED
    return value


class AuditService:
    """Emit audit events for authentication outcomes."""

    def __init__(self, audit_logger: Any | None = None) -> None:
        self._logger = audit_logger or logger

    def log_login_attempt(
        self,
        request: Request,
        success: bool,
        stage: str,
        error_code: str | None = None,
        subject_id: str | None = None,
        attempt: int = 0,
        provider: str | None = None,
    ) -> None:
        """Record a login start, callback outcome, or retry."""
        emit = self._logger.info if success else self._logger.warning
        emit(
            "login_attempt",
            event_type="login_attempt",
            stage=stage,
            success=success,
            error_code=error_code,
            subject_id=mask_identifier(subject_id),
            attempt=attempt,
            provider=provider,
            ip_address=extract_client_ip(request),
            correlation_id=extract_correlation_id(request),
        )

    def log_credential_issuance(
        self,
        request: Request,
        success: bool,
        error_code: str | None = None,
        subject_id: str | None = None,
        cache_key: str | None = None,
    ) -> None:
        """Record a temporary credential request outcome."""
        emit = self._logger.info if success else self._logger.warning
        emit(
            "credential_issuance",
            event_type="credential_issuance",
            success=success,
            error_code=error_code,
            subject_id=mask_identifier(subject_id),
            cache_key=cache_key,
            ip_address=extract_client_ip(request),
            correlation_id=extract_correlation_id(request),
        )


@lru_cache
def get_audit_service() -> AuditService:
    """Build and cache the audit service."""
    return AuditService()
