"""Error taxonomy shared by the authentication and credential pipeline."""

from __future__ import annotations


class AuthGateError(Exception):
    """Base class for pipeline failures carrying an API error contract."""

    code = "auth_error"
    status_code = 500
    recoverable = False

    def __init__(
        self,
        detail: str,
        code: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(detail)
        self.detail = detail
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code


class InvalidStateError(AuthGateError):
    """Raised when the OAuth state token is malformed, tampered, or stale."""

    code = "invalid_state"
    status_code = 400
    recoverable = True


class MissingInputError(AuthGateError):
    """Raised when a required code, state, token, or setting is absent."""

    code = "missing_input"
    status_code = 400


class TokenValidationError(AuthGateError):
    """Raised when an identity token fails verification or lacks identity."""

    code = "token_validation_failed"
    status_code = 401
    recoverable = True


class CodeExchangeError(TokenValidationError):
    """Raised when the provider rejects an authorization code."""


class NoResolvableRoleError(AuthGateError):
    """Raised when no federation role can be selected for a token."""

    code = "no_resolvable_role"
    status_code = 403


class RoleNotPermittedError(AuthGateError):
    """Raised when the selected role is outside the token's allowed roles."""

    code = "role_not_permitted"
    status_code = 403


class UpstreamProviderError(AuthGateError):
    """Raised when the identity provider cannot be reached or misbehaves."""

    code = "upstream_provider_failure"
    status_code = 503


class UpstreamFederationError(AuthGateError):
    """Raised when the federation endpoint fails to issue credentials."""

    code = "upstream_federation_failure"
    status_code = 502


class RetriesExhaustedError(AuthGateError):
    """Raised when the login flow used its whole retry budget."""

    code = "retries_exhausted"
    status_code = 400
