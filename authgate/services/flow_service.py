"""Authorization-code flow orchestration with bounded retry."""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from enum import StrEnum
from functools import lru_cache

import structlog

from authgate.config import get_settings
from authgate.core.claims import Principal
from authgate.core.errors import (
    AuthGateError,
    InvalidStateError,
    MissingInputError,
    RetriesExhaustedError,
    TokenValidationError,
)
from authgate.core.oidc import OIDCClient, TokenVerifier, get_oidc_client, get_token_verifier
from authgate.core.state import StateCodec, get_state_codec

logger = structlog.get_logger(__name__)


class FlowState(StrEnum):
    """Lifecycle of one login attempt."""

    START = "start"
    AWAITING_CALLBACK = "awaiting_callback"
    RETRYING = "retrying"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class CallbackOutcome:
    """Result of handling a provider callback.

    ``SUCCESS`` carries the principal, raw identity token, and redirect target.
    ``RETRYING`` carries a fresh authorization URL and the attempt it encodes.
    Terminal failures are raised as ``RetriesExhaustedError`` instead.
    """

    state: FlowState
    principal: Principal | None = None
    raw_id_token: str = ""
    redirect_target: str = ""
    retry_url: str | None = None
    attempt: int = 0


class FlowOrchestrator:
    """Drive login from authorization URL to verified principal."""

    def __init__(
        self,
        state_codec: StateCodec,
        oidc_client: OIDCClient,
        token_verifier: TokenVerifier,
        default_redirect: str,
        max_retry_attempts: int = 3,
        retry_query_param: str = "oauth_retry",
    ) -> None:
        self._state_codec = state_codec
        self._oidc_client = oidc_client
        self._token_verifier = token_verifier
        self._default_redirect = default_redirect
        self._max_retry_attempts = max_retry_attempts
        self._retry_query_param = retry_query_param

    @property
    def retry_query_param(self) -> str:
        return self._retry_query_param

    @staticmethod
    def generate_nonce() -> str:
        """Generate a 256-bit URL-safe login nonce."""
        return secrets.token_urlsafe(32)

    async def build_authorization_url(
        self,
        requested_redirect: str | None,
        attempt: int = 0,
    ) -> str:
        """Issue a state token and build the provider authorization URL."""
        redirect_target = requested_redirect or ""
        state = self._state_codec.issue(self.generate_nonce(), redirect_target, attempt=attempt)
        extra_params: dict[str, str] = {}
        if attempt > 0:
            extra_params[self._retry_query_param] = str(attempt)
        authorization_url = await self._oidc_client.create_authorization_url(
            state=state, **extra_params
        )
        logger.info(
            "oauth_authorization_url_issued",
            flow_state=FlowState.AWAITING_CALLBACK,
            attempt=attempt,
        )
        return authorization_url

    async def handle_callback(
        self,
        code: str,
        state: str,
        attempt: int = 0,
        requested_redirect: str | None = None,
    ) -> CallbackOutcome:
        """Validate state, exchange the code, and verify the identity token.

        Recoverable failures become a retry outcome until the retry budget is
        spent; configuration and upstream failures propagate unchanged. The
        attempt is the larger of the query value and the one sealed in state.
        """
        if not code or not code.strip():
            raise MissingInputError("Missing authorization code.")
        if not state or not state.strip():
            raise MissingInputError("Missing state parameter.")

        attempt = max(attempt, self._state_codec.sealed_attempt(state), 0)
        recovered_redirect = ""
        try:
            redirect_target, is_valid = self._state_codec.validate(state)
            if not is_valid:
                raise InvalidStateError("Invalid or expired state parameter.")
            recovered_redirect = redirect_target

            token_response = await self._oidc_client.exchange_code(code)
            raw_id_token = str(token_response.get("id_token") or "")
            if not raw_id_token:
                raise TokenValidationError("No identity token in token response.")

            principal = await self._token_verifier.verify(raw_id_token)
        except AuthGateError as exc:
            if not exc.recoverable:
                raise
            logger.warning(
                "oauth_callback_failed",
                reason=exc.code,
                detail=exc.detail,
                attempt=attempt,
            )
            return await self._retry(
                attempt=attempt,
                redirect_target=requested_redirect or recovered_redirect,
            )

        logger.info("oauth_callback_succeeded", flow_state=FlowState.SUCCESS, attempt=attempt)
        return CallbackOutcome(
            state=FlowState.SUCCESS,
            principal=principal,
            raw_id_token=raw_id_token,
            redirect_target=redirect_target or self._default_redirect,
            attempt=attempt,
        )

    async def _retry(self, attempt: int, redirect_target: str) -> CallbackOutcome:
        """Restart the flow with an incremented attempt, or fail when exhausted."""
        if attempt >= self._max_retry_attempts:
            logger.warning(
                "oauth_retries_exhausted",
                flow_state=FlowState.FAILED,
                max_retry_attempts=self._max_retry_attempts,
            )
            raise RetriesExhaustedError("Authentication failed: too many retry attempts.")

        next_attempt = attempt + 1
        retry_url = await self.build_authorization_url(
            redirect_target or self._default_redirect,
            attempt=next_attempt,
        )
        logger.info(
            "oauth_retry_issued",
            flow_state=FlowState.RETRYING,
            attempt=next_attempt,
            max_retry_attempts=self._max_retry_attempts,
        )
        return CallbackOutcome(state=FlowState.RETRYING, retry_url=retry_url, attempt=next_attempt)


@lru_cache
def get_flow_service() -> FlowOrchestrator:
    """Build and cache the login flow orchestrator."""
    settings = get_settings()
    return FlowOrchestrator(
        state_codec=get_state_codec(),
        oidc_client=get_oidc_client(),
        token_verifier=get_token_verifier(),
        default_redirect=settings.app.default_redirect_url,
        max_retry_attempts=settings.flow.max_retry_attempts,
        retry_query_param=settings.flow.retry_query_param,
    )
