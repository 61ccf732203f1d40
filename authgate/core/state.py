"""Stateless encrypted OAuth state tokens.

A state token carries the post-login redirect target, the login nonce, its
issue time, and the retry attempt that produced it, sealed with AES-256-GCM.
Nothing is stored server-side: the authentication tag makes the token
tamper-evident and the embedded timestamp bounds its lifetime.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import os
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from functools import lru_cache

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from authgate.config import get_settings

logger = structlog.get_logger(__name__)

DEFAULT_STATE_KEY_MATERIAL = "default-oauth-state-key-change-in-production"
IV_SIZE_BYTES = 12


@dataclass(frozen=True)
class StatePayload:
    """Plaintext content sealed inside a state token."""

    issued_at: int
    redirect_target: str
    nonce: str
    attempt: int = 0

    def to_bytes(self) -> bytes:
        """Serialize payload as canonical compact JSON.

        ``attempt`` is only written for retries.
        """
        data = asdict(self)
        if not self.attempt:
            del data["attempt"]
        return json.dumps(data, sort_keys=True, separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_bytes(cls, raw: bytes) -> StatePayload:
        """Parse payload JSON, rejecting missing or mistyped fields."""
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("State payload must be a JSON object.")
        issued_at = data.get("issued_at")
        redirect_target = data.get("redirect_target")
        nonce = data.get("nonce")
        attempt = data.get("attempt", 0)
        if not isinstance(issued_at, int) or isinstance(issued_at, bool):
            raise ValueError("State payload issued_at must be an integer.")
        if not isinstance(redirect_target, str) or not isinstance(nonce, str):
            raise ValueError("State payload fields must be strings.")
        if not isinstance(attempt, int) or isinstance(attempt, bool) or attempt < 0:
            raise ValueError("State payload attempt must be a non-negative integer.")
        return cls(
            issued_at=issued_at,
            redirect_target=redirect_target,
            nonce=nonce,
            attempt=attempt,
        )


def derive_state_key(secret: str | None) -> bytes:
    """Derive the 256-bit AES key from operator-supplied secret material."""
    if secret:
        return hashlib.sha256(secret.encode("utf-8")).digest()
    logger.warning(
        "state_key_default_in_use",
        detail="state.encryption_key is not set; using the built-in development key.",
    )
    return hashlib.sha256(DEFAULT_STATE_KEY_MATERIAL.encode("utf-8")).digest()


def _preview(token: str) -> str:
    """Return a short redacted preview of an opaque token."""
    if len(token) > 8:
        return f"{token[:8]}..."
    return token


class StateCodec:
    """Issue and validate encrypted, time-bounded OAuth state tokens."""

    def __init__(
        self,
        key: bytes,
        max_age_seconds: int = 300,
        max_clock_skew_seconds: int = 60,
        now: Callable[[], float] | None = None,
    ) -> None:
        if len(key) != 32:
            raise ValueError("State key must be 32 bytes.")
        self._aead = AESGCM(key)
        self._max_age_seconds = max_age_seconds
        self._max_clock_skew_seconds = max_clock_skew_seconds
        self._now = now or time.time

    def issue(self, nonce: str, redirect_target: str, attempt: int = 0) -> str:
        """Seal a fresh payload under a random IV and return it URL-safe encoded."""
        payload = StatePayload(
            issued_at=int(self._now()),
            redirect_target=redirect_target,
            nonce=nonce,
            attempt=attempt,
        )
        iv = os.urandom(IV_SIZE_BYTES)
        sealed = self._aead.encrypt(iv, payload.to_bytes(), None)
        token = base64.urlsafe_b64encode(iv + sealed).decode("ascii")
        logger.debug("state_issued", state_preview=_preview(token), attempt=attempt)
        return token

    def _open(self, token: str) -> tuple[StatePayload | None, str, dict[str, object]]:
        """Decode, authenticate, and parse a token without checking its age.

        Returns the payload, or ``None`` with the log event describing why.
        """
        try:
            data = base64.urlsafe_b64decode(token.encode("ascii"))
        except (UnicodeEncodeError, binascii.Error, ValueError):
            return None, "state_decode_failed", {}
        if len(data) <= IV_SIZE_BYTES:
            return None, "state_decode_failed", {"reason": "too_short"}

        iv, sealed = data[:IV_SIZE_BYTES], data[IV_SIZE_BYTES:]
        try:
            plaintext = self._aead.decrypt(iv, sealed, None)
        except InvalidTag:
            return None, "state_decrypt_failed", {}

        try:
            return StatePayload.from_bytes(plaintext), "", {}
        except ValueError:
            return None, "state_payload_invalid", {}

    def validate(self, token: str) -> tuple[str, bool]:
        """Return the sealed redirect target and whether the token is acceptable.

        Every rejection yields ``("", False)``; the reason only reaches logs.
        """
        preview = _preview(token)
        payload, event, fields = self._open(token)
        if payload is None:
            logger.warning(event, state_preview=preview, **fields)
            return "", False

        now = int(self._now())
        age_seconds = now - payload.issued_at
        if age_seconds > self._max_age_seconds:
            logger.warning("state_expired", state_preview=preview, age_seconds=age_seconds)
            return "", False
        if payload.issued_at > now + self._max_clock_skew_seconds:
            logger.warning("state_from_future", state_preview=preview, age_seconds=age_seconds)
            return "", False

        logger.info("state_validated", state_preview=preview, age_seconds=age_seconds)
        return payload.redirect_target, True

    def sealed_attempt(self, token: str) -> int:
        """Return the retry attempt sealed in an authentic token, expired or not.

        Tokens that fail authentication carry no attempt and yield 0.
        """
        payload, _, _ = self._open(token)
        if payload is None:
            return 0
        return payload.attempt


@lru_cache
def get_state_codec() -> StateCodec:
    """Build and cache the state codec from settings."""
    settings = get_settings()
    secret = settings.state.encryption_key
    return StateCodec(
        key=derive_state_key(secret.get_secret_value() if secret is not None else None),
        max_age_seconds=settings.state.max_age_seconds,
        max_clock_skew_seconds=settings.state.max_clock_skew_seconds,
    )
