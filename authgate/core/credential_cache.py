"""In-memory cache of temporary federation credentials."""

from __future__ import annotations

import asyncio
import hashlib
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Protocol

from cachetools import TLRUCache


@dataclass(frozen=True)
class CachedCredential:
    """Temporary cloud credentials bound to one identity token."""

    access_key_id: str
    secret_access_key: str
    session_token: str
    expiration: datetime
    cache_key: str

    def __repr__(self) -> str:
        return (
            f"CachedCredential(access_key_id={self.access_key_id!r}, "
            f"expiration={self.expiration.isoformat()!r}, cache_key={self.cache_key!r})"
        )


def token_fingerprint(raw_token: str) -> str:
    """Return a fixed-length cache key for a raw identity token."""
    return hashlib.sha256(raw_token.encode("utf-8")).digest()[:16].hex()


def _utcnow() -> datetime:
    return datetime.now(UTC)


class CredentialStore(Protocol):
    """Storage contract so a shared external cache can replace the local one."""

    async def get(self, key: str) -> CachedCredential | None: ...

    async def set(self, key: str, value: CachedCredential, expiration: datetime) -> None: ...


class CredentialCache:
    """Process-local credential cache bounded by size and expiration.

    Entries live in a ``TLRUCache`` whose per-entry deadline is the credential
    expiration minus the safety buffer, so stale entries are purged on every
    write and never counted. Writes are serialized by an asyncio lock. Two
    concurrent misses for the same key both write and the last one wins.
    """

    def __init__(
        self,
        safety_buffer_seconds: int = 300,
        maxsize: int = 10000,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._safety_buffer = timedelta(seconds=safety_buffer_seconds)
        self._now = now or _utcnow
        self._entries: TLRUCache[str, tuple[CachedCredential, datetime]] = TLRUCache(
            maxsize=maxsize,
            ttu=self._usable_until,
            timer=self._now,
        )
        self._lock = asyncio.Lock()

    def _usable_until(
        self, _key: str, entry: tuple[CachedCredential, datetime], _now: datetime
    ) -> datetime:
        return entry[1] - self._safety_buffer

    async def get(self, key: str) -> CachedCredential | None:
        """Return a cached credential that outlives the safety buffer."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        return entry[0]

    async def set(self, key: str, value: CachedCredential, expiration: datetime) -> None:
        """Store or overwrite the credential cached under key."""
        async with self._lock:
            self._entries[key] = (value, expiration)

    async def clear(self) -> None:
        """Drop every cached credential."""
        async with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        self._entries.expire()
        return len(self._entries)
