"""In-memory HTTP response cache with TTL, stale window and ETag retention.

Two independent validity checks run against one row:
- data expiry: past ``expiry`` the row is no longer served as a live hit;
  until ``expiry + stale_window`` it is still served, flagged stale.
- etag retention: the etag stays readable via get_etag() until the row is
  explicitly invalidated or cleared, so conditional revalidation keeps
  working long after the data stopped being servable.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any

from src.constants import DEFAULT_CACHE_TTL_S, DEFAULT_STALE_WINDOW_S


@dataclass
class CacheEntry:
    data: Any
    etag: str | None
    expiry: float


@dataclass(frozen=True)
class CacheHit:
    """A servable cache row. ``stale`` is True inside the grace window."""

    data: Any
    etag: str | None = None
    stale: bool = False


class ResponseCache:
    """Response cache keyed by normalized request identity ("GET:/path?query")."""

    def __init__(
        self,
        default_ttl: float = DEFAULT_CACHE_TTL_S,
        stale_window: float = DEFAULT_STALE_WINDOW_S,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store: dict[str, CacheEntry] = {}
        self._default_ttl = default_ttl
        self._stale_window = stale_window
        self._clock = clock

    def get(self, key: str) -> CacheHit | None:
        """Return a servable hit, or None if absent or past the stale window.

        An expired row is kept internally for get_etag().
        """
        entry = self._store.get(key)
        if entry is None:
            return None
        now = self._clock()
        if now <= entry.expiry:
            return CacheHit(data=entry.data, etag=entry.etag)
        if now <= entry.expiry + self._stale_window:
            return CacheHit(data=entry.data, etag=entry.etag, stale=True)
        return None

    def get_entry(self, key: str) -> CacheEntry | None:
        """Raw row regardless of age."""
        return self._store.get(key)

    def get_etag(self, key: str) -> str | None:
        """Stored etag even for an expired row. Exempt from expiry checks."""
        entry = self._store.get(key)
        return entry.etag if entry else None

    def is_within_grace(self, key: str) -> bool:
        """True if the row exists and has not passed expiry + stale window."""
        entry = self._store.get(key)
        if entry is None:
            return False
        return self._clock() <= entry.expiry + self._stale_window

    def set(
        self,
        key: str,
        data: Any,
        etag: str | None = None,
        ttl: float | None = None,
    ) -> None:
        self._store[key] = CacheEntry(
            data=data,
            etag=etag,
            expiry=self._clock() + (self._default_ttl if ttl is None else ttl),
        )

    def touch(self, key: str, ttl: float | None = None) -> None:
        """Extend expiry of an existing row (e.g. after a 304). No-op if absent."""
        entry = self._store.get(key)
        if entry is not None:
            entry.expiry = self._clock() + (self._default_ttl if ttl is None else ttl)

    def invalidate(self, key: str) -> None:
        self._store.pop(key, None)

    def invalidate_prefix(self, prefix: str) -> None:
        for key in [k for k in self._store if k.startswith(prefix)]:
            del self._store[key]

    def clear(self) -> None:
        self._store.clear()

    def keys(self) -> Iterator[str]:
        return iter(list(self._store))

    def __contains__(self, key: object) -> bool:
        return key in self._store

    def __len__(self) -> int:
        return len(self._store)
