"""Optimistic-concurrency safe write (``store_safe``).

Single-client only: the caller passes the timestamp at which it last read
the key; a remote ``updatedAt`` strictly after it is a conflict. No lock is
taken, so two clients can still race between the read and the write here.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog

from src.constants import APPEND_SEPARATOR, CONFLICT_PREVIEW_CHARS
from src.infra.timestamps import parse_timestamp_ms, to_iso

if TYPE_CHECKING:
    from src.client.api_client import ApiClient
    from src.config.settings import ConflictSettings

logger = structlog.get_logger()


class ConflictStrategy(StrEnum):
    reject = "reject"
    last_write_wins = "last_write_wins"
    append = "append"
    return_both = "return_both"


@dataclass(frozen=True)
class SafeStoreResult:
    """Outcome of one safe write.

    ``written`` is False for reject / return_both conflicts. The content
    fields are only set on conflict: truncated for reject, full for
    return_both.
    """

    key: str
    conflict: bool
    written: bool
    strategy: ConflictStrategy
    local_content: str | None = None
    remote_content: str | None = None
    remote_updated_at: Any = None
    local_timestamp: int | None = None

    def to_dict(self) -> dict[str, Any]:
        if not self.conflict:
            return {"key": self.key, "conflict": False, "written": True}

        local_ts = to_iso(self.local_timestamp) if self.local_timestamp is not None else None
        if self.strategy == ConflictStrategy.reject:
            return {
                "conflict": True,
                "key": self.key,
                "strategy": self.strategy.value,
                "message": "Memory was modified since you last read it.",
                "yourVersion": self.local_content,
                "currentVersion": self.remote_content,
                "currentUpdatedAt": self.remote_updated_at,
                "yourTimestamp": local_ts,
                "suggestion": (
                    "Read the current version, merge changes, then store again. "
                    "Or use onConflict: 'last_write_wins' or 'append'."
                ),
            }
        if self.strategy == ConflictStrategy.return_both:
            return {
                "conflict": True,
                "key": self.key,
                "strategy": self.strategy.value,
                "message": "Memory was modified. Both versions returned for manual merge.",
                "remoteVersion": self.remote_content,
                "localVersion": self.local_content,
                "remoteUpdatedAt": self.remote_updated_at,
                "localTimestamp": local_ts,
                "hint": (
                    "Merge the content yourself, then call memory_store "
                    "(without _safe) to save the merged result."
                ),
            }
        return {
            "conflict": True,
            "key": self.key,
            "strategy": self.strategy.value,
            "written": True,
        }

    def describe(self) -> str:
        """One-line status for write outcomes."""
        if not self.conflict:
            return f"Memory stored with key: {self.key} (no conflict)"
        if self.strategy == ConflictStrategy.last_write_wins:
            return (
                f"Memory stored with key: {self.key} "
                "(conflict resolved: last_write_wins, overwrote remote changes)"
            )
        if self.strategy == ConflictStrategy.append:
            return (
                f"Memory stored with key: {self.key} "
                "(conflict resolved: append, merged both versions)"
            )
        return f"Conflict on key: {self.key} ({self.strategy.value}); nothing written"


def _current_record(response: Any) -> dict[str, Any] | None:
    if not isinstance(response, dict):
        return None
    memory = response.get("memory")
    return memory if isinstance(memory, dict) else None


class ConflictResolver:
    """Implements store_safe on top of ApiClient."""

    def __init__(self, client: ApiClient, settings: ConflictSettings | None = None) -> None:
        self._client = client
        self._preview_chars = settings.preview_chars if settings else CONFLICT_PREVIEW_CHARS
        self._separator = settings.append_separator if settings else APPEND_SEPARATOR

    async def store_safe(
        self,
        key: str,
        content: str,
        if_unmodified_since: int,
        on_conflict: ConflictStrategy | str = ConflictStrategy.reject,
        *,
        metadata: dict[str, Any] | None = None,
        priority: int | None = None,
        tags: list[str] | None = None,
    ) -> SafeStoreResult:
        """Write ``content`` unless the remote copy changed after ``if_unmodified_since`` (ms).

        Raises ValueError for an unknown strategy. Write errors propagate.
        """
        strategy = ConflictStrategy(on_conflict)

        try:
            current = _current_record(await self._client.get_memory(key, revalidate=True))
        except Exception as exc:
            # Missing or unreachable: nothing to conflict with
            logger.debug("store_safe_no_current", key=key, error=str(exc))
            current = None

        updated_at = parse_timestamp_ms(current.get("updatedAt")) if current else None
        if updated_at is None or updated_at <= if_unmodified_since:
            await self._write(key, content, metadata, priority, tags)
            return SafeStoreResult(key=key, conflict=False, written=True, strategy=strategy)

        remote_content = current.get("content")
        if not isinstance(remote_content, str):
            remote_content = ""
        remote_updated_at = current.get("updatedAt")
        logger.info(
            "store_safe_conflict",
            key=key,
            strategy=strategy.value,
            remote_updated_at=updated_at,
            if_unmodified_since=if_unmodified_since,
        )

        if strategy == ConflictStrategy.last_write_wins:
            await self._write(key, content, metadata, priority, tags)
            return SafeStoreResult(key=key, conflict=True, written=True, strategy=strategy)

        if strategy == ConflictStrategy.append:
            merged = f"{remote_content}{self._separator}{content}"
            await self._write(key, merged, metadata, priority, tags)
            return SafeStoreResult(key=key, conflict=True, written=True, strategy=strategy)

        if strategy == ConflictStrategy.return_both:
            return SafeStoreResult(
                key=key,
                conflict=True,
                written=False,
                strategy=strategy,
                local_content=content,
                remote_content=remote_content,
                remote_updated_at=remote_updated_at,
                local_timestamp=if_unmodified_since,
            )

        return SafeStoreResult(
            key=key,
            conflict=True,
            written=False,
            strategy=strategy,
            local_content=content[: self._preview_chars],
            remote_content=remote_content[: self._preview_chars],
            remote_updated_at=remote_updated_at,
            local_timestamp=if_unmodified_since,
        )

    async def _write(
        self,
        key: str,
        content: str,
        metadata: dict[str, Any] | None,
        priority: int | None,
        tags: list[str] | None,
    ) -> None:
        await self._client.store_memory(key, content, metadata, priority=priority, tags=tags)
