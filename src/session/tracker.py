"""Per-process session activity tracker.

One SessionTracker lives for the whole process. It is fed by the API
client's request hook (reads/writes) and by the tool registry (tool
actions), and is flushed to the remote session log by SessionLifecycle.

All mutation happens on the event loop thread, so fields need no lock.
"""

from __future__ import annotations

import random
import string
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import unquote

from src.client.api_client import area_from_path, path_without_query
from src.constants import (
    AUTO_SESSION_PREFIX,
    CLAIMS_KEY_PREFIX,
    SESSION_KEY_PREFIX,
    UNTRACKED_AREAS,
)
from src.infra.timestamps import now_ms

_BASE36 = string.digits + string.ascii_lowercase

# Collection endpoints under /memories/ that are not memory keys
_ENDPOINT_SEGMENTS = frozenset({"bulk", "capacity", "export", "versions"})


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits: list[str] = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_session_id(prefix: str = AUTO_SESSION_PREFIX, *, at_ms: int | None = None) -> str:
    """``<prefix>-<base36 ms timestamp>-<6 random base36 chars>``."""
    stamp = _to_base36(now_ms() if at_ms is None else at_ms)
    rand = "".join(random.choices(_BASE36, k=6))
    return f"{prefix}-{stamp}-{rand}"


def should_track_memory_key(key: str) -> bool:
    """Claims and session-internal keys are bookkeeping, not memory activity."""
    if not key:
        return False
    return not key.startswith((CLAIMS_KEY_PREFIX, SESSION_KEY_PREFIX))


def extract_key_from_path(method: str, path: str) -> tuple[str | None, str | None]:
    """(read_key, written_key) for ``/memories/<key>`` requests."""
    parts = path_without_query(path).split("/")
    # ["", "memories", "<key>"]
    if len(parts) != 3 or parts[0] != "" or parts[1] != "memories" or not parts[2]:
        return None, None
    if parts[2] in _ENDPOINT_SEGMENTS:
        return None, None
    key = unquote(parts[2])
    if not should_track_memory_key(key):
        return None, None

    method = method.upper()
    if method == "GET":
        return key, None
    if method in ("POST", "PATCH", "DELETE"):
        return None, key
    return None, None


def extract_key_from_body(method: str, path: str, body: Any) -> tuple[str | None, str | None]:
    """(read_key, written_key) for requests that carry the key in the body."""
    if not isinstance(body, dict) or method.upper() != "POST":
        return None, None
    clean = path_without_query(path)

    if clean == "/memories":
        key = body.get("key")
        if isinstance(key, str) and should_track_memory_key(key):
            return None, key

    if clean == "/memories/bulk":
        keys = body.get("keys")
        if isinstance(keys, list):
            first = next((k for k in keys if isinstance(k, str)), None)
            if first and should_track_memory_key(first):
                return first, None

    return None, None


@dataclass
class SessionHandoff:
    """Summary of the previous session, surfaced to the next one."""

    previous_session_id: str
    summary: str | None
    branch: str | None
    keys_written: list[str] = field(default_factory=list)
    ended_at: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "previousSessionId": self.previous_session_id,
            "summary": self.summary,
            "branch": self.branch,
            "keysWritten": list(self.keys_written),
            "endedAt": self.ended_at,
        }


@dataclass
class SessionTracker:
    session_id: str = field(default_factory=generate_session_id)
    branch: str | None = None
    read_keys: set[str] = field(default_factory=set)
    written_keys: set[str] = field(default_factory=set)
    tool_actions: set[str] = field(default_factory=set)
    areas: set[str] = field(default_factory=set)
    api_call_count: int = 0
    dirty: bool = False
    closed: bool = False
    started_at: int = field(default_factory=now_ms)
    ended_explicitly: bool = False
    handoff: SessionHandoff | None = None

    def record(self, method: str, path: str, body: Any = None) -> None:
        """Track one API call. Housekeeping endpoints are ignored."""
        area = area_from_path(path)
        if area in UNTRACKED_AREAS:
            return

        self.api_call_count += 1
        if area:
            self.areas.add(area)

        path_read, path_written = extract_key_from_path(method, path)
        body_read, body_written = extract_key_from_body(method, path, body)
        read_key = path_read or body_read
        written_key = path_written or body_written
        if read_key:
            self.read_keys.add(read_key)
        if written_key:
            self.written_keys.add(written_key)
        self.dirty = True

    def record_tool_action(self, tool: str, action: str) -> None:
        self.tool_actions.add(f"{tool}.{action}")
        self.dirty = True

    def build_summary(self, *, at_ms: int | None = None) -> str:
        """Duration and call count, then sorted written/read/tool lines (omitted when empty)."""
        duration_ms = max(0, (now_ms() if at_ms is None else at_ms) - self.started_at)
        minutes = max(1, round(duration_ms / 60_000))
        parts = [f"Auto-captured: {minutes} min, {self.api_call_count} API calls."]

        if self.written_keys:
            parts.append(f"Keys written: {', '.join(sorted(self.written_keys))}.")
        if self.read_keys:
            parts.append(f"Keys read: {', '.join(sorted(self.read_keys))}.")
        if self.tool_actions:
            parts.append(f"Tools: {', '.join(sorted(self.tool_actions))}.")

        return "\n".join(parts)

    def snapshot(self) -> dict[str, Any]:
        """Fields persisted on every flush."""
        return {
            "summary": self.build_summary(),
            "keys_read": sorted(self.read_keys),
            "keys_written": sorted(self.written_keys),
            "tools_used": sorted(self.tool_actions),
        }
