from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ToolContext:
    """Runtime context injected into tool execution by the registry.

    session_id: the tracker's session (for audit/logging and default session actions).
    """

    session_id: str = ""
