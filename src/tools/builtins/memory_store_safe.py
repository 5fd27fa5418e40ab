"""Memory store_safe tool: optimistic-concurrency write via ConflictResolver."""

from __future__ import annotations

from typing import TYPE_CHECKING

from src.conflict.resolver import ConflictStrategy
from src.infra.timestamps import parse_timestamp_ms
from src.tools.base import BaseTool, ToolGroup
from src.tools.builtins.memory_store import STORE_PROPERTIES, validate_store_args
from src.tools.response import error_payload

if TYPE_CHECKING:
    from src.conflict.resolver import ConflictResolver
    from src.tools.context import ToolContext

_STRATEGIES = [s.value for s in ConflictStrategy]


class MemoryStoreSafeTool(BaseTool):
    """Store a memory only if nobody changed it since the caller last read it.

    Conflicts are returned as a normal result, never raised.
    """

    def __init__(self, resolver: ConflictResolver) -> None:
        self._resolver = resolver

    @property
    def name(self) -> str:
        return "memory_store_safe"

    @property
    def description(self) -> str:
        return (
            "Store a memory with conflict detection. Pass the timestamp at which "
            "you last read the key; choose how to resolve a concurrent change."
        )

    @property
    def group(self) -> ToolGroup:
        return ToolGroup.memory

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                **STORE_PROPERTIES,
                "ifUnmodifiedSince": {
                    "type": ["integer", "string"],
                    "description": "When you last read the key (ms epoch or ISO-8601).",
                },
                "onConflict": {
                    "type": "string",
                    "enum": _STRATEGIES,
                    "description": "Conflict strategy (default 'reject').",
                },
            },
            "required": ["key", "content", "ifUnmodifiedSince"],
        }

    async def execute(
        self, arguments: dict, context: ToolContext | None = None
    ) -> dict:
        invalid = validate_store_args(arguments)
        if invalid is not None:
            return invalid

        since = parse_timestamp_ms(arguments.get("ifUnmodifiedSince"))
        if since is None:
            return error_payload(
                "INVALID_ARGS",
                "ifUnmodifiedSince must be a millisecond timestamp or ISO-8601 string.",
            )
        on_conflict = arguments.get("onConflict") or ConflictStrategy.reject.value
        if on_conflict not in _STRATEGIES:
            return error_payload(
                "INVALID_ARGS", f"onConflict must be one of {_STRATEGIES}."
            )

        result = await self._resolver.store_safe(
            arguments["key"].strip(),
            arguments["content"],
            since,
            on_conflict,
            metadata=arguments.get("metadata"),
            priority=arguments.get("priority"),
            tags=arguments.get("tags"),
        )
        if result.written:
            return {"ok": True, **result.to_dict(), "message": result.describe()}
        return result.to_dict()
