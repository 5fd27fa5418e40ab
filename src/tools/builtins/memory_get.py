"""Memory get tool: read one memory through the revalidating client."""

from __future__ import annotations

from typing import TYPE_CHECKING

from src.tools.base import BaseTool, ToolGroup
from src.tools.response import error_payload, with_freshness

if TYPE_CHECKING:
    from src.client.api_client import ApiClient
    from src.tools.context import ToolContext


class MemoryGetTool(BaseTool):
    """Fetch a memory by key. The result carries ``_meta.freshness``."""

    def __init__(self, client: ApiClient) -> None:
        self._client = client

    @property
    def name(self) -> str:
        return "memory_get"

    @property
    def description(self) -> str:
        return (
            "Read a memory by key. The response reports whether it came from "
            "the server (fresh), the local cache (cached) or an expired copy (stale)."
        )

    @property
    def group(self) -> ToolGroup:
        return ToolGroup.memory

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "key": {
                    "type": "string",
                    "description": "The memory key.",
                },
            },
            "required": ["key"],
        }

    async def execute(
        self, arguments: dict, context: ToolContext | None = None
    ) -> dict:
        key = arguments.get("key", "")
        if not isinstance(key, str) or not key.strip():
            return error_payload("INVALID_ARGS", "key must be a non-empty string.")

        result = await self._client.get_memory(key.strip())
        payload = with_freshness(result, self._client.get_last_freshness())
        if isinstance(payload, dict):
            return payload
        return {"text": payload}
