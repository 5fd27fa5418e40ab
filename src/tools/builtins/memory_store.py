"""Memory store tool: unconditional write with capacity guidance on failure."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from src.infra.errors import ApiError
from src.tools.base import BaseTool, ToolGroup
from src.tools.response import (
    error_from_exception,
    error_payload,
    format_capacity_guidance,
    has_memory_full_error,
)

if TYPE_CHECKING:
    from src.client.api_client import ApiClient
    from src.tools.context import ToolContext

logger = structlog.get_logger()


def validate_store_args(arguments: dict) -> dict | None:
    """Shared checks for the store tools. Returns an error payload or None."""
    key = arguments.get("key", "")
    if not isinstance(key, str) or not key.strip():
        return error_payload("INVALID_ARGS", "key must be a non-empty string.")
    content = arguments.get("content")
    if not isinstance(content, str):
        return error_payload("INVALID_ARGS", "content must be a string.")
    priority = arguments.get("priority")
    if priority is not None and (not isinstance(priority, int) or not 0 <= priority <= 100):
        return error_payload("INVALID_ARGS", "priority must be an integer 0-100.")
    tags = arguments.get("tags")
    if tags is not None and (
        not isinstance(tags, list) or not all(isinstance(t, str) for t in tags)
    ):
        return error_payload("INVALID_ARGS", "tags must be a list of strings.")
    metadata = arguments.get("metadata")
    if metadata is not None and not isinstance(metadata, dict):
        return error_payload("INVALID_ARGS", "metadata must be an object.")
    return None


STORE_PROPERTIES: dict = {
    "key": {
        "type": "string",
        "description": "The memory key, e.g. 'agent/context/architecture'.",
    },
    "content": {
        "type": "string",
        "description": "The memory content.",
    },
    "metadata": {
        "type": "object",
        "description": "Optional free-form metadata.",
    },
    "priority": {
        "type": "integer",
        "description": "Priority 0-100 (higher is surfaced first).",
    },
    "tags": {
        "type": "array",
        "items": {"type": "string"},
        "description": "Optional tags.",
    },
}


class MemoryStoreTool(BaseTool):
    """Store (create or overwrite) a memory."""

    def __init__(self, client: ApiClient) -> None:
        self._client = client

    @property
    def name(self) -> str:
        return "memory_store"

    @property
    def description(self) -> str:
        return "Store a memory under a key, overwriting any existing value."

    @property
    def group(self) -> ToolGroup:
        return ToolGroup.memory

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": STORE_PROPERTIES,
            "required": ["key", "content"],
        }

    async def execute(
        self, arguments: dict, context: ToolContext | None = None
    ) -> dict:
        invalid = validate_store_args(arguments)
        if invalid is not None:
            return invalid

        key = arguments["key"].strip()
        try:
            await self._client.store_memory(
                key,
                arguments["content"],
                arguments.get("metadata"),
                priority=arguments.get("priority"),
                tags=arguments.get("tags"),
            )
        except ApiError as exc:
            if not has_memory_full_error(exc):
                raise
            return error_from_exception(
                "Error storing memory", exc, guidance=await self._capacity_guidance()
            )

        return {"ok": True, "key": key, "message": f"Memory stored with key: {key}"}

    async def _capacity_guidance(self) -> str:
        try:
            capacity = await self._client.get_memory_capacity()
        except Exception as exc:
            logger.info("memory_capacity_unavailable", error=str(exc))
            return "Delete or archive unused memories before storing new ones."
        if not isinstance(capacity, dict):
            return "Delete or archive unused memories before storing new ones."
        return format_capacity_guidance(capacity)
