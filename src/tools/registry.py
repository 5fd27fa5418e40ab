from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from src.infra.errors import MemctlError
from src.tools.base import BaseTool, ToolGroup
from src.tools.response import error_payload

if TYPE_CHECKING:
    from src.session.tracker import SessionTracker
    from src.tools.context import ToolContext

logger = structlog.get_logger()


class ToolRegistry:
    """Registry for agent tools. Provides lookup, schema export and dispatch."""

    def __init__(self, tracker: SessionTracker | None = None) -> None:
        self._tools: dict[str, BaseTool] = {}
        self._tracker = tracker

    def register(self, tool: BaseTool) -> None:
        """Register a tool. Raises ValueError if name already registered."""
        if tool.name in self._tools:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool
        logger.info("tool_registered", tool_name=tool.name)

    def get(self, name: str) -> BaseTool | None:
        """Get a tool by name. Returns None if not found."""
        return self._tools.get(name)

    def list_tools(self, group: ToolGroup | None = None) -> list[BaseTool]:
        """Return registered tools, optionally restricted to one group."""
        return [
            tool for tool in self._tools.values()
            if group is None or tool.group == group
        ]

    def get_tools_schema(self, group: ToolGroup | None = None) -> list[dict]:
        """Return tools in function calling format.

        Output format:
        [{"type": "function", "function": {"name": ..., "description": ..., "parameters": ...}}]
        """
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.parameters,
                },
            }
            for tool in self.list_tools(group)
        ]

    async def dispatch(
        self,
        name: str,
        arguments: dict | None = None,
        context: ToolContext | None = None,
    ) -> dict:
        """Run one tool call and return its result dict.

        Unknown tools and MemctlError failures come back as
        ``{"error_code", "message"}``; other exceptions propagate.
        """
        tool = self._tools.get(name)
        if tool is None:
            return error_payload("UNKNOWN_TOOL", f"Unknown tool: {name}")

        arguments = arguments or {}
        if self._tracker is not None:
            self._tracker.record_tool_action(*tool.tracked_action(arguments))

        try:
            return await tool.execute(arguments, context)
        except MemctlError as exc:
            logger.warning(
                "tool_execution_failed",
                tool_name=name,
                error_code=exc.code,
                error=str(exc),
            )
            return error_payload(exc.code, f"{name} failed: {exc}")
