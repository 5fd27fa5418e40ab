from __future__ import annotations

from abc import ABC, abstractmethod
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from src.tools.context import ToolContext


class ToolGroup(StrEnum):
    memory = "memory"
    session = "session"


class BaseTool(ABC):
    """Abstract base class for agent tools."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique tool name exposed to the agent."""
        ...

    @property
    @abstractmethod
    def description(self) -> str:
        """Human-readable description of what the tool does."""
        ...

    @property
    @abstractmethod
    def parameters(self) -> dict:
        """JSON Schema describing the tool's input parameters."""
        ...

    @property
    def group(self) -> ToolGroup:
        return ToolGroup.memory

    def tracked_action(self, arguments: dict) -> tuple[str, str]:
        """(tool, action) recorded on the session for this call.

        Default: group plus the name without the group prefix,
        e.g. ``memory_store_safe`` -> ("memory", "store_safe").
        """
        prefix = f"{self.group.value}_"
        return self.group.value, self.name.removeprefix(prefix)

    @abstractmethod
    async def execute(
        self, arguments: dict, context: ToolContext | None = None
    ) -> dict:
        """Execute tool with given arguments and optional runtime context."""
        ...
