from __future__ import annotations

from typing import TYPE_CHECKING

from src.tools.builtins.memory_get import MemoryGetTool
from src.tools.builtins.memory_store import MemoryStoreTool
from src.tools.builtins.memory_store_safe import MemoryStoreSafeTool
from src.tools.builtins.session import SessionTool
from src.tools.registry import ToolRegistry

if TYPE_CHECKING:
    from src.client.api_client import ApiClient
    from src.conflict.resolver import ConflictResolver
    from src.session.lifecycle import SessionLifecycle


def register_builtins(
    registry: ToolRegistry,
    client: ApiClient,
    *,
    resolver: ConflictResolver,
    lifecycle: SessionLifecycle | None = None,
) -> None:
    """Register all built-in tools with the registry.

    The session tool is registered only when session tracking is enabled.
    """
    registry.register(MemoryGetTool(client))
    registry.register(MemoryStoreTool(client))
    registry.register(MemoryStoreSafeTool(resolver))

    if lifecycle is not None:
        registry.register(SessionTool(lifecycle, client))
