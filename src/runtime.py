"""Runtime wiring: one ApiClient, one SessionTracker, one lifecycle per process."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

from src.client.api_client import ApiClient
from src.config.settings import Settings, get_settings
from src.conflict.resolver import ConflictResolver
from src.infra.logging import bind_session, setup_logging, unbind_session
from src.session.lifecycle import BranchResolver, SessionLifecycle
from src.session.tracker import SessionTracker
from src.tools.builtins import register_builtins
from src.tools.context import ToolContext
from src.tools.registry import ToolRegistry

if TYPE_CHECKING:
    import httpx

logger = structlog.get_logger()


class MemctlRuntime:
    """Composes client, tracker, lifecycle, resolver and tools from Settings.

    Use as ``async with MemctlRuntime() as runtime: ...``; exit performs
    a bounded final flush and closes the HTTP client.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        branch_resolver: BranchResolver | None = None,
        install_exit_hook: bool = True,
    ) -> None:
        self.settings = settings if settings is not None else get_settings()
        self._install_exit_hook = install_exit_hook
        tracking = self.settings.session.enabled

        self.tracker = SessionTracker(branch=self.settings.api.branch)
        self.client = ApiClient.from_settings(
            self.settings,
            on_request=self.tracker.record if tracking else None,
            transport=transport,
        )
        self.resolver = ConflictResolver(self.client, self.settings.conflict)

        self.lifecycle: SessionLifecycle | None = None
        if tracking:
            self.lifecycle = SessionLifecycle(
                self.client,
                self.tracker,
                self.settings.session,
                branch_resolver=branch_resolver,
            )

        self.tools = ToolRegistry(self.tracker if tracking else None)
        register_builtins(
            self.tools, self.client, resolver=self.resolver, lifecycle=self.lifecycle
        )

    async def start(self) -> None:
        setup_logging(
            json_output=self.settings.logging.json_output,
            log_level=self.settings.logging.level,
        )
        bind_session(self.tracker.session_id, self.tracker.branch)
        if self.lifecycle is not None:
            await self.lifecycle.start(install_exit_hook=self._install_exit_hook)
        logger.info("runtime_started", session_tracking=self.lifecycle is not None)

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> dict:
        context = ToolContext(session_id=self.tracker.session_id)
        return await self.tools.dispatch(name, arguments, context)

    async def aclose(self) -> None:
        try:
            if self.lifecycle is not None:
                await self.lifecycle.shutdown()
        finally:
            await self.client.aclose()
        logger.info("runtime_closed")
        unbind_session()

    async def __aenter__(self) -> MemctlRuntime:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
