"""Session tool: current session info and handoff, explicit end, history."""

from __future__ import annotations

from typing import TYPE_CHECKING

from src.infra.errors import ToolError
from src.session.lifecycle import extract_session_logs
from src.tools.base import BaseTool, ToolGroup
from src.tools.response import error_payload, with_freshness

if TYPE_CHECKING:
    from src.client.api_client import ApiClient
    from src.session.lifecycle import SessionLifecycle
    from src.tools.context import ToolContext

_ACTIONS = ("start", "end", "history")


class SessionTool(BaseTool):
    """Expose the auto-tracked session to the agent.

    - start: wait for startup, return the session id and previous-session handoff
    - end: write the final summary now; the exit hook then skips its write
    - history: recent session logs, with freshness
    """

    def __init__(self, lifecycle: SessionLifecycle, client: ApiClient) -> None:
        self._lifecycle = lifecycle
        self._client = client

    @property
    def name(self) -> str:
        return "session"

    @property
    def description(self) -> str:
        return (
            "Session tracking. 'start' returns the current session and what the "
            "previous session did; 'end' closes it with a summary; 'history' lists "
            "recent sessions."
        )

    @property
    def group(self) -> ToolGroup:
        return ToolGroup.session

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "action": {
                    "type": "string",
                    "enum": list(_ACTIONS),
                },
                "summary": {
                    "type": "string",
                    "description": "Session summary for 'end' (default: auto-captured).",
                },
                "limit": {
                    "type": "integer",
                    "description": "Number of sessions for 'history' (default 10).",
                },
            },
            "required": ["action"],
        }

    def tracked_action(self, arguments: dict) -> tuple[str, str]:
        action = arguments.get("action")
        return self.name, action if isinstance(action, str) and action else "unknown"

    async def execute(
        self, arguments: dict, context: ToolContext | None = None
    ) -> dict:
        action = arguments.get("action")
        if action == "start":
            return await self._start()
        if action == "end":
            return await self._end(arguments.get("summary"))
        if action == "history":
            return await self._history(arguments.get("limit", 10))
        return error_payload("INVALID_ARGS", f"action must be one of {list(_ACTIONS)}.")

    async def _start(self) -> dict:
        if not self._lifecycle.started:
            raise ToolError("Session tracking has not been started", code="SESSION_NOT_STARTED")
        await self._lifecycle.wait_ready()
        tracker = self._lifecycle.tracker
        handoff = tracker.handoff
        return {
            "sessionId": tracker.session_id,
            "branch": tracker.branch,
            "handoff": handoff.to_dict() if handoff is not None else None,
            "message": (
                f"Session {tracker.session_id} active. "
                + (
                    f"Previous session: {handoff.previous_session_id}."
                    if handoff is not None
                    else "No previous session found."
                )
            ),
        }

    async def _end(self, summary: object) -> dict:
        if summary is not None and not isinstance(summary, str):
            return error_payload("INVALID_ARGS", "summary must be a string.")
        if self._lifecycle.tracker.closed:
            return error_payload(
                "SESSION_CLOSED",
                f"Session {self._lifecycle.tracker.session_id} is already closed.",
            )
        session_id = await self._lifecycle.end_session(summary)
        return {"ok": True, "sessionId": session_id, "message": f"Session {session_id} ended."}

    async def _history(self, limit: object) -> dict:
        if not isinstance(limit, int) or limit < 1:
            limit = 10
        response = await self._client.get_session_logs(min(limit, 100))
        return with_freshness(
            {"sessions": extract_session_logs(response)},
            self._client.get_last_freshness(),
        )
