"""Session lifecycle: startup handoff, periodic flush, finalize.

States: active -> closed (terminal). ``tracker.closed`` flips once, from
finalize(); nothing re-opens it.

Startup (background task):
1. register this session's log (with branch, if known)
2. fetch the most recent session logs
3. stale sweep: force-close other open sessions started > stale_after_s ago
4. derive the handoff from the most recent log that is not this session

Flush loop: every flush_interval_s, persist the summary if dirty.
Finalize: on explicit end, shutdown() or the process exit hook. Bounded by
finalize_timeout_s; never blocks exit.

Every remote call here is best-effort (run_best_effort) and never raises
to the caller, except end_session(), which the session tool reports on.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from functools import partial
from typing import TYPE_CHECKING, Any

import structlog

from src.constants import STALE_SESSION_SUMMARY
from src.infra.background import run_best_effort
from src.infra.shutdown import ShutdownHook
from src.infra.timestamps import now_ms, parse_timestamp_ms
from src.session.tracker import SessionHandoff, SessionTracker

if TYPE_CHECKING:
    from src.client.api_client import ApiClient
    from src.config.settings import SessionTrackingSettings

logger = structlog.get_logger()

BranchResolver = Callable[[], Awaitable[str | None]]


def _parse_key_list(raw: Any) -> list[str]:
    """keysWritten arrives JSON-encoded; tolerate lists and malformed values."""
    if raw is None or raw == "":
        return []
    value = raw
    if isinstance(raw, str):
        try:
            value = json.loads(raw)
        except ValueError:
            logger.debug("handoff_keys_malformed", raw=raw[:200])
            return []
    if not isinstance(value, list):
        return []
    return [k for k in value if isinstance(k, str)]


def extract_session_logs(response: Any) -> list[dict[str, Any]]:
    if not isinstance(response, dict):
        return []
    logs = response.get("sessionLogs")
    if not isinstance(logs, list):
        return []
    return [log for log in logs if isinstance(log, dict) and log.get("sessionId")]


def derive_handoff(logs: list[dict[str, Any]], own_session_id: str) -> SessionHandoff | None:
    """Handoff from the first (most recent) log that belongs to another session."""
    for log in logs:
        if log.get("sessionId") == own_session_id:
            continue
        return SessionHandoff(
            previous_session_id=log["sessionId"],
            summary=log.get("summary"),
            branch=log.get("branch"),
            keys_written=_parse_key_list(log.get("keysWritten")),
            ended_at=log.get("endedAt"),
        )
    return None


class SessionLifecycle:
    """Drives one SessionTracker against the session-log API."""

    def __init__(
        self,
        client: ApiClient,
        tracker: SessionTracker,
        settings: SessionTrackingSettings,
        *,
        branch_resolver: BranchResolver | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._client = client
        self.tracker = tracker
        self._settings = settings
        self._branch_resolver = branch_resolver
        self._clock = clock
        self._startup_task: asyncio.Task[None] | None = None
        self._flush_task: asyncio.Task[None] | None = None
        self._hook: ShutdownHook | None = None
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    async def start(self, *, install_exit_hook: bool = True) -> None:
        """Kick off the startup task and the flush loop. Returns immediately."""
        if self._started:
            raise RuntimeError("Session lifecycle already started")
        self._started = True
        logger.info("session_started", session_id=self.tracker.session_id)

        self._startup_task = asyncio.ensure_future(self._initialize())
        self._flush_task = asyncio.ensure_future(self._flush_loop())
        if install_exit_hook:
            self._hook = ShutdownHook(self._finalize_at_exit)
            self._hook.install()

    async def wait_ready(self) -> None:
        """Wait for startup (handoff derivation + stale sweep) to settle."""
        if self._startup_task is not None:
            await asyncio.shield(self._startup_task)

    # ── Startup ───────────────────────────────────────────────────

    async def _initialize(self) -> None:
        tracker = self.tracker
        try:
            tracker.branch = await self._resolve_branch()
            await self._client.upsert_session_log(tracker.session_id, branch=tracker.branch)

            logs = await self.fetch_recent_logs()
            await self.close_stale_sessions(logs)
            tracker.handoff = derive_handoff(logs, tracker.session_id)
            if tracker.handoff is not None:
                logger.info(
                    "session_handoff_loaded",
                    session_id=tracker.session_id,
                    previous_session_id=tracker.handoff.previous_session_id,
                )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(
                "session_start_failed",
                session_id=tracker.session_id,
                error=str(exc),
            )
            # Make sure the session log exists even if the rest failed
            await self._best_effort(
                "session_register",
                partial(self._client.upsert_session_log, tracker.session_id),
            )

    async def _resolve_branch(self) -> str | None:
        if self._branch_resolver is None:
            return self.tracker.branch
        try:
            return await self._branch_resolver()
        except Exception:
            logger.debug("session_branch_unresolved", exc_info=True)
            return self.tracker.branch

    async def fetch_recent_logs(self) -> list[dict[str, Any]]:
        try:
            response = await self._client.get_session_logs(self._settings.recent_limit)
        except Exception as exc:
            logger.info("session_logs_fetch_failed", error=str(exc))
            return []
        return extract_session_logs(response)

    async def close_stale_sessions(self, logs: list[dict[str, Any]]) -> int:
        """Force-close other sessions left open past the stale threshold.

        Each close is independent; a failure is logged and the sweep continues.
        Returns the number of sessions closed.
        """
        now = self._clock()
        threshold_ms = int(self._settings.stale_after_s * 1000)
        closed = 0
        for log in logs:
            session_id = log["sessionId"]
            if log.get("endedAt") or session_id == self.tracker.session_id:
                continue
            started_at = parse_timestamp_ms(log.get("startedAt"))
            if not started_at or now - started_at <= threshold_ms:
                continue

            ok = await self._best_effort(
                "stale_session_close",
                partial(
                    self._client.upsert_session_log,
                    session_id,
                    summary=log.get("summary") or STALE_SESSION_SUMMARY,
                    ended_at=now,
                ),
                stale_session_id=session_id,
            )
            if ok:
                closed += 1
        if closed:
            logger.info("stale_sessions_closed", count=closed)
        return closed

    # ── Flush ─────────────────────────────────────────────────────

    async def _flush_loop(self) -> None:
        while not self.tracker.closed:
            await asyncio.sleep(self._settings.flush_interval_s)
            await self.flush()

    async def flush(self) -> bool:
        """Persist the current summary if there is unflushed activity."""
        tracker = self.tracker
        if tracker.closed or not tracker.dirty:
            return False

        # Cleared up front so activity recorded during the request re-marks it
        tracker.dirty = False
        ok = await self._best_effort(
            "session_flush",
            partial(
                self._client.upsert_session_log,
                tracker.session_id,
                **tracker.snapshot(),
            ),
        )
        if not ok:
            tracker.dirty = True
        return ok

    # ── End / finalize ────────────────────────────────────────────

    async def end_session(self, summary: str | None = None) -> str:
        """Explicit end requested by the agent. Errors propagate to the caller."""
        tracker = self.tracker
        if tracker.closed:
            return tracker.session_id
        text = summary.strip() if summary and summary.strip() else tracker.build_summary()
        await self._client.upsert_session_log(
            tracker.session_id,
            summary=text,
            keys_read=sorted(tracker.read_keys),
            keys_written=sorted(tracker.written_keys),
            tools_used=sorted(tracker.tool_actions),
            ended_at=self._clock(),
        )
        tracker.ended_explicitly = True
        await self.finalize()
        return tracker.session_id

    async def finalize(self) -> None:
        """Close the tracker exactly once and persist the final summary."""
        tracker = self.tracker
        if tracker.closed:
            return
        tracker.closed = True
        self._stop_tasks()

        if tracker.ended_explicitly:
            logger.info("session_closed", session_id=tracker.session_id, explicit=True)
            return

        await self._best_effort(
            "session_finalize",
            partial(
                self._client.upsert_session_log,
                tracker.session_id,
                ended_at=self._clock(),
                **tracker.snapshot(),
            ),
        )
        logger.info(
            "session_closed",
            session_id=tracker.session_id,
            explicit=False,
            api_calls=tracker.api_call_count,
        )

    async def shutdown(self) -> None:
        """Stop scheduling flushes and attempt one bounded final flush."""
        self._stop_tasks()
        try:
            await asyncio.wait_for(self.finalize(), timeout=self._settings.finalize_timeout_s)
        except TimeoutError:
            logger.warning(
                "session_finalize_timeout",
                session_id=self.tracker.session_id,
                timeout_s=self._settings.finalize_timeout_s,
            )
        if self._hook is not None:
            self._hook.uninstall()
            self._hook = None

    def _finalize_at_exit(self) -> None:
        """atexit path: the original loop is gone, so finalize on a fresh one."""
        if self.tracker.closed:
            return
        try:
            asyncio.run(
                asyncio.wait_for(self.finalize(), timeout=self._settings.finalize_timeout_s)
            )
        except TimeoutError:
            logger.warning("session_finalize_timeout", session_id=self.tracker.session_id)
        except RuntimeError:
            logger.warning(
                "session_finalize_skipped",
                session_id=self.tracker.session_id,
                exc_info=True,
            )

    def _stop_tasks(self) -> None:
        current = asyncio.current_task() if _loop_running() else None
        for task in (self._flush_task, self._startup_task):
            if task is not None and task is not current and not task.done():
                try:
                    task.cancel()
                except RuntimeError:
                    # Owning loop already closed (exit hook path)
                    pass
        self._flush_task = None

    async def _best_effort(
        self,
        operation: str,
        func: Callable[[], Awaitable[Any]],
        **log_context: object,
    ) -> bool:
        return await run_best_effort(
            operation,
            func,
            attempts=self._settings.max_attempts,
            backoff_s=self._settings.retry_backoff_s,
            session_id=self.tracker.session_id,
            **log_context,
        )


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True
