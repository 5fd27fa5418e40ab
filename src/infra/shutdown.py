"""Process exit hook: one owner per process.

Registers an ``atexit`` callback and SIGINT/SIGTERM handlers. A signal is
turned into SystemExit so asyncio unwinds normally and the atexit callback
runs afterwards. Only one hook can be installed at a time; a second
install() is a logged no-op.
"""

from __future__ import annotations

import atexit
import signal
from collections.abc import Callable
from typing import Any

import structlog

logger = structlog.get_logger()

_active_hook: ShutdownHook | None = None

_SIGNALS = ("SIGINT", "SIGTERM")


class ShutdownHook:
    """Runs ``callback`` exactly once at interpreter exit or on SIGINT/SIGTERM."""

    def __init__(self, callback: Callable[[], None]) -> None:
        self._callback = callback
        self._fired = False
        self._installed = False
        self._previous: dict[int, Any] = {}

    @property
    def installed(self) -> bool:
        return self._installed

    def install(self) -> bool:
        """Register handlers. Returns False if another hook already owns the process."""
        global _active_hook
        if _active_hook is not None:
            logger.debug("shutdown_hook_already_registered")
            return False

        atexit.register(self.run)
        for name in _SIGNALS:
            sig = getattr(signal, name, None)
            if sig is None:
                continue
            try:
                self._previous[sig] = signal.signal(sig, self._on_signal)
            except ValueError:
                # Not the main thread; atexit still covers normal exit
                logger.debug("shutdown_signal_skipped", signal=name)

        _active_hook = self
        self._installed = True
        return True

    def uninstall(self) -> None:
        global _active_hook
        if not self._installed:
            return
        atexit.unregister(self.run)
        for sig, previous in self._previous.items():
            try:
                signal.signal(sig, previous)
            except ValueError:
                logger.debug("shutdown_signal_restore_skipped", signal=sig)
        self._previous.clear()
        self._installed = False
        if _active_hook is self:
            _active_hook = None

    def run(self) -> None:
        if self._fired:
            return
        self._fired = True
        try:
            self._callback()
        except Exception:
            logger.exception("shutdown_hook_failed")

    def _on_signal(self, signum: int, _frame: Any) -> None:
        logger.info("shutdown_signal_received", signal=signum)
        raise SystemExit(128 + signum)
