"""Best-effort background operations with bounded retries.

Used for work whose failure must never reach the caller (session flush,
finalize, stale-session sweep) but must stay observable in the logs.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

logger = structlog.get_logger()


async def run_best_effort(
    operation: str,
    func: Callable[[], Awaitable[Any]],
    *,
    attempts: int = 3,
    backoff_s: float = 0.5,
    **log_context: object,
) -> bool:
    """Run ``func`` up to ``attempts`` times. Returns True once it succeeds.

    Backoff doubles after each failed attempt. Never raises except on cancellation.
    """
    delay = backoff_s
    for attempt in range(1, attempts + 1):
        try:
            await func()
            return True
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if attempt >= attempts:
                logger.warning(
                    f"{operation}_failed",
                    attempts=attempt,
                    error=str(exc),
                    error_type=type(exc).__name__,
                    **log_context,
                )
                return False
            logger.debug(
                f"{operation}_retry",
                attempt=attempt,
                error=str(exc),
                **log_context,
            )
            if delay > 0:
                await asyncio.sleep(delay)
                delay *= 2
    return False
