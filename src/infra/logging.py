"""structlog setup for the client runtime.

Output goes to stderr: stdout may carry a stdio tool transport.
Session identity is bound through contextvars so every event emitted while
a runtime is active carries ``session_id``.
"""

from __future__ import annotations

import logging
import sys

import structlog

_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR"}


def setup_logging(*, json_output: bool = True, log_level: str = "INFO") -> None:
    """Configure structlog once at startup.

    Args:
        json_output: JSON lines when True, console rendering otherwise.
        log_level: Minimum level (DEBUG, INFO, WARNING, ERROR).
    """
    level = log_level.upper()
    if level not in _LEVELS:
        raise ValueError(f"Unsupported log level: {log_level}")

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output:
        processors += [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def bind_session(session_id: str, branch: str | None = None) -> None:
    """Attach session identity to all subsequent log events in this context."""
    structlog.contextvars.bind_contextvars(session_id=session_id)
    if branch:
        structlog.contextvars.bind_contextvars(branch=branch)


def unbind_session() -> None:
    structlog.contextvars.unbind_contextvars("session_id", "branch")
