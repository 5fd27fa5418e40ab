"""Custom exception hierarchy for the memctl client.

All application-specific exceptions inherit from MemctlError,
which carries an error code for tool error payload mapping.
"""

from __future__ import annotations


class MemctlError(Exception):
    """Base exception for all memctl client errors."""

    def __init__(self, message: str, *, code: str = "INTERNAL_ERROR") -> None:
        super().__init__(message)
        self.code = code


class ApiError(MemctlError):
    """Non-success HTTP response from the memory API."""

    def __init__(self, status: int, message: str, details: str | None = None) -> None:
        super().__init__(message, code="API_ERROR")
        self.status = status
        self.details = details


class NetworkError(MemctlError):
    """Transport failure with no cached row to fall back on."""

    def __init__(self, message: str, *, code: str = "NETWORK_ERROR") -> None:
        super().__init__(message, code=code)


class RevalidationError(MemctlError):
    """304 Not Modified arrived but there is no cached row to serve."""

    def __init__(self, message: str = "Not modified response without cached entry") -> None:
        super().__init__(message, code="REVALIDATION_ERROR")


class ToolError(MemctlError):
    """Errors during tool execution."""

    def __init__(self, message: str, *, code: str = "TOOL_ERROR") -> None:
        super().__init__(message, code=code)
