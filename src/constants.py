"""Shared constants for the memctl client runtime."""

DEFAULT_API_URL = "https://memctl.com/api/v1"

# Response cache
DEFAULT_CACHE_TTL_S = 30.0
DEFAULT_STALE_WINDOW_S = 60.0

# Session tracking
AUTO_SESSION_PREFIX = "auto"
FLUSH_INTERVAL_S = 30.0
STALE_SESSION_AFTER_S = 2 * 60 * 60
RECENT_SESSION_LIMIT = 5
STALE_SESSION_SUMMARY = "Auto-closed: session exceeded 2-hour inactivity limit."

# Keys that are bookkeeping, never user memory activity
CLAIMS_KEY_PREFIX = "agent/claims/"
SESSION_KEY_PREFIX = "auto:"

# Areas excluded from session tracking
UNTRACKED_AREAS = frozenset({"health", "session-logs"})

# Safe store
CONFLICT_PREVIEW_CHARS = 500
APPEND_SEPARATOR = "\n\n---\n\n"
