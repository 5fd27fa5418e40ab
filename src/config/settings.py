from __future__ import annotations

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.constants import (
    APPEND_SEPARATOR,
    CONFLICT_PREVIEW_CHARS,
    DEFAULT_API_URL,
    DEFAULT_CACHE_TTL_S,
    DEFAULT_STALE_WINDOW_S,
    FLUSH_INTERVAL_S,
    RECENT_SESSION_LIMIT,
    STALE_SESSION_AFTER_S,
)

# Load .env once at import so every BaseSettings subclass sees it
load_dotenv()


class ApiSettings(BaseSettings):
    """Remote memory API settings. Env vars prefixed with MEMCTL_."""

    model_config = SettingsConfigDict(env_prefix="MEMCTL_")

    api_url: str = DEFAULT_API_URL
    token: str  # required
    org: str
    project: str
    timeout_s: float = Field(10.0, gt=0)
    branch: str | None = None  # stands in for git branch detection

    @field_validator("api_url")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"MEMCTL_API_URL must be an http(s) URL (got '{v}')")
        return v.rstrip("/")

    @field_validator("token", "org", "project")
    @classmethod
    def _non_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be empty")
        return v.strip()


class CacheSettings(BaseSettings):
    """In-memory response cache settings. Env vars prefixed with MEMCTL_CACHE_."""

    model_config = SettingsConfigDict(env_prefix="MEMCTL_CACHE_")

    ttl_s: float = Field(DEFAULT_CACHE_TTL_S, ge=0)
    stale_window_s: float = Field(DEFAULT_STALE_WINDOW_S, ge=0)
    revalidate_in_background: bool = True


class SessionTrackingSettings(BaseSettings):
    """Session tracker settings. Env vars prefixed with MEMCTL_SESSION_."""

    model_config = SettingsConfigDict(env_prefix="MEMCTL_SESSION_")

    enabled: bool = True
    flush_interval_s: float = Field(FLUSH_INTERVAL_S, gt=0)
    stale_after_s: float = Field(STALE_SESSION_AFTER_S, gt=0)
    recent_limit: int = Field(RECENT_SESSION_LIMIT, ge=1, le=50)
    finalize_timeout_s: float = Field(5.0, gt=0)
    # Background (flush / finalize / sweep) retry policy
    max_attempts: int = Field(3, ge=1, le=10)
    retry_backoff_s: float = Field(0.5, ge=0)


class ConflictSettings(BaseSettings):
    """Safe-store conflict settings. Env vars prefixed with MEMCTL_CONFLICT_."""

    model_config = SettingsConfigDict(env_prefix="MEMCTL_CONFLICT_")

    preview_chars: int = Field(CONFLICT_PREVIEW_CHARS, gt=0)
    append_separator: str = APPEND_SEPARATOR


class LoggingSettings(BaseSettings):
    """Logging settings. Env vars prefixed with MEMCTL_LOG_."""

    model_config = SettingsConfigDict(env_prefix="MEMCTL_LOG_")

    level: str = "INFO"
    json_output: bool = True

    @field_validator("level")
    @classmethod
    def _validate_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        upper = v.upper()
        if upper not in allowed:
            msg = f"MEMCTL_LOG_LEVEL must be one of {sorted(allowed)} (got '{v}')"
            raise ValueError(msg)
        return upper


class Settings(BaseSettings):
    """Root settings composing all sub-configurations."""

    model_config = SettingsConfigDict(extra="ignore")

    api: ApiSettings = Field(default_factory=ApiSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    session: SessionTrackingSettings = Field(default_factory=SessionTrackingSettings)
    conflict: ConflictSettings = Field(default_factory=ConflictSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def get_settings() -> Settings:
    """Load and validate settings. Raises ValidationError on missing required fields."""
    return Settings()
