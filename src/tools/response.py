"""Tool payload helpers: freshness envelope and actionable error payloads."""

from __future__ import annotations

import re
from typing import Any

from src.client.api_client import Freshness
from src.infra.errors import MemctlError

_MEMORY_FULL = re.compile(r"memory limit reached", re.IGNORECASE)


def with_freshness(payload: Any, freshness: Freshness | str) -> Any:
    """Attach read freshness to a tool payload.

    - dict -> copy with ``_meta: {"freshness": ...}``
    - list -> ``{"items": [...], "_meta": {...}}``
    - text -> ``"<text>\\n[freshness: <state>]"``, never decoded, so a text
      body that happens to look like JSON stays text
    """
    state = str(freshness)
    meta = {"freshness": state}

    if payload is None:
        return {"_meta": meta}
    if isinstance(payload, dict):
        return {**payload, "_meta": meta}
    if isinstance(payload, list):
        return {"items": payload, "_meta": meta}
    return f"{payload}\n[freshness: {state}]"


def error_payload(error_code: str, message: str) -> dict:
    return {"error_code": error_code, "message": message}


def has_memory_full_error(error: BaseException | str) -> bool:
    return bool(_MEMORY_FULL.search(str(error)))


def error_from_exception(prefix: str, exc: MemctlError, *, guidance: str | None = None) -> dict:
    """Structured, actionable error: what happened and what to do next."""
    message = f"{prefix}: {exc}"
    if guidance and has_memory_full_error(exc):
        message = f"{message} {guidance}"
    return error_payload(exc.code, message)


def _limit_text(limit: Any) -> str:
    if isinstance(limit, int | float) and limit != float("inf"):
        return str(int(limit))
    return "unlimited"


def format_capacity_guidance(capacity: dict) -> str:
    used = capacity.get("used", 0)
    limit = _limit_text(capacity.get("limit"))
    org_used = capacity.get("orgUsed", 0)
    org_limit = _limit_text(capacity.get("orgLimit"))
    if capacity.get("isFull"):
        return (
            f"Organization memory limit reached ({org_used}/{org_limit}). "
            "Delete or archive unused memories before storing new ones."
        )
    if capacity.get("isSoftFull"):
        return (
            f"Project soft limit reached ({used}/{limit}). "
            f"Consider archiving old memories. Org: {org_used}/{org_limit}."
        )
    if capacity.get("isApproaching"):
        return f"Approaching project limit ({used}/{limit}). Org: {org_used}/{org_limit}."
    return f"Memory available. Project: {used}/{limit}, Org: {org_used}/{org_limit}."
