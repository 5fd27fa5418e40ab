"""Revalidating HTTP client for the memctl memory API.

Every GET goes through the ResponseCache:
- live hit -> served without network (freshness "cached")
- hit inside the stale window -> served immediately, revalidated in the
  background (freshness "stale")
- miss -> network, conditional on a retained etag; 200 replaces the row
  ("fresh"), 304 touches it ("cached")
- transport failure -> stale row if still within the grace window, else
  NetworkError

So "200, expiry, 304" reads as fresh then cached only when background
revalidation is off or the row is already past the stale window; inside the
window the second read is served as stale and the 304 lands in the background.

Mutations always hit the network and then invalidate the exact GET key and
the list/search prefix of the same resource family. In-flight GETs for
those keys are detached too, so a read after a write always goes to the network.

The client records nothing about sessions. An optional ``on_request`` hook
receives (method, path, body) for every outbound request.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from enum import StrEnum
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import httpx
import structlog

from src.cache.response_cache import ResponseCache
from src.infra.errors import ApiError, NetworkError, RevalidationError

if TYPE_CHECKING:
    from src.config.settings import Settings

logger = structlog.get_logger()

RequestHook = Callable[[str, str, Any], None]

_MUTATING_METHODS = frozenset({"POST", "PATCH", "DELETE", "PUT"})


class Freshness(StrEnum):
    fresh = "fresh"
    cached = "cached"
    stale = "stale"


def path_without_query(path: str) -> str:
    idx = path.find("?")
    return path[:idx] if idx >= 0 else path


def area_from_path(path: str) -> str | None:
    """Top-level path segment: "/memories/foo?x=1" -> "memories"."""
    clean = path_without_query(path).lstrip("/")
    if not clean:
        return None
    return clean.split("/", 1)[0] or None


def encode_key(key: str) -> str:
    return quote(key, safe="")


def _with_query(path: str, params: dict[str, Any]) -> str:
    query = httpx.QueryParams({k: v for k, v in params.items() if v is not None})
    return f"{path}?{query}" if query else path


def _compact(body: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in body.items() if v is not None}


class ApiClient:
    """Async client for the memory API with ETag revalidation and freshness tracking."""

    def __init__(
        self,
        *,
        base_url: str,
        token: str,
        org: str,
        project: str,
        cache: ResponseCache | None = None,
        timeout: float = 10.0,
        on_request: RequestHook | None = None,
        revalidate_in_background: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._org = org
        self._project = project
        self._cache = cache if cache is not None else ResponseCache()
        self._timeout = timeout
        self._on_request = on_request
        self._revalidate_in_background = revalidate_in_background
        self._transport = transport

        self._client: httpx.AsyncClient | None = None
        self._client_loop: asyncio.AbstractEventLoop | None = None
        # cache_key -> (generation at start, fetch task)
        self._inflight: dict[str, tuple[int, asyncio.Task[tuple[Any, Freshness]]]] = {}
        # Every fetch task and revalidation watcher, cancelled by aclose()
        self._background: set[asyncio.Task[Any]] = set()
        # Bumped on every mutation; fetches started before it never repopulate the cache.
        self._generation = 0
        self._online = True
        self._last_freshness = Freshness.fresh

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        on_request: RequestHook | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> ApiClient:
        cache = ResponseCache(settings.cache.ttl_s, settings.cache.stale_window_s)
        return cls(
            base_url=settings.api.api_url,
            token=settings.api.token,
            org=settings.api.org,
            project=settings.api.project,
            cache=cache,
            timeout=settings.api.timeout_s,
            on_request=on_request,
            revalidate_in_background=settings.cache.revalidate_in_background,
            transport=transport,
        )

    @property
    def cache(self) -> ResponseCache:
        return self._cache

    def get_last_freshness(self) -> Freshness:
        return self._last_freshness

    def get_connection_status(self) -> dict[str, bool]:
        return {"online": self._online}

    async def ping(self) -> bool:
        """Check /health. Updates connection status; never raises."""
        try:
            response = await self._http().get(
                "/health", headers=self._headers(), timeout=5.0
            )
        except httpx.TransportError:
            self._online = False
            return False
        self._online = response.is_success
        return self._online

    async def aclose(self) -> None:
        """Cancel pending fetches and revalidations, then close the HTTP client."""
        pending = list(self._background)
        self._inflight.clear()
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            self._client_loop = None

    # ── Core request path ─────────────────────────────────────────

    async def request(
        self, method: str, path: str, body: Any = None, *, revalidate: bool = False
    ) -> Any:
        """Send one request. ``revalidate`` forces a conditional GET past any live hit."""
        method = method.upper()
        if method == "GET":
            return await self._read(path, revalidate=revalidate)
        return await self._mutate(method, path, body)

    async def _read(self, path: str, *, revalidate: bool = False) -> Any:
        cache_key = f"GET:{path}"
        hit = None if revalidate else self._cache.get(cache_key)
        if hit is not None and not hit.stale:
            self._last_freshness = Freshness.cached
            return hit.data

        if hit is not None and self._revalidate_in_background:
            self._last_freshness = Freshness.stale
            self._schedule_revalidation(path, cache_key)
            return hit.data

        # Identical concurrent GETs share one request
        task = self._joinable(cache_key)
        if task is None:
            task = self._start_fetch(path, cache_key)
        data, freshness = await asyncio.shield(task)
        self._last_freshness = freshness
        return data

    def _joinable(self, cache_key: str) -> asyncio.Task[tuple[Any, Freshness]] | None:
        """In-flight fetch for the key, unless a mutation happened since it started."""
        entry = self._inflight.get(cache_key)
        if entry is None or entry[0] != self._generation:
            return None
        return entry[1]

    def _start_fetch(self, path: str, cache_key: str) -> asyncio.Task[tuple[Any, Freshness]]:
        generation = self._generation
        task = asyncio.ensure_future(self._fetch(path, cache_key, generation=generation))
        self._inflight[cache_key] = (generation, task)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

        def _done(t: asyncio.Task[Any]) -> None:
            entry = self._inflight.get(cache_key)
            if entry is not None and entry[1] is t:
                del self._inflight[cache_key]
            if not t.cancelled():
                # Retrieved here so an unawaited background failure is not reported twice
                t.exception()

        task.add_done_callback(_done)
        return task

    def _schedule_revalidation(self, path: str, cache_key: str) -> None:
        if self._joinable(cache_key) is not None:
            return
        task = self._start_fetch(path, cache_key)

        async def _watch() -> None:
            try:
                await task
                logger.debug("cache_revalidated", cache_key=cache_key)
            except Exception as exc:
                logger.info(
                    "cache_revalidation_failed",
                    cache_key=cache_key,
                    error=str(exc),
                )

        watcher = asyncio.ensure_future(_watch())
        self._background.add(watcher)
        watcher.add_done_callback(self._background.discard)

    async def _fetch(
        self,
        path: str,
        cache_key: str,
        *,
        generation: int,
        conditional: bool = True,
    ) -> tuple[Any, Freshness]:
        headers = self._headers()
        etag = self._cache.get_etag(cache_key) if conditional else None
        if etag:
            headers["If-None-Match"] = etag

        try:
            response = await self._send("GET", path, headers=headers)
        except httpx.TransportError as exc:
            entry = self._cache.get_entry(cache_key)
            if entry is not None and self._cache.is_within_grace(cache_key):
                logger.warning(
                    "cache_stale_served",
                    cache_key=cache_key,
                    error=str(exc),
                )
                return entry.data, Freshness.stale
            raise NetworkError(f"GET {path} failed: {exc}") from exc

        if response.status_code == 304:
            entry = self._cache.get_entry(cache_key)
            if entry is None:
                if not conditional:
                    raise RevalidationError(
                        f"GET {path} returned 304 without a conditional header"
                    )
                logger.warning(
                    "cache_revalidation_row_missing",
                    cache_key=cache_key,
                    msg="304 with no cached row; refetching unconditionally",
                )
                return await self._fetch(
                    path, cache_key, generation=generation, conditional=False
                )
            self._cache.touch(cache_key)
            return entry.data, Freshness.cached

        self._raise_for_status(response)
        data = self._parse_body(response)
        if generation == self._generation:
            self._cache.set(cache_key, data, response.headers.get("etag"))
        return data, Freshness.fresh

    async def _mutate(self, method: str, path: str, body: Any) -> Any:
        headers = self._headers()
        if method in ("PATCH", "DELETE"):
            etag = self._cache.get_etag(f"GET:{path}")
            if etag:
                headers["If-Match"] = etag

        try:
            response = await self._send(method, path, headers=headers, body=body)
        except httpx.TransportError as exc:
            raise NetworkError(f"{method} {path} failed: {exc}") from exc
        finally:
            # The write may have landed even if the response was lost
            if method in _MUTATING_METHODS:
                self._invalidate_for(path)

        self._raise_for_status(response)
        return self._parse_body(response)

    def _invalidate_for(self, path: str) -> None:
        self._generation += 1
        clean = path_without_query(path)
        exact = f"GET:{clean}"
        area = area_from_path(clean)
        prefix = f"GET:/{area}" if area else None
        self._cache.invalidate(exact)
        if prefix:
            self._cache.invalidate_prefix(prefix)
        # Reads issued from now on must not join a fetch sent before this write
        for key in list(self._inflight):
            if key == exact or (prefix and key.startswith(prefix)):
                del self._inflight[key]

    async def _send(
        self,
        method: str,
        path: str,
        *,
        headers: dict[str, str],
        body: Any = None,
    ) -> httpx.Response:
        if self._on_request is not None:
            try:
                self._on_request(method, path, body)
            except Exception:
                logger.exception("request_hook_failed", method=method, path=path)

        try:
            response = await self._http().request(
                method,
                path,
                headers=headers,
                json=body if body is not None else None,
            )
        except httpx.TransportError:
            self._online = False
            raise
        self._online = True
        logger.debug(
            "api_request",
            method=method,
            path=path,
            status=response.status_code,
        )
        return response

    def _http(self) -> httpx.AsyncClient:
        # One AsyncClient per event loop: the exit hook may finalize on a fresh loop.
        loop = asyncio.get_running_loop()
        if self._client is None or self._client_loop is not loop:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
            )
            self._client_loop = loop
        return self._client

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._token}",
            "Content-Type": "application/json",
            "X-Org-Slug": self._org,
            "X-Project-Slug": self._project,
        }

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.is_success:
            return
        text = response.text
        message = f"Request failed ({response.status_code})"
        try:
            parsed = json.loads(text)
        except ValueError:
            if text.strip():
                message = text.strip()
        else:
            if isinstance(parsed, dict):
                detail = parsed.get("error") or parsed.get("message")
                if detail:
                    message = str(detail)
        raise ApiError(response.status_code, message, text)

    @staticmethod
    def _parse_body(response: httpx.Response) -> Any:
        """JSON when declared (or undeclared); raw text otherwise or when decoding fails."""
        if response.status_code in (204, 205) or not response.content:
            return None
        content_type = response.headers.get("content-type", "").lower()
        is_json = (
            not content_type
            or "application/json" in content_type
            or "+json" in content_type
        )
        text = response.text
        if not is_json:
            return text if text.strip() else None
        try:
            return json.loads(text)
        except ValueError:
            logger.debug("response_json_decode_failed", content_type=content_type)
            return text if text.strip() else None

    # ── Memory CRUD ───────────────────────────────────────────────

    async def store_memory(
        self,
        key: str,
        content: str,
        metadata: dict[str, Any] | None = None,
        *,
        scope: str | None = None,
        priority: int | None = None,
        tags: list[str] | None = None,
        expires_at: int | None = None,
    ) -> Any:
        return await self.request(
            "POST",
            "/memories",
            _compact({
                "key": key,
                "content": content,
                "metadata": metadata,
                "scope": scope,
                "priority": priority,
                "tags": tags,
                "expiresAt": expires_at,
            }),
        )

    async def get_memory(self, key: str, *, revalidate: bool = False) -> Any:
        return await self.request(
            "GET", f"/memories/{encode_key(key)}", revalidate=revalidate
        )

    async def search_memories(
        self,
        query: str,
        limit: int = 20,
        *,
        tags: str | None = None,
        sort: str | None = None,
        include_archived: bool = False,
    ) -> Any:
        path = _with_query("/memories", {
            "q": query,
            "limit": limit,
            "tags": tags,
            "sort": sort,
            "include_archived": "true" if include_archived else None,
        })
        return await self.request("GET", path)

    async def list_memories(
        self,
        limit: int = 100,
        offset: int = 0,
        *,
        sort: str | None = None,
        include_archived: bool = False,
        tags: str | None = None,
    ) -> Any:
        path = _with_query("/memories", {
            "limit": limit,
            "offset": offset,
            "sort": sort,
            "include_archived": "true" if include_archived else None,
            "tags": tags,
        })
        return await self.request("GET", path)

    async def update_memory(
        self,
        key: str,
        content: str | None = None,
        metadata: dict[str, Any] | None = None,
        *,
        priority: int | None = None,
        tags: list[str] | None = None,
        expires_at: int | None = None,
    ) -> Any:
        return await self.request(
            "PATCH",
            f"/memories/{encode_key(key)}",
            _compact({
                "content": content,
                "metadata": metadata,
                "priority": priority,
                "tags": tags,
                "expiresAt": expires_at,
            }),
        )

    async def delete_memory(self, key: str) -> Any:
        return await self.request("DELETE", f"/memories/{encode_key(key)}")

    async def get_memory_capacity(self) -> Any:
        return await self.request("GET", "/memories/capacity")

    async def bulk_get_memories(self, keys: list[str]) -> Any:
        return await self.request("POST", "/memories/bulk", {"keys": keys})

    async def get_memory_versions(self, key: str, limit: int = 50) -> Any:
        return await self.request(
            "GET", _with_query("/memories/versions", {"key": key, "limit": limit})
        )

    async def export_memories(self, format: str = "agents_md") -> Any:
        return await self.request(
            "GET", _with_query("/memories/export", {"format": format})
        )

    # ── Session logs ──────────────────────────────────────────────

    async def get_session_logs(self, limit: int = 20, branch: str | None = None) -> Any:
        return await self.request(
            "GET", _with_query("/session-logs", {"limit": limit, "branch": branch})
        )

    async def upsert_session_log(
        self,
        session_id: str,
        *,
        branch: str | None = None,
        summary: str | None = None,
        keys_read: list[str] | None = None,
        keys_written: list[str] | None = None,
        tools_used: list[str] | None = None,
        ended_at: int | None = None,
    ) -> Any:
        return await self.request(
            "POST",
            "/session-logs",
            _compact({
                "sessionId": session_id,
                "branch": branch,
                "summary": summary,
                "keysRead": keys_read,
                "keysWritten": keys_written,
                "toolsUsed": tools_used,
                "endedAt": ended_at,
            }),
        )

    # ── Activity logs ─────────────────────────────────────────────

    async def get_activity_logs(self, limit: int = 50, session_id: str | None = None) -> Any:
        return await self.request(
            "GET",
            _with_query("/activity-logs", {"limit": limit, "session_id": session_id}),
        )

    async def log_activity(
        self,
        action: str,
        *,
        session_id: str | None = None,
        tool_name: str | None = None,
        memory_key: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> Any:
        return await self.request(
            "POST",
            "/activity-logs",
            _compact({
                "action": action,
                "sessionId": session_id,
                "toolName": tool_name,
                "memoryKey": memory_key,
                "details": details,
            }),
        )
