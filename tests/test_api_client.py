"""Tests for ApiClient: freshness, revalidation, invalidation and errors."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from src.client.api_client import Freshness, area_from_path, encode_key, path_without_query
from src.infra.errors import ApiError, NetworkError, RevalidationError


def _json(status: int = 200, data=None, etag: str | None = None) -> httpx.Response:
    headers = {"etag": etag} if etag else {}
    return httpx.Response(status, json=data if data is not None else {}, headers=headers)


async def _until(predicate, attempts: int = 100) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached")


class TestPathHelpers:
    def test_path_without_query(self) -> None:
        assert path_without_query("/memories?q=1") == "/memories"
        assert path_without_query("/memories") == "/memories"

    def test_area_from_path(self) -> None:
        assert area_from_path("/memories/foo?x=1") == "memories"
        assert area_from_path("/session-logs") == "session-logs"
        assert area_from_path("/") is None

    def test_encode_key_escapes_slashes(self) -> None:
        assert encode_key("agent/context/a b") == "agent%2Fcontext%2Fa%20b"


class TestFreshness:
    @pytest.mark.asyncio
    async def test_fresh_then_cached_with_one_request(self, server, make_client) -> None:
        server.handler = lambda r: _json(data={"memory": {"key": "a"}}, etag='"v1"')
        client = make_client()

        first = await client.get_memory("a")
        assert client.get_last_freshness() == Freshness.fresh
        second = await client.get_memory("a")
        assert client.get_last_freshness() == Freshness.cached

        assert first == second == {"memory": {"key": "a"}}
        assert len(server.requests) == 1

    @pytest.mark.asyncio
    async def test_expired_row_revalidates_with_etag(self, server, make_client, clock) -> None:
        responses = iter([
            _json(data={"memory": {"key": "a"}}, etag='"v1"'),
            httpx.Response(304),
        ])
        server.handler = lambda r: next(responses)
        client = make_client(revalidate_in_background=False)

        await client.get_memory("a")
        assert client.get_last_freshness() == Freshness.fresh
        clock.advance(31)
        data = await client.get_memory("a")

        assert data == {"memory": {"key": "a"}}
        assert client.get_last_freshness() == Freshness.cached
        assert len(server.requests) == 2
        assert server.requests[1].headers["If-None-Match"] == '"v1"'

    @pytest.mark.asyncio
    async def test_304_renews_ttl(self, server, make_client, clock) -> None:
        responses = iter([_json(data={"v": 1}, etag='"v1"'), httpx.Response(304)])
        server.handler = lambda r: next(responses)
        client = make_client(revalidate_in_background=False)

        await client.request("GET", "/memories/a")
        clock.advance(31)
        await client.request("GET", "/memories/a")
        await client.request("GET", "/memories/a")

        assert client.get_last_freshness() == Freshness.cached
        assert len(server.requests) == 2

    @pytest.mark.asyncio
    async def test_stale_hit_served_and_revalidated_in_background(
        self, server, make_client, clock
    ) -> None:
        responses = iter([_json(data={"v": 1}, etag='"v1"'), _json(data={"v": 2}, etag='"v2"')])
        server.handler = lambda r: next(responses)
        client = make_client()

        await client.request("GET", "/memories/a")
        clock.advance(45)
        stale = await client.request("GET", "/memories/a")
        assert stale == {"v": 1}
        assert client.get_last_freshness() == Freshness.stale

        for _ in range(100):
            if client.cache.get("GET:/memories/a").data == {"v": 2}:
                break
            await asyncio.sleep(0.01)
        assert len(server.requests) == 2
        assert client.cache.get("GET:/memories/a").data == {"v": 2}
        assert server.requests[1].headers["If-None-Match"] == '"v1"'
        await client.aclose()

    @pytest.mark.asyncio
    async def test_revalidate_skips_live_hit(self, server, make_client) -> None:
        server.handler = lambda r: _json(data={"v": 1}, etag='"v1"')
        client = make_client()

        await client.get_memory("a")
        await client.get_memory("a", revalidate=True)

        assert len(server.requests) == 2
        assert server.requests[1].headers["If-None-Match"] == '"v1"'

    @pytest.mark.asyncio
    async def test_row_past_stale_window_revalidates_in_foreground(
        self, server, make_client, clock
    ) -> None:
        responses = iter([_json(data={"v": 1}, etag='"v1"'), httpx.Response(304)])
        server.handler = lambda r: next(responses)
        client = make_client()

        await client.get_memory("a")
        assert client.get_last_freshness() == Freshness.fresh
        clock.advance(100)
        data = await client.get_memory("a")

        assert data == {"v": 1}
        assert client.get_last_freshness() == Freshness.cached
        assert len(server.requests) == 2
        assert server.requests[1].headers["If-None-Match"] == '"v1"'


class TestRevalidationEdgeCases:
    @pytest.mark.asyncio
    async def test_304_after_row_removed_retries_unconditionally(
        self, server, make_client, clock
    ) -> None:
        client = make_client(revalidate_in_background=False)
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            if calls["n"] == 1:
                return _json(data={"v": 1}, etag='"v1"')
            if calls["n"] == 2:
                # Row disappears while the conditional request is in flight
                client.cache.invalidate("GET:/memories/a")
                return httpx.Response(304)
            return _json(data={"v": 2}, etag='"v2"')

        server.handler = handler
        await client.request("GET", "/memories/a")
        clock.advance(31)
        data = await client.request("GET", "/memories/a")

        assert data == {"v": 2}
        assert client.get_last_freshness() == Freshness.fresh
        assert len(server.requests) == 3
        assert "If-None-Match" in server.requests[1].headers
        assert "If-None-Match" not in server.requests[2].headers

    @pytest.mark.asyncio
    async def test_repeated_304_without_row_raises(self, server, make_client) -> None:
        server.handler = lambda r: httpx.Response(304)
        client = make_client()

        with pytest.raises(RevalidationError):
            await client.request("GET", "/memories/a")
        assert len(server.requests) == 2


class TestNetworkFailure:
    @pytest.mark.asyncio
    async def test_stale_row_served_when_offline(self, server, make_client, clock) -> None:
        client = make_client(revalidate_in_background=False)
        server.handler = lambda r: _json(data={"v": 1}, etag='"v1"')
        await client.request("GET", "/memories/a")

        def offline(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("down", request=request)

        server.handler = offline
        clock.advance(45)
        data = await client.request("GET", "/memories/a")

        assert data == {"v": 1}
        assert client.get_last_freshness() == Freshness.stale
        assert client.get_connection_status() == {"online": False}

    @pytest.mark.asyncio
    async def test_network_error_past_grace(self, server, make_client, clock) -> None:
        client = make_client(revalidate_in_background=False)
        server.handler = lambda r: _json(data={"v": 1}, etag='"v1"')
        await client.request("GET", "/memories/a")

        def offline(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("down", request=request)

        server.handler = offline
        clock.advance(120)
        with pytest.raises(NetworkError):
            await client.request("GET", "/memories/a")

    @pytest.mark.asyncio
    async def test_network_error_without_row(self, server, make_client) -> None:
        def offline(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("down", request=request)

        server.handler = offline
        client = make_client()
        with pytest.raises(NetworkError) as exc_info:
            await client.request("GET", "/memories/a")
        assert exc_info.value.code == "NETWORK_ERROR"


class TestMutations:
    @pytest.mark.asyncio
    async def test_write_invalidates_key_and_area_lists(self, server, make_client) -> None:
        server.handler = lambda r: _json(data={"ok": True}, etag='"v1"')
        client = make_client()

        await client.get_memory("a")
        await client.list_memories()
        await client.get_session_logs()
        await client.store_memory("a", "new")

        remaining = list(client.cache.keys())
        assert remaining == ["GET:/session-logs?limit=20"]

    @pytest.mark.asyncio
    async def test_read_after_write_hits_network(self, server, make_client) -> None:
        server.handler = lambda r: _json(data={"ok": True}, etag='"v1"')
        client = make_client()

        await client.get_memory("a")
        await client.delete_memory("a")
        await client.get_memory("a")

        assert [r.method for r in server.requests] == ["GET", "DELETE", "GET"]
        assert client.get_last_freshness() == Freshness.fresh

    @pytest.mark.asyncio
    async def test_patch_and_delete_send_if_match(self, server, make_client) -> None:
        server.handler = lambda r: _json(data={"ok": True}, etag='"v1"')
        client = make_client()

        await client.get_memory("a")
        await client.update_memory("a", content="x")
        assert server.requests[1].headers["If-Match"] == '"v1"'

        # Row was invalidated by the PATCH: no etag to send
        await client.delete_memory("a")
        assert "If-Match" not in server.requests[2].headers

    @pytest.mark.asyncio
    async def test_failed_write_still_invalidates(self, server, make_client) -> None:
        client = make_client()
        server.handler = lambda r: _json(data={"v": 1})
        await client.get_memory("a")

        server.handler = lambda r: _json(500, data={"error": "boom"})
        with pytest.raises(ApiError):
            await client.store_memory("a", "x")
        assert "GET:/memories/a" not in client.cache

    @pytest.mark.asyncio
    async def test_store_body_is_camel_case(self, server, make_client) -> None:
        client = make_client()
        await client.store_memory("a", "c", {"m": 1}, priority=5, tags=["t"], expires_at=9)
        body = server.body(server.requests[0])
        assert body == {
            "key": "a",
            "content": "c",
            "metadata": {"m": 1},
            "priority": 5,
            "tags": ["t"],
            "expiresAt": 9,
        }

    @pytest.mark.asyncio
    async def test_read_after_write_does_not_join_earlier_fetch(
        self, server, make_client
    ) -> None:
        release = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            if request.method != "GET":
                return _json(data={"ok": True})
            if len(server.calls("GET")) == 1:
                await release.wait()
                return _json(data={"v": "v1"}, etag='"v1"')
            return _json(data={"v": "v2"}, etag='"v2"')

        server.handler = handler
        client = make_client()

        first = asyncio.ensure_future(client.get_memory("foo"))
        await _until(lambda: len(server.calls("GET")) == 1)
        await client.store_memory("foo", "v2")
        second = asyncio.ensure_future(client.get_memory("foo"))
        await _until(lambda: len(server.calls("GET")) == 2)
        release.set()

        assert await second == {"v": "v2"}
        assert await first == {"v": "v1"}
        assert len(server.calls("GET")) == 2
        # The pre-write response never lands in the cache
        assert client.cache.get("GET:/memories/foo").data == {"v": "v2"}


class TestResponses:
    @pytest.mark.asyncio
    async def test_non_json_body_returned_as_text(self, server, make_client) -> None:
        server.handler = lambda r: httpx.Response(
            200, text="# Memories", headers={"content-type": "text/markdown"}
        )
        client = make_client()
        assert await client.export_memories() == "# Memories"

    @pytest.mark.asyncio
    async def test_malformed_json_returned_as_text(self, server, make_client) -> None:
        server.handler = lambda r: httpx.Response(
            200, content=b"{not json", headers={"content-type": "application/json"}
        )
        client = make_client()
        assert await client.request("GET", "/memories/a") == "{not json"

    @pytest.mark.asyncio
    async def test_empty_body_is_none(self, server, make_client) -> None:
        server.handler = lambda r: httpx.Response(204)
        client = make_client()
        assert await client.delete_memory("a") is None

    @pytest.mark.asyncio
    async def test_api_error_message_from_json(self, server, make_client) -> None:
        server.handler = lambda r: _json(404, data={"error": "Memory not found"})
        client = make_client()
        with pytest.raises(ApiError, match="Memory not found") as exc_info:
            await client.get_memory("missing")
        assert exc_info.value.status == 404

    @pytest.mark.asyncio
    async def test_api_error_message_fallback(self, server, make_client) -> None:
        server.handler = lambda r: httpx.Response(502, content=b"")
        client = make_client()
        with pytest.raises(ApiError, match=r"Request failed \(502\)"):
            await client.get_memory("a")

    @pytest.mark.asyncio
    async def test_auth_and_scope_headers(self, server, make_client) -> None:
        client = make_client()
        await client.get_memory("a")
        headers = server.requests[0].headers
        assert headers["Authorization"] == "Bearer tok"
        assert headers["X-Org-Slug"] == "acme"
        assert headers["X-Project-Slug"] == "web"
        assert server.requests[0].url.raw_path.endswith(b"/api/v1/memories/a")


class TestConcurrencyAndHooks:
    @pytest.mark.asyncio
    async def test_concurrent_identical_gets_share_one_request(
        self, server, make_client
    ) -> None:
        server.handler = lambda r: _json(data={"v": 1})
        client = make_client()

        results = await asyncio.gather(*(client.get_memory("a") for _ in range(3)))

        assert results == [{"v": 1}] * 3
        assert len(server.requests) == 1

    @pytest.mark.asyncio
    async def test_request_hook_receives_every_request(self, server, make_client) -> None:
        seen: list[tuple] = []
        client = make_client(on_request=lambda m, p, b: seen.append((m, p, b)))

        await client.get_memory("a")
        await client.get_memory("a")
        await client.store_memory("b", "x")

        assert seen == [
            ("GET", "/memories/a", None),
            ("POST", "/memories", {"key": "b", "content": "x"}),
        ]

    @pytest.mark.asyncio
    async def test_failing_hook_does_not_break_request(self, server, make_client) -> None:
        def hook(method, path, body):
            raise RuntimeError("hook broke")

        server.handler = lambda r: _json(data={"v": 1})
        client = make_client(on_request=hook)
        assert await client.get_memory("a") == {"v": 1}

    @pytest.mark.asyncio
    async def test_ping_updates_connection_status(self, server, make_client) -> None:
        server.handler = lambda r: httpx.Response(503)
        client = make_client()
        assert await client.ping() is False
        assert client.get_connection_status() == {"online": False}

    @pytest.mark.asyncio
    async def test_aclose_cancels_pending_revalidation(
        self, server, make_client, clock
    ) -> None:
        never = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            if len(server.requests) == 1:
                return _json(data={"v": 1}, etag='"v1"')
            await never.wait()
            return _json(data={"v": 2})

        server.handler = handler
        client = make_client()

        await client.request("GET", "/memories/a")
        clock.advance(45)
        assert await client.request("GET", "/memories/a") == {"v": 1}
        await _until(lambda: len(server.requests) == 2)

        await client.aclose()
        await asyncio.sleep(0.05)

        assert client._client is None
        assert client._inflight == {}
        assert not client._background


class TestEndpoints:
    @pytest.mark.asyncio
    async def test_search_query_string(self, server, make_client) -> None:
        client = make_client()
        await client.search_memories("auth flow", 5, tags="api", include_archived=True)
        url = server.requests[0].url
        assert url.path.endswith("/memories")
        assert url.params["q"] == "auth flow"
        assert url.params["limit"] == "5"
        assert url.params["tags"] == "api"
        assert url.params["include_archived"] == "true"
        assert "sort" not in url.params

    @pytest.mark.asyncio
    async def test_bulk_get_is_post_and_invalidates(self, server, make_client) -> None:
        client = make_client()
        await client.bulk_get_memories(["a", "b"])
        request = server.requests[0]
        assert request.method == "POST"
        assert server.body(request) == {"keys": ["a", "b"]}

    @pytest.mark.asyncio
    async def test_versions_and_capacity_are_cached_reads(self, server, make_client) -> None:
        client = make_client()
        await client.get_memory_versions("a/b", limit=3)
        await client.get_memory_versions("a/b", limit=3)
        await client.get_memory_capacity()
        assert len(server.requests) == 2
        assert server.requests[0].url.params["key"] == "a/b"

    @pytest.mark.asyncio
    async def test_session_log_upsert_body(self, server, make_client) -> None:
        client = make_client()
        await client.upsert_session_log(
            "auto-1", summary="s", keys_read=["a"], keys_written=[], ended_at=7
        )
        assert server.body(server.requests[0]) == {
            "sessionId": "auto-1",
            "summary": "s",
            "keysRead": ["a"],
            "keysWritten": [],
            "endedAt": 7,
        }

    @pytest.mark.asyncio
    async def test_activity_logs(self, server, make_client) -> None:
        client = make_client()
        await client.log_activity("memory_read", session_id="auto-1", memory_key="a")
        await client.get_activity_logs(10, session_id="auto-1")
        assert server.body(server.requests[0]) == {
            "action": "memory_read",
            "sessionId": "auto-1",
            "memoryKey": "a",
        }
        assert server.requests[1].url.params["session_id"] == "auto-1"
