"""Shared pytest fixtures for memctl client tests.

HTTP is faked with httpx.MockTransport; time is faked with FakeClock.
No network access is needed.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass, field

import httpx
import pytest

from src.cache.response_cache import ResponseCache
from src.client.api_client import ApiClient
from src.config.settings import ApiSettings, SessionTrackingSettings, Settings

BASE_URL = "https://api.test/api/v1"


class FakeClock:
    """Manually advanced monotonic clock (seconds)."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@dataclass
class FakeServer:
    """Records requests and answers them from a handler or a queue."""

    handler: Callable[[httpx.Request], httpx.Response] | None = None
    requests: list[httpx.Request] = field(default_factory=list)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.handler is None:
            return httpx.Response(200, json={})
        return self.handler(request)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def calls(self, method: str | None = None, path: str | None = None) -> list[httpx.Request]:
        return [
            r for r in self.requests
            if (method is None or r.method == method)
            and (path is None or r.url.path.endswith(path))
        ]

    @staticmethod
    def body(request: httpx.Request) -> dict:
        return json.loads(request.content) if request.content else {}


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def server() -> FakeServer:
    return FakeServer()


@pytest.fixture
def make_client(server: FakeServer, clock: FakeClock):
    """Factory for ApiClient wired to the fake server and the fake clock."""

    def _make(**kwargs) -> ApiClient:
        cache = kwargs.pop("cache", None)
        if cache is None:
            cache = ResponseCache(30, 60, clock=clock)
        client = ApiClient(
            base_url=BASE_URL,
            token="tok",
            org="acme",
            project="web",
            cache=cache,
            transport=server.transport(),
            **kwargs,
        )
        return client

    return _make


def build_settings(**session_overrides) -> Settings:
    session = {
        "flush_interval_s": 30.0,
        "max_attempts": 2,
        "retry_backoff_s": 0,
        "finalize_timeout_s": 1.0,
        **session_overrides,
    }
    return Settings(
        api=ApiSettings(api_url=BASE_URL, token="tok", org="acme", project="web"),
        session=SessionTrackingSettings(**session),
    )


@pytest.fixture
def make_settings():
    return build_settings
