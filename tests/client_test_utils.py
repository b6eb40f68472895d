from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Iterable

import httpx
from fastapi.testclient import TestClient

from claude_smart_router.gateway.router import RequestRouter
from claude_smart_router.main import app
from claude_smart_router.settings import get_settings

TEST_TOPOLOGY_CONFIG_PATH = (
    Path(__file__).resolve().parent / "fixtures" / "router.topology.yaml"
)

ResponseFactory = Callable[[str, str, dict[str, str], bytes], httpx.Response]


class RecordingTransport:
    """Backend transport double that records every call and answers from a factory.

    The factory may raise to simulate a network failure.
    """

    def __init__(self, respond: ResponseFactory) -> None:
        self._respond = respond
        self.calls: list[dict[str, Any]] = []
        self.closed = False

    async def perform(
        self,
        method: str,
        url: str,
        headers: Iterable[tuple[str, str]],
        body: bytes,
    ) -> httpx.Response:
        header_map = {name.lower(): value for name, value in headers}
        self.calls.append(
            {"method": method, "url": url, "headers": header_map, "body": body}
        )
        return self._respond(method, url, header_map, body)

    async def close(self) -> None:
        self.closed = True


def set_default_test_env(monkeypatch: Any) -> None:
    monkeypatch.setenv("TOPOLOGY_CONFIG_PATH", str(TEST_TOPOLOGY_CONFIG_PATH))
    monkeypatch.delenv("REDIS_URL", raising=False)


def build_test_client(monkeypatch: Any, **env: Any) -> TestClient:
    set_default_test_env(monkeypatch)
    for key, value in env.items():
        monkeypatch.setenv(key, str(value))
    get_settings.cache_clear()
    return TestClient(app)


def install_transport(transport: RecordingTransport) -> None:
    """Swap the backend transport of a started app for a test double."""
    router: RequestRouter = app.state.request_router
    app.state.request_router = RequestRouter(
        topology=router.topology,
        tracker=router.tracker,
        transport=transport,
    )
