from __future__ import annotations

from typing import Callable

import httpx
import pytest

from cowysvoid.common.settings import EdgeProxySettings
from cowysvoid.edge_proxy.app import create_app
from cowysvoid.edge_proxy.store import MemoryCacheBackend


class UpstreamDouble:
    """Stand-in for Archidekt / Scryfall that counts every request it receives."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.routes: dict[str, Callable[[httpx.Request], httpx.Response]] = {}

    @property
    def calls(self) -> int:
        return len(self.requests)

    def urls(self) -> list[str]:
        return [str(request.url) for request in self.requests]

    def on(self, path: str, responder: Callable[[httpx.Request], httpx.Response]) -> None:
        self.routes[path] = responder

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        responder = self.routes.get(request.url.path)
        if responder is not None:
            return responder(request)
        if request.url.host.endswith("scryfall.io"):
            return httpx.Response(200, content=b"\x89PNG-bytes", headers={"content-type": "image/png"})
        return httpx.Response(200, json={"path": request.url.path, "query": str(request.url.query, "ascii")})


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def settings() -> EdgeProxySettings:
    return EdgeProxySettings(_env_file=None, metrics_token="metrics-secret", store_drain_seconds=1.0)


@pytest.fixture
def upstream() -> UpstreamDouble:
    return UpstreamDouble()


@pytest.fixture
def backend() -> MemoryCacheBackend:
    return MemoryCacheBackend()


@pytest.fixture
def app(settings: EdgeProxySettings, upstream: UpstreamDouble, backend: MemoryCacheBackend):
    return create_app(settings, backend=backend, transport=httpx.MockTransport(upstream.handler))


@pytest.fixture
async def edge(app):
    """Async client sharing the app's event loop so background stores can be awaited."""
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://edge.test") as client:
        yield client
    await app.state.edge_state.shutdown()


@pytest.fixture
def settle(app):
    """Await every cache store scheduled so far."""

    async def _settle() -> None:
        await app.state.edge_state.supervisor.wait_idle()

    return _settle
