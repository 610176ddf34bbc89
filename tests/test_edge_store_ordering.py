from __future__ import annotations

import asyncio

import httpx
import pytest

from cowysvoid.edge_proxy.store import CacheEntry, MemoryCacheBackend


class GatedBackend(MemoryCacheBackend):
    """Memory backend whose writes wait until the test opens the gate."""

    def __init__(self) -> None:
        super().__init__()
        self.gate = asyncio.Event()
        self.writes: list[bytes] = []

    async def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        await self.gate.wait()
        self.writes.append(value)
        await super().set(key, value, ttl_seconds)


@pytest.fixture
def backend() -> GatedBackend:
    return GatedBackend()


@pytest.mark.anyio
async def test_response_is_sent_before_the_store_completes(edge, upstream, backend, app) -> None:
    supervisor = app.state.edge_state.supervisor

    response = await edge.get("/deck/42")

    assert response.status_code == 200
    assert response.headers["x-cache"] == "MISS"
    assert supervisor.pending == 1
    assert len(backend) == 0

    backend.gate.set()
    await supervisor.wait_idle()

    assert len(backend) == 1
    cached = await edge.get("/deck/42")
    assert cached.headers["x-cache"] == "HIT"
    assert cached.content == response.content
    assert upstream.calls == 1


@pytest.mark.anyio
async def test_concurrent_identical_misses_each_fetch_and_last_write_wins(edge, upstream, backend, app) -> None:
    served = iter([b'{"v": 1}', b'{"v": 2}'])
    upstream.on("/api/decks/7", lambda request: httpx.Response(200, content=next(served)))

    first, second = await asyncio.gather(edge.get("/deck/7"), edge.get("/deck/7"))

    assert first.headers["x-cache"] == second.headers["x-cache"] == "MISS"
    assert {first.content, second.content} == {b'{"v": 1}', b'{"v": 2}'}
    assert upstream.calls == 2

    backend.gate.set()
    await app.state.edge_state.supervisor.wait_idle()

    assert len(backend.writes) == 2
    assert len(backend) == 1
    cached = await edge.get("/deck/7")
    assert cached.headers["x-cache"] == "HIT"
    assert cached.content == CacheEntry.model_validate_json(backend.writes[-1]).body
    assert upstream.calls == 2


@pytest.mark.anyio
async def test_shutdown_abandons_stores_that_outlive_the_drain(upstream, backend, app) -> None:
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://edge.test") as client:
        response = await client.get("/deck/8")
    assert response.status_code == 200

    state = app.state.edge_state
    abandoned = await state.supervisor.drain(0.01)

    assert abandoned == 1
    assert state.supervisor.pending == 0
    assert len(backend) == 0
