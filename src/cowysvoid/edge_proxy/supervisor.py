"""Ownership of fire-and-forget background work such as cache stores."""

from __future__ import annotations

import asyncio
from typing import Coroutine

import structlog


LOGGER = structlog.get_logger("cowysvoid.edge_proxy.supervisor")


class TaskSupervisor:
    """Tracks detached tasks so shutdown can wait for them with a deadline.

    Tasks are not tied to the request that spawned them; a client
    disconnecting does not cancel a store that is already scheduled.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine, *, name: str | None = None) -> asyncio.Task | None:
        if self._closed:
            coro.close()
            LOGGER.warning("background_task_rejected", task=name, reason="supervisor closed")
            return None
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            LOGGER.info("background_task_cancelled", task=task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("background_task_failed", task=task.get_name(), error=repr(exc))

    async def wait_idle(self) -> None:
        """Wait until every task spawned so far has finished."""
        while self._tasks:
            await asyncio.wait(set(self._tasks))

    async def drain(self, timeout: float) -> int:
        """Stop accepting work, wait up to ``timeout`` seconds, cancel stragglers.

        Returns the number of tasks that had to be abandoned.
        """
        self._closed = True
        if not self._tasks:
            return 0
        _, still_running = await asyncio.wait(set(self._tasks), timeout=max(0.0, timeout))
        if not still_running:
            return 0
        LOGGER.warning("store_drain_timeout", abandoned=len(still_running), timeout=timeout)
        for task in still_running:
            task.cancel()
        await asyncio.gather(*still_running, return_exceptions=True)
        return len(still_running)
