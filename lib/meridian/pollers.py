"""Periodic asyncio pollers.

Each poller owns one task on the running event loop and can be stopped
independently of every other poller.  A failing iteration is logged and
the next one still runs; only cancellation ends the loop.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Set

logger = logging.getLogger("meridian.pollers")


class PeriodicPoller:
    """Run ``fn`` every ``interval_s`` seconds until stopped.

    Usage::

        poller = PeriodicPoller("affect", 5.0, bridge.refresh)
        poller.start()
        ...
        await poller.stop()
    """

    def __init__(
        self,
        name: str,
        interval_s: float,
        fn: Callable[[], Awaitable[object]],
        *,
        immediate: bool = True,
    ) -> None:
        self.name = name
        self._interval_s = max(0.01, float(interval_s))
        self._fn = fn
        self._immediate = immediate
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self.iterations = 0
        self.failures = 0

    @property
    def interval_s(self) -> float:
        return self._interval_s

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start polling on the running loop.  No-op if already running."""
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(
            self._run(self._stop_event), name=f"meridian-poll-{self.name}"
        )
        logger.debug("Poller %s started (every %.2fs)", self.name, self._interval_s)

    async def stop(self) -> None:
        """Cancel the loop, including any iteration that is mid-flight."""
        task, self._task = self._task, None
        if self._stop_event is not None:
            self._stop_event.set()
        if task is None or task.done():
            return
        task.cancel()
        if task is asyncio.current_task():
            return
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug("Poller %s stopped after %d iterations", self.name, self.iterations)

    async def _run(self, stop_event: asyncio.Event) -> None:
        if not self._immediate:
            if await self._wait(stop_event):
                return
        while not stop_event.is_set():
            await self._tick()
            if await self._wait(stop_event):
                return

    async def _wait(self, stop_event: asyncio.Event) -> bool:
        """Sleep one interval; True when a stop was requested meanwhile."""
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=self._interval_s)
        except asyncio.TimeoutError:
            return False
        return True

    async def _tick(self) -> None:
        self.iterations += 1
        try:
            await self._fn()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.failures += 1
            logger.warning("Poller %s iteration failed: %s", self.name, exc)
            logger.debug("Poller %s failure detail", self.name, exc_info=True)


class BackgroundTasks:
    """Tracks fire-and-forget coroutines so they are neither lost nor silent."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._tasks: Set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Awaitable[object], *, label: str = "") -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._done(t, label))
        return task

    async def drain(self) -> None:
        """Wait for every tracked task; failures were already logged."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_all(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    def _done(self, task: asyncio.Task, label: str) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("%s background task %s failed: %s", self.name, label or "?", exc)
