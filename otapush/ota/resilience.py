"""Background-task helpers shared by the session and the transport.

Provides:
- ``PeriodicTask``    - fixed-interval async loop (handshake retry, progress)
- ``supervised_task`` - create_task wrapper with error logging
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

from loguru import logger


# ---------------------------------------------------------------------------
# Periodic task
# ---------------------------------------------------------------------------

class PeriodicTask:
    """Runs a callback at a fixed interval in an async task.

    Parameters
    ----------
    name:
        Human-readable label for logging.
    callback:
        Callable (sync or async) invoked each tick.  Exceptions are logged,
        not propagated.
    interval:
        Seconds between ticks.
    immediate:
        Fire once right away instead of waiting a full interval first.
    """

    def __init__(
        self,
        name: str,
        callback: Callable[[], Any],
        interval: float,
        *,
        immediate: bool = False,
    ) -> None:
        self.name = name
        self._callback = callback
        self._interval = interval
        self._immediate = immediate
        self._task: asyncio.Task | None = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _tick(self) -> None:
        self.ticks += 1
        try:
            result = self._callback()
            if asyncio.iscoroutine(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("[Timer/{}] callback error: {}", self.name, exc)

    async def _loop(self) -> None:
        logger.debug("[Timer/{}] started (interval={:.1f}s)", self.name, self._interval)
        if self._immediate:
            await self._tick()
        while True:
            await asyncio.sleep(self._interval)
            await self._tick()

    def start(self) -> None:
        """Start the loop as a background task.  No-op if already running."""
        if not self.running:
            self._task = supervised_task(self._loop(), name=f"timer-{self.name}")

    def stop(self) -> None:
        """Cancel the loop."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
            logger.debug("[Timer/{}] stopped after {} ticks", self.name, self.ticks)
        self._task = None


# ---------------------------------------------------------------------------
# Supervised task - create_task with error logging
# ---------------------------------------------------------------------------

def supervised_task(
    coro: Awaitable[Any],
    *,
    name: str = "",
) -> asyncio.Task:
    """Wrap ``asyncio.create_task`` with an error-logging callback.

    If the task raises an exception (other than ``CancelledError``),
    it is logged as an error instead of becoming an unhandled exception.
    """
    task = asyncio.create_task(coro, name=name or None)

    def _on_done(t: asyncio.Task) -> None:
        if t.cancelled():
            return
        exc = t.exception()
        if exc is not None:
            logger.error(
                "[Resilience] supervised task {!r} failed: {!r}",
                t.get_name(), exc,
            )

    task.add_done_callback(_on_done)
    return task
