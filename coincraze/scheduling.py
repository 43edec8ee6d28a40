"""Cancellable scheduled tasks on the asyncio loop.

``ScheduledTask`` wraps one ``asyncio.Task`` that runs a coroutine callback
after a delay and, optionally, keeps repeating it on a fixed interval.
``TaskScope`` owns a set of them so a component can tear down every timer it
started with a single call.

Usage:
    scope = TaskScope("poller")
    scope.every(10.0, poll_once, name="fast")
    scope.after(2.0, retry_once, name="retry")
    ...
    await scope.aclose()
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

Callback = Callable[[], Awaitable[Any]]


class ScheduledTask:
    """One delayed (and optionally repeating) coroutine invocation."""

    def __init__(
        self,
        callback: Callback,
        *,
        delay: float = 0.0,
        interval: Optional[float] = None,
        name: str = "scheduled-task",
    ) -> None:
        if delay < 0:
            raise ValueError("delay must be >= 0")
        if interval is not None and interval <= 0:
            raise ValueError("interval must be positive")

        self.name = name
        self._callback = callback
        self._delay = delay
        self._interval = interval
        self._task: asyncio.Task | None = None
        self.runs = 0

    @classmethod
    def after(cls, delay: float, callback: Callback, *, name: str = "one-shot") -> ScheduledTask:
        return cls(callback, delay=delay, name=name).start()

    @classmethod
    def every(cls, interval: float, callback: Callback, *, name: str = "interval") -> ScheduledTask:
        """First run happens one interval after start, like a timer."""
        return cls(callback, delay=interval, interval=interval, name=name).start()

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def task(self) -> asyncio.Task | None:
        return self._task

    def start(self) -> ScheduledTask:
        if self.active:
            return self
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run(), name=self.name)
        return self

    def cancel(self) -> bool:
        """Cancel the pending run.

        A task cannot cancel itself from inside its own callback; that call
        is a no-op and the current run simply finishes.
        """
        if not self.active:
            return False
        assert self._task is not None
        if asyncio.current_task() is self._task:
            return False
        self._task.cancel()
        return True

    async def wait(self) -> None:
        """Wait until the task finishes or is cancelled."""
        if self._task is None:
            return
        await asyncio.gather(self._task, return_exceptions=True)

    async def _run(self) -> None:
        try:
            if self._delay > 0:
                await asyncio.sleep(self._delay)
            while True:
                self.runs += 1
                try:
                    await self._callback()
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("Scheduled task %s failed", self.name)

                if self._interval is None:
                    return
                await asyncio.sleep(self._interval)
        except asyncio.CancelledError:
            logger.debug("Scheduled task %s cancelled", self.name)
            raise


class TaskScope:
    """Owns scheduled tasks so they can all be cancelled at teardown."""

    def __init__(self, name: str = "scope") -> None:
        self.name = name
        self._tasks: set[ScheduledTask] = set()
        self._closed = False

    def __len__(self) -> int:
        return sum(1 for t in self._tasks if t.active)

    @property
    def closed(self) -> bool:
        return self._closed

    def schedule(
        self,
        callback: Callback,
        *,
        delay: float = 0.0,
        interval: Optional[float] = None,
        name: Optional[str] = None,
    ) -> ScheduledTask:
        if self._closed:
            raise RuntimeError(f"TaskScope {self.name} is closed")

        scheduled = ScheduledTask(
            callback,
            delay=delay,
            interval=interval,
            name=f"{self.name}:{name or 'task'}",
        ).start()
        self._tasks.add(scheduled)
        assert scheduled.task is not None
        scheduled.task.add_done_callback(lambda _t, s=scheduled: self._tasks.discard(s))
        return scheduled

    def after(self, delay: float, callback: Callback, *, name: Optional[str] = None) -> ScheduledTask:
        return self.schedule(callback, delay=delay, name=name)

    def every(self, interval: float, callback: Callback, *, name: Optional[str] = None) -> ScheduledTask:
        return self.schedule(callback, delay=interval, interval=interval, name=name)

    def cancel_all(self) -> int:
        cancelled = 0
        for scheduled in list(self._tasks):
            if scheduled.cancel():
                cancelled += 1
        return cancelled

    async def aclose(self) -> None:
        """Cancel every task and wait for them to unwind. Idempotent."""
        self._closed = True
        pending = [s.task for s in self._tasks if s.task is not None and s.task is not asyncio.current_task()]
        self.cancel_all()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()
        logger.debug("TaskScope %s closed (%d tasks)", self.name, len(pending))
