# cerebr/memory/scheduler.py

import asyncio
import time
from typing import Awaitable, Callable, Optional, Set

from cerebr.utils.logging import get_logger

logger = get_logger(__name__)

Task = Callable[[], Awaitable[None]]


class ScheduledHandle:
    def __init__(self, timer: asyncio.TimerHandle) -> None:
        self._timer = timer
        self.started = False

    def cancel(self) -> None:
        if not self.started:
            self._timer.cancel()

    @property
    def cancelled(self) -> bool:
        return self._timer.cancelled()


class BackgroundScheduler:
    """
    Runs background work when the host is otherwise idle.

    schedule(task, timeout_ms) queues a coroutine function to run at the
    latest after `timeout_ms`; should_yield() tells a running task that its
    time budget for this slice is spent and it should stop and reschedule.
    """

    def schedule(self, task: Task, timeout_ms: float) -> ScheduledHandle:
        raise NotImplementedError

    def should_yield(self) -> bool:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class AsyncioIdleScheduler(BackgroundScheduler):
    """
    Event-loop implementation. asyncio has no notion of "idle", so a task is
    deferred by `idle_delay_ms` (bounded by the caller's timeout), which lets
    already-queued callbacks such as stream reads and view updates run first.
    Each run gets `budget_ms` of wall time before should_yield() turns True.
    """

    def __init__(self, budget_ms: float = 12.0, idle_delay_ms: float = 0.0) -> None:
        self.budget_ms = budget_ms
        self.idle_delay_ms = idle_delay_ms
        self._deadline: Optional[float] = None
        self._running: Set[asyncio.Task] = set()
        self._closed = False

    def schedule(self, task: Task, timeout_ms: float) -> ScheduledHandle:
        if self._closed:
            raise RuntimeError("Scheduler is closed.")
        loop = asyncio.get_running_loop()
        delay_s = max(0.0, min(self.idle_delay_ms, timeout_ms)) / 1000.0
        handle: Optional[ScheduledHandle] = None

        def _start() -> None:
            assert handle is not None
            handle.started = True
            running = loop.create_task(self._run(task))
            self._running.add(running)
            running.add_done_callback(self._running.discard)

        handle = ScheduledHandle(loop.call_later(delay_s, _start))
        return handle

    async def _run(self, task: Task) -> None:
        self._deadline = time.monotonic() + self.budget_ms / 1000.0
        try:
            await task()
        except Exception:
            # Tasks report their own failures; this only guards the loop.
            logger.exception("[scheduler] background task raised")
        finally:
            self._deadline = None

    def should_yield(self) -> bool:
        if self._deadline is None:
            return False
        return time.monotonic() >= self._deadline

    async def close(self) -> None:
        self._closed = True
        if self._running:
            await asyncio.gather(*self._running, return_exceptions=True)
