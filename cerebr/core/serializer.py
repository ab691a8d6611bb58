# cerebr/core/serializer.py

import asyncio
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Tuple

from cerebr.utils.logging import get_logger

logger = get_logger(__name__)

Snapshot = Dict[str, Any]
ApplyFn = Callable[[str, Snapshot], Awaitable[None]]


class UpdateSerializer:
    """
    Applies streaming snapshots one at a time, in arrival order.

    push() never blocks. The first push on an idle serializer starts a drain
    task; later pushes only enqueue. Each application is awaited before the
    next one starts, so a slow view update can never be overtaken by a newer
    snapshot and regress to older text.
    """

    def __init__(self, apply: ApplyFn) -> None:
        self._apply = apply
        self._queue: Deque[Tuple[str, Snapshot]] = deque()
        self.applying = False
        self._idle = asyncio.Event()
        self._idle.set()
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> int:
        return len(self._queue)

    def push(self, chat_id: str, snapshot: Snapshot) -> None:
        self._queue.append((chat_id, snapshot))
        if self.applying:
            return
        self.applying = True
        self._idle.clear()
        self._task = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        try:
            while self._queue:
                chat_id, snapshot = self._queue.popleft()
                try:
                    await self._apply(chat_id, snapshot)
                except Exception:
                    logger.exception("[serializer] applying update for chat %s failed", chat_id)
        finally:
            self.applying = False
            self._idle.set()

    async def wait_idle(self) -> None:
        await self._idle.wait()
