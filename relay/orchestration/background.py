from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine, Optional, Set

log = logging.getLogger("app.tasks")


class BackgroundTasks:
    """Tracks detached work that must finish before the process goes away.

    The chat response is handed back before its transcript is persisted; the
    persisting coroutine is spawned here and the application lifespan calls
    ``drain`` on shutdown.
    """

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    @property
    def outstanding(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._done)
        return task

    def _done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            log.warning({"event": "tasks.cancelled", "task": task.get_name()})
            return
        exc = task.exception()
        if exc is not None:
            log.error({"event": "tasks.failed", "task": task.get_name()}, exc_info=exc)

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for outstanding tasks (including ones spawned meanwhile).

        Returns ``False`` if the timeout expired with work still pending.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._tasks:
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                break
            await asyncio.wait(set(self._tasks), timeout=remaining)
        if self._tasks:
            log.warning({"event": "tasks.drain_timeout", "outstanding": len(self._tasks)})
            return False
        return True
