import asyncio
from typing import Any, Coroutine

import structlog

logger = structlog.get_logger()


class PendingWrites:
    """
    PendingWrites holds fire-and-forget persistence tasks.

    Callers schedule a coroutine and never await it; the task set
    keeps strong references until each task finishes so the event
    loop cannot drop them. flush() is the only place that waits.
    """

    def __init__(self, owner: "str") -> "None":
        self._owner = owner
        self._tasks: "set[asyncio.Task[Any]]" = set()

    def __len__(self) -> "int":
        return len(self._tasks)

    def schedule(self, coro: "Coroutine[Any, Any, Any]") -> "bool":
        """
        schedules coro on the running loop. Returns False, and
        discards the coroutine, when no loop is running.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.debug("persistence_skipped_no_loop", owner=self._owner)
            return False

        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return True

    def _on_done(self, task: "asyncio.Task[Any]") -> "None":
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "background_write_failed",
                owner=self._owner,
                exc_info=exc,
            )

    async def flush(self) -> "None":
        """
        waits until every scheduled task, including ones scheduled
        while waiting, has finished.
        """
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
