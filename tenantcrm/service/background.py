from __future__ import annotations

import asyncio
from typing import Any, Coroutine, Optional, Set

from tenantcrm.logging import get_logger

logger = get_logger(__name__)


class BackgroundRunner:
    """Fire-and-forget coroutine scheduling for side effects.

    Holds references to pending tasks so they are not garbage collected
    mid-flight and logs any failure instead of surfacing it to the request
    that scheduled the work.
    """

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> Optional[asyncio.Task]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Called from plain sync code (scripts); the side effect is best effort
            coro.close()
            logger.warning("background_task_dropped", task=name, reason="no_running_loop")
            return None
        task = loop.create_task(coro)
        self._tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            self._tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.error(
                    "background_task_failed",
                    task=name,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )

        task.add_done_callback(_done)
        return task

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait for scheduled work; used on shutdown and by tests."""
        loop = asyncio.get_running_loop()
        tasks = [t for t in self._tasks if not t.done() and t.get_loop() is loop]
        if not tasks:
            return
        done, still_pending = await asyncio.wait(tasks, timeout=timeout)
        if still_pending:
            logger.warning("background_drain_timeout", pending=len(still_pending))
