"""
Background task tracking

Every fire-and-forget operation (config persistence, best-effort daemon
calls, auto-start sequences) is spawned through ``BackgroundTasks`` so that:
- failures are logged instead of vanishing with the task
- callers get a task handle back
- tests and shutdown code can await completion with ``drain()``
"""

import asyncio
import logging
from typing import Any, Coroutine, Optional, Set

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """Tracks spawned asyncio tasks until they finish"""

    def __init__(self, name: str = "craftstudio"):
        self.name = name
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any], name: Optional[str] = None) -> asyncio.Task:
        """
        Schedule a coroutine on the running loop

        Args:
            coro: Coroutine to run
            name: Task name used in failure logs

        Returns:
            The created task
        """
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                f"Background task {task.get_name()} failed: {exc}",
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """
        Wait until no tracked task is pending

        Tasks spawned while draining are awaited too. Task failures are
        already logged by the done callback and are not re-raised here.
        """

        async def _drain() -> None:
            while self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)

        if timeout is None:
            await _drain()
        else:
            await asyncio.wait_for(_drain(), timeout=timeout)

    async def cancel_all(self) -> None:
        """Cancel every pending task and wait for them to settle"""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
