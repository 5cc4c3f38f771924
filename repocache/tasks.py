import asyncio
import logging
from typing import Awaitable, Set

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """
    Detached work that must not block the response path.

    Holds a strong reference to every task until it finishes and logs any
    failure here, so fire-and-forget writes are never silently lost.
    """

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Awaitable, name: str = "background") -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(lambda done: self._finished(done, name))
        return task

    def _finished(self, task: asyncio.Task, name: str) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning(f"⚠️ Background task '{name}' was cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(
                f"❌ Background task '{name}' failed: {error}",
                exc_info=(type(error), error, error.__traceback__),
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every outstanding task; failures are already logged."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
