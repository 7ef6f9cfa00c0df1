"""Background task group with logged failures.

Work that callers do not await (refreshing the tool catalog after a push
notification, recovering after a reload) runs through ``BackgroundTasks``.
Every task is named, kept referenced until it finishes, and any exception is
logged with that name. Nothing is silently dropped.

Usage:
    tasks = BackgroundTasks()
    tasks.spawn(refresher.refresh(), name="refresh:tools_changed")
    ...
    await tasks.cancel_all()
"""

import asyncio
import logging
from typing import Any, Awaitable, Dict, Optional

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """Owns a set of fire-and-forget asyncio tasks."""

    def __init__(self, name: str = "uloop"):
        self.name = name
        self._tasks: Dict[asyncio.Task, str] = {}
        self._failures = 0

    def __len__(self) -> int:
        return len(self._tasks)

    @property
    def failure_count(self) -> int:
        """Number of tasks that ended with an exception."""
        return self._failures

    def spawn(self, coro: Awaitable[Any], name: Optional[str] = None) -> asyncio.Task:
        """Schedule ``coro`` on the running loop and track it."""
        task_name = f"{self.name}:{name or getattr(coro, '__name__', 'task')}"
        task = asyncio.ensure_future(coro)
        task.set_name(task_name)
        self._tasks[task] = task_name
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        task_name = self._tasks.pop(task, task.get_name())
        if task.cancelled():
            logger.debug(f"Background task {task_name} cancelled")
            return
        exc = task.exception()
        if exc is not None:
            self._failures += 1
            logger.error(
                f"Background task {task_name} failed: {exc}",
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    async def join(self, timeout: Optional[float] = None) -> None:
        """Wait for all currently tracked tasks to finish."""
        pending = list(self._tasks)
        if not pending:
            return
        await asyncio.wait(pending, timeout=timeout)

    async def cancel_all(self) -> None:
        """Cancel every tracked task and wait for them to unwind."""
        pending = list(self._tasks)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


__all__ = ["BackgroundTasks"]
