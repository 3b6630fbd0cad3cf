"""Task tracking for controllers.

Controllers start their loops as tracked background tasks so the manager can
cancel them on shutdown, and may start short lived tasks that callers wait
on with `block_till_done`.
"""

import asyncio
from collections.abc import Coroutine, Generator
import contextlib
import contextvars
from functools import partial
import logging
from typing import Any

__all__ = [
    "TaskService",
    "get_task_service",
    "task_service_context",
]

_LOGGER = logging.getLogger(__name__)


class TaskService:
    """Tracks asyncio tasks so they can be awaited or cancelled together."""

    def __init__(self) -> None:
        """Initialize the task service."""
        self._active_tasks: set[asyncio.Task[Any]] = set()
        self._background_tasks: set[asyncio.Task[Any]] = set()

    def create_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create a task that block_till_done waits for."""
        task = asyncio.create_task(coro, name=name)
        self._active_tasks.add(task)
        task.add_done_callback(partial(self._task_done, self._active_tasks))
        return task

    def create_background_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create a long running task that is only stopped by cancellation."""
        task = asyncio.create_task(coro, name=name)
        self._background_tasks.add(task)
        task.add_done_callback(partial(self._task_done, self._background_tasks))
        return task

    def _task_done(
        self, task_set: set[asyncio.Task[Any]], task: asyncio.Task[Any]
    ) -> None:
        task_set.discard(task)
        if task.cancelled():
            return
        if (err := task.exception()) is not None:
            _LOGGER.error("Task %s failed: %s", task.get_name(), err, exc_info=err)

    async def block_till_done(self) -> None:
        """Wait for all active non-background tasks to complete."""
        active_tasks = list(self._active_tasks)
        if not active_tasks:
            await asyncio.sleep(0)
            return
        _LOGGER.debug("Waiting for %d tasks to complete", len(active_tasks))
        await asyncio.gather(*active_tasks, return_exceptions=True)

    async def cancel_background_tasks(self) -> None:
        """Cancel all background tasks and wait for them to finish."""
        tasks = list(self._background_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            _LOGGER.debug("Cancelling %d background tasks", len(tasks))
            await asyncio.gather(*tasks, return_exceptions=True)

    def get_num_active_tasks(self) -> int:
        """Get the number of active non-background tasks."""
        return len(self._active_tasks)


_task_service_ctx: contextvars.ContextVar[TaskService | None] = contextvars.ContextVar(
    "_task_service_ctx", default=None
)


def get_task_service() -> TaskService:
    """Get the task service for the current context, creating one if needed."""
    instance = _task_service_ctx.get()
    if instance is None:
        instance = TaskService()
        _task_service_ctx.set(instance)
    return instance


@contextlib.contextmanager
def task_service_context(
    service: TaskService | None = None,
) -> Generator[TaskService, None, None]:
    """Use a task service for the duration of the context."""
    service = service or TaskService()
    token = _task_service_ctx.set(service)
    try:
        yield service
    finally:
        _task_service_ctx.reset(token)
