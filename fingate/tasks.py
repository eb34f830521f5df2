"""
Detached background tasks.

Fire-and-forget work (last-used updates, usage logs, webhook fan-out) is
started with ``spawn`` so that a failure is always logged and reported
instead of vanishing with an unobserved task exception.
"""
import asyncio
from typing import Any, Coroutine

import structlog

from fingate.sentry_config import capture_exception

logger = structlog.get_logger()

# Strong references so the event loop does not garbage-collect running tasks
_background_tasks: set[asyncio.Task] = set()


def spawn(coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task:
    """
    Run ``coro`` without awaiting it.

    The caller never sees the task's outcome. Exceptions are logged and
    sent to Sentry, then dropped.
    """
    task = asyncio.create_task(coro, name=name)
    _background_tasks.add(task)
    task.add_done_callback(_on_task_done)
    return task


def _on_task_done(task: asyncio.Task) -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        logger.warning("background_task_cancelled", task=task.get_name())
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "background_task_failed",
            task=task.get_name(),
            error=str(exc),
            exc_info=exc,
        )
        capture_exception(exc)


def pending() -> int:
    """Number of detached tasks still running."""
    return len(_background_tasks)


async def drain() -> None:
    """
    Wait until every detached task has finished.

    Tasks may spawn further tasks (trigger -> deliver), so keep waiting
    until the set stays empty.
    """
    while _background_tasks:
        await asyncio.gather(*list(_background_tasks), return_exceptions=True)
