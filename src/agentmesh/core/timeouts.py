"""Non-cancelling timeout helper shared by node and tool execution.

On expiry the caller stops waiting and receives ``asyncio.TimeoutError``,
but the underlying awaitable keeps running in the background. This mirrors
how a timed-out LLM or tool call behaves when the provider cannot be
interrupted.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import Any, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Strong references to abandoned tasks so they are not garbage collected
# mid-flight.
_detached: set[asyncio.Task[Any]] = set()


async def wait_with_timeout(awaitable: Awaitable[T], timeout: float | None) -> T:
    """Await ``awaitable``, giving up after ``timeout`` seconds.

    Args:
        awaitable: Coroutine or future to wait on.
        timeout: Seconds to wait. ``None`` or ``<= 0`` waits indefinitely.

    Returns:
        The awaitable's result.

    Raises:
        asyncio.TimeoutError: If the timeout elapses first. The awaitable is
            left running.
    """
    if timeout is None or timeout <= 0:
        return await awaitable

    task = asyncio.ensure_future(awaitable)
    done, _ = await asyncio.wait({task}, timeout=timeout)
    if task in done:
        return task.result()

    _detached.add(task)
    task.add_done_callback(_on_detached_done)
    logger.debug("wait_abandoned", timeout=timeout)
    raise asyncio.TimeoutError()


def _on_detached_done(task: asyncio.Task[Any]) -> None:
    _detached.discard(task)
    if not task.cancelled() and task.exception() is not None:
        logger.debug("detached_task_failed", error=str(task.exception()))
