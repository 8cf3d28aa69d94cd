"""Fire-and-forget task helpers."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine, Optional, Set

logger = logging.getLogger(__name__)


def spawn_background(
    coro: Coroutine[Any, Any, Any],
    *,
    name: str,
    tasks: Set[asyncio.Task[Any]],
) -> Optional[asyncio.Task[Any]]:
    """Run ``coro`` without awaiting it; returns None when no loop is running."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        logger.debug("No running loop; skipping %s", name)
        coro.close()
        return None
    task = loop.create_task(coro, name=name)
    tasks.add(task)
    task.add_done_callback(lambda t: _reap(t, tasks))
    return task


def _reap(task: asyncio.Task[Any], tasks: Set[asyncio.Task[Any]]) -> None:
    tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("Background task %s failed: %s", task.get_name(), exc)


__all__ = ["spawn_background"]
