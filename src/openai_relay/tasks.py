"""Fire-and-forget background work.

The event loop only keeps weak references to tasks, so we hold the strong ones
here until each finishes. ``drain()`` waits for everything in flight; shutdown
uses it, and so do tests that need a usage record to have landed. ``cancel()``
gives up on whatever is left.
"""

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger(__name__)


class BackgroundWork:
    """Tasks that run alongside requests without anyone awaiting them."""

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str | None = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Background task {task.get_name()} failed: {exc!r}")

    async def drain(self, timeout: float | None = None) -> None:
        """Wait until nothing is in flight, including tasks spawned meanwhile."""
        async with asyncio.timeout(timeout):
            while self._tasks:
                await asyncio.gather(*self._tasks, return_exceptions=True)

    async def cancel(self) -> int:
        """Cancel whatever is still in flight and wait for it to unwind."""
        pending = list(self._tasks)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        return len(pending)
