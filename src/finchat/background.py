from __future__ import annotations

import asyncio
import functools
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Awaitable, Callable, Set, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BackgroundRunner:
    """Runs collaborator calls off the event loop and logs their failures.

    Blocking store calls share one worker thread, so they are applied in the
    order they were submitted. Tasks started through :meth:`spawn` are
    fire-and-forget: an exception is logged once and never retried.
    """

    def __init__(self, *, max_workers: int = 1) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="finchat-store")
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    async def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(func, *args, **kwargs))

    def spawn(self, coro: Awaitable[Any], *, description: str) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        task.set_name(description)
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    def submit(self, description: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> asyncio.Task:
        return self.spawn(self.call(func, *args, **kwargs), description=description)

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("background task %s failed", task.get_name(), exc_info=exc)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait until every task spawned so far, and any they spawn, is done."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.drain()
        self._executor.shutdown(wait=True)
