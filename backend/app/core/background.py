import asyncio
from typing import Coroutine

from loguru import logger


class BackgroundRunner:
    """
    Fire-and-forget tasks that must outlive the request that scheduled them.
    Failures are observed by logging only; nothing awaits the result.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def spawn(self, coro: Coroutine, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("[background] {} cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error("[background] {} failed: {}", task.get_name(), exc)

    async def drain(self, timeout: float = 10.0) -> None:
        if not self._tasks:
            return
        logger.info("[background] waiting for {} pending task(s)", len(self._tasks))
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        # Tasks may schedule follow-up tasks while we wait
        while self._tasks and loop.time() < deadline:
            await asyncio.wait(set(self._tasks), timeout=deadline - loop.time())
        for task in set(self._tasks):
            logger.warning("[background] {} still running at shutdown, cancelling", task.get_name())
            task.cancel()
