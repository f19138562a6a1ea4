"""Detached fire-and-forget tasks whose failures only reach the log."""
import asyncio
from typing import Any, Coroutine, Optional, Set

from loguru import logger


class BackgroundTasks:
    """Registry of detached tasks, owned by the runtime and shared by the services."""

    def __init__(self) -> None:
        self._pending: Set["asyncio.Task[Any]"] = set()

    def __len__(self) -> int:
        return len(self._pending)

    def _report(self, task: "asyncio.Task[Any]", description: str) -> None:
        self._pending.discard(task)
        if task.cancelled():
            logger.debug("Background task cancelled: {}", description)
            return
        error = task.exception()
        if error is not None:
            logger.opt(exception=error).warning("Background task failed: {}", description)

    def spawn(self, coro: Coroutine[Any, Any, Any], description: str) -> Optional["asyncio.Task[Any]"]:
        """
        Schedule ``coro`` on the running loop without awaiting it.

        The caller never sees the outcome; exceptions are logged and dropped.
        Without a running loop the coroutine is closed unstarted and None is
        returned.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; skipped {}", description)
            coro.close()
            return None
        task = loop.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(lambda t: self._report(t, description))
        return task

    async def drain(self, timeout: float = 30.0) -> None:
        """Wait for outstanding detached tasks (shutdown and tests)."""
        while self._pending:
            tasks = list(self._pending)
            done, not_done = await asyncio.wait(tasks, timeout=timeout)
            for task in done:
                self._pending.discard(task)
            if not_done:
                logger.warning("{} background task(s) still running after {}s; cancelling", len(not_done), timeout)
                for task in not_done:
                    task.cancel()
                # let the cancelled tasks run their handlers before the loop goes away
                await asyncio.wait(not_done)
                for task in not_done:
                    self._pending.discard(task)
                break
