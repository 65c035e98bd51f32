"""Registry of in-flight sync tasks.

Background asyncio tasks must stay referenced until they finish or the event
loop may garbage-collect them mid-run. The registry holds each task under a
key (a sync run id, or a derived key for software follow-ups), drops it when
the task completes, and lets shutdown wait for whatever is still running.

One registry is created per application (see app.main lifespan) and handed
to the orchestrator; nothing here is module-global.
"""
import asyncio
import logging
from typing import Any, Coroutine, Dict, List, Optional

from app.core import metrics

logger = logging.getLogger(__name__)


class SyncTaskRegistry:
    """Keyed set of running asyncio tasks with explicit lifecycle."""

    def __init__(self):
        self._tasks: Dict[str, asyncio.Task] = {}

    def register(self, key: str, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        """
        Start a coroutine as a task held under key until it finishes.

        Raises:
            ValueError: If a task is already running under the key
        """
        existing = self._tasks.get(key)
        if existing is not None and not existing.done():
            coro.close()
            raise ValueError(f"A task is already registered under {key}")

        task = asyncio.create_task(coro, name=f"sync:{key}")
        self._tasks[key] = task
        task.add_done_callback(lambda t, k=key: self._on_done(k, t))
        self._update_gauge()
        return task

    def _on_done(self, key: str, task: asyncio.Task) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]
        self._update_gauge()
        if task.cancelled():
            logger.warning(f"Background task {key} was cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background task {key} failed: {error}")

    def _update_gauge(self) -> None:
        metrics.sync_active_runs.set(len(self._tasks))

    def get(self, key: str) -> Optional[asyncio.Task]:
        return self._tasks.get(key)

    def is_active(self, key: str) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    def active_keys(self) -> List[str]:
        return [key for key, task in self._tasks.items() if not task.done()]

    async def drain(self, timeout: float = 30.0) -> int:
        """
        Wait for running tasks on shutdown; cancel whatever outlives the timeout.

        Returns:
            Number of tasks cancelled
        """
        tasks = [t for t in self._tasks.values() if not t.done()]
        if not tasks:
            return 0
        logger.info(f"Waiting for {len(tasks)} sync task(s) to finish")
        _, still_running = await asyncio.wait(tasks, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.warning(f"Cancelled {len(still_running)} sync task(s) at shutdown")
        return len(still_running)
