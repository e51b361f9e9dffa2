"""
BackgroundTaskRunner - coordinated async tasks for the release engine

- run(): schedule a coroutine as a tracked background task
- run_io(): offload blocking database work to a thread (asyncio.to_thread)
- cleanup(): cancel whatever is still pending at shutdown or test teardown
"""

import asyncio
import logging
from typing import Any, Callable, Coroutine, Set

logger = logging.getLogger(__name__)


class BackgroundTaskRunner:
    """Tracks background tasks so none are orphaned on shutdown"""

    def __init__(self):
        self._active_tasks: Set[asyncio.Task] = set()

    def run(self, coro: Coroutine[Any, Any, Any], name: str = None) -> asyncio.Task:
        """
        Schedule coroutine as a background task

        Args:
            coro: Coroutine to execute
            name: Optional task name for debugging

        Returns:
            The created task
        """
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._active_tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._active_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"❌ BACKGROUND_TASK_ERROR: {task.get_name()}: {error}", exc_info=error)

    async def run_io(self, fn: Callable, *args, **kwargs) -> Any:
        """Execute blocking I/O function in a worker thread"""
        return await asyncio.to_thread(fn, *args, **kwargs)

    @property
    def active_count(self) -> int:
        return len(self._active_tasks)

    async def wait_idle(self) -> None:
        """Wait until every tracked task (including ones spawned meanwhile) finished"""
        while self._active_tasks:
            await asyncio.gather(*list(self._active_tasks), return_exceptions=True)

    async def cleanup(self) -> None:
        """Cancel any pending background tasks"""
        if not self._active_tasks:
            return

        logger.info(f"BackgroundTaskRunner: Cleaning up {len(self._active_tasks)} active tasks")
        for task in list(self._active_tasks):
            if not task.done():
                task.cancel()
        await asyncio.gather(*list(self._active_tasks), return_exceptions=True)
        self._active_tasks.clear()


_global_runner = BackgroundTaskRunner()


async def run_io_task(fn: Callable, *args, **kwargs) -> Any:
    """Execute I/O function in a worker thread using the global runner"""
    return await _global_runner.run_io(fn, *args, **kwargs)
