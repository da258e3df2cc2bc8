import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List

logger = logging.getLogger(__name__)


class TaskScheduler:
    """
    Named, cancellable delayed tasks on the running event loop.

    Scheduling a name that is already pending replaces the old task.
    Cancelling the task that is currently running only unregisters it,
    the same way clearing an already-fired timer is a no-op.
    """

    def __init__(self):
        self._tasks: Dict[str, asyncio.Task] = {}

    def schedule(
        self,
        name: str,
        delay: float,
        callback: Callable[..., Awaitable[Any]],
        *args,
    ) -> asyncio.Task:
        self.cancel(name)
        loop = asyncio.get_running_loop()
        task = loop.create_task(self._run(name, delay, callback, args), name=name)
        self._tasks[name] = task
        task.add_done_callback(lambda t: self._forget(name, t))
        return task

    async def _run(self, name: str, delay: float, callback, args):
        if delay > 0:
            await asyncio.sleep(delay)
        try:
            await callback(*args)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(f"Scheduled task {name} failed")

    def _forget(self, name: str, task: asyncio.Task):
        if self._tasks.get(name) is task:
            del self._tasks[name]

    def cancel(self, name: str) -> bool:
        task = self._tasks.pop(name, None)
        if task is None or task.done():
            return False
        if task is asyncio.current_task():
            return False
        task.cancel()
        return True

    def cancel_prefix(self, prefix: str) -> int:
        return sum(1 for name in self.pending(prefix) if self.cancel(name))

    def pending(self, prefix: str = "") -> List[str]:
        return [
            name
            for name, task in self._tasks.items()
            if name.startswith(prefix) and not task.done()
        ]

    async def shutdown(self):
        """Cancel everything still pending and wait for it to unwind."""
        tasks = [t for t in self._tasks.values() if t is not asyncio.current_task()]
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
