"""
In-process background job queue.

Jobs are coroutine functions run by a fixed number of worker tasks. A job
that raises is logged and dropped; nothing is persisted, so work queued at
shutdown is lost.
"""
from __future__ import annotations
import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional

logger = logging.getLogger(__name__)

Job = Callable[..., Awaitable[Any]]


class JobQueue:
    def __init__(self, name: str, workers: int = 2):
        self.name = name
        self.workers = max(1, workers)
        self._queue: Optional[asyncio.Queue] = None
        self._tasks: List[asyncio.Task] = []
        self.completed = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def start(self):
        if self._tasks:
            return
        self._queue = asyncio.Queue()
        self._tasks = [
            asyncio.create_task(self._worker(i), name=f"{self.name}-worker-{i}")
            for i in range(self.workers)
        ]

    def submit(self, fn: Job, *args, **kwargs):
        if not self._tasks:
            self.start()
        self._queue.put_nowait((fn, args, kwargs))

    async def _worker(self, index: int):
        while True:
            fn, args, kwargs = await self._queue.get()
            try:
                await fn(*args, **kwargs)
                self.completed += 1
            except asyncio.CancelledError:
                raise
            except Exception:
                self.failed += 1
                logger.exception("[%s] job %s failed", self.name, getattr(fn, "__name__", fn))
            finally:
                self._queue.task_done()

    async def join(self):
        """Wait until every submitted job has finished."""
        if self._queue is not None:
            await self._queue.join()

    async def close(self):
        """Drain outstanding jobs, then stop the workers."""
        if not self._tasks:
            return
        await self.join()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self._queue = None
