"""
Admission control and task tracking for detached workflows.

AdmissionController bounds how many provisioning workflows run at once.
It is a gate, not a queue: a request that finds no free slot is refused
immediately so the caller can retry later.

TaskRegistry owns every detached workflow task so shutdown can wait for
(or cancel) them instead of leaving unobserved background work.
"""

import asyncio
import logging
import threading
from typing import Coroutine, Optional

logger = logging.getLogger("admission")


class AdmissionController:
    """Counting gate keyed by in-flight workflow identity."""

    def __init__(self, limit: int):
        self.limit = limit
        self._active: set[str] = set()
        self._lock = threading.Lock()

    def try_acquire(self, key: str) -> bool:
        """Take a slot for `key`. Non-blocking; False when the ceiling is reached."""
        with self._lock:
            if key in self._active:
                return True
            if len(self._active) >= self.limit:
                return False
            self._active.add(key)
            return True

    def release(self, key: str) -> None:
        with self._lock:
            self._active.discard(key)

    def active_count(self) -> int:
        with self._lock:
            return len(self._active)

    def holds(self, key: str) -> bool:
        with self._lock:
            return key in self._active


class TaskRegistry:
    """Joinable registry of named asyncio tasks."""

    def __init__(self):
        self._tasks: dict[str, asyncio.Task] = {}

    def spawn(self, key: str, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro, name=key)
        self._tasks[key] = task
        task.add_done_callback(lambda t: self._forget(key, t))
        return task

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Task {key} crashed: {task.exception()!r}")

    def is_running(self, key: str) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    def active_keys(self) -> list[str]:
        return [k for k, t in self._tasks.items() if not t.done()]

    async def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait for every tracked task, including ones spawned meanwhile. True if all finished."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            pending = [t for t in self._tasks.values() if not t.done()]
            if not pending:
                return True
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                return False
            await asyncio.wait(pending, timeout=remaining)

    async def shutdown(self, timeout: float) -> None:
        """Drain within `timeout`, then cancel whatever is still running."""
        if await self.wait(timeout):
            return
        leftovers = [t for t in self._tasks.values() if not t.done()]
        logger.warning(f"Cancelling {len(leftovers)} workflow(s) still running at shutdown")
        for task in leftovers:
            task.cancel()
        await asyncio.gather(*leftovers, return_exceptions=True)
