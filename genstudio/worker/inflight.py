"""
In-flight operation registry.

One shared asyncio task per key. A second caller for a key that is already
running awaits the first caller's result instead of starting new work. The
entry is cleared as soon as the work settles, success or failure.
"""
import asyncio
import threading
from typing import Awaitable, Callable, Dict, List, TypeVar

T = TypeVar("T")


class InFlightRegistry:
    def __init__(self, name: str = "inflight"):
        self.name = name
        self._lock = threading.Lock()
        self._tasks: Dict[str, asyncio.Task] = {}

    async def run(self, key: str, factory: Callable[[], Awaitable[T]]) -> T:
        """Run ``factory()`` once per key; concurrent callers share the result."""
        with self._lock:
            task = self._tasks.get(key)
            if task is None:
                task = asyncio.ensure_future(factory())
                self._tasks[key] = task
                task.add_done_callback(lambda done, key=key: self._discard(key, done))

        # A cancelled waiter must not cancel the shared work
        return await asyncio.shield(task)

    def _discard(self, key: str, task: asyncio.Task) -> None:
        with self._lock:
            if self._tasks.get(key) is task:
                del self._tasks[key]
        if not task.cancelled():
            # Mark the exception retrieved; waiters already received it
            task.exception()

    async def drain(self) -> None:
        """Wait for every unit still running to settle."""
        with self._lock:
            tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def is_running(self, key: str) -> bool:
        with self._lock:
            return key in self._tasks

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._tasks)

    def __len__(self) -> int:
        with self._lock:
            return len(self._tasks)
