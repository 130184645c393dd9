"""
Concurrency helpers for the cooperative event loop.

CoalescingTask keeps at most one run of a job in flight; requests that arrive
while it runs collapse into one more run afterwards.
SingleFlight shares one in-progress execution per key between all callers.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Hashable, Optional

logger = logging.getLogger("progress_core.flight")


class CoalescingTask:
    """At-most-one-in-flight background job"""

    def __init__(self, name: str, job: Callable[[], Awaitable[None]]):
        self.name = name
        self._job = job
        self._task: Optional[asyncio.Task] = None
        self._pending = False
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def request(self) -> asyncio.Task:
        """Start the job, or mark one more run if it is already in flight"""
        if self.running:
            self._pending = True
            return self._task

        self._pending = False
        self._task = asyncio.get_running_loop().create_task(self._loop(), name=self.name)
        return self._task

    async def _loop(self) -> None:
        while True:
            self._pending = False
            self.runs += 1
            try:
                await self._job()
            except Exception as e:
                logger.error(f"Background job {self.name} failed: {e}")
            if not self._pending:
                break

    async def wait(self) -> None:
        """Wait until no run is in flight"""
        while self.running:
            task = self._task
            try:
                await asyncio.shield(task)
            except asyncio.CancelledError:
                if not task.cancelled():
                    raise

    def cancel(self) -> None:
        if self.running:
            self._task.cancel()
        self._pending = False


class SingleFlight:
    """Share one execution per key between overlapping callers"""

    def __init__(self):
        self._flights: Dict[Hashable, asyncio.Task] = {}

    def in_flight(self, key: Hashable) -> bool:
        return key in self._flights

    async def run(self, key: Hashable, factory: Callable[[], Awaitable[Any]]) -> Any:
        """
        Run `factory()` for `key` unless a run for it is already in progress.

        Every caller receives the same result (or the same exception).
        """
        task = self._flights.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._flights[key] = task
            task.add_done_callback(lambda done, key=key: self._forget(key, done))
        return await asyncio.shield(task)

    def _forget(self, key: Hashable, task: asyncio.Task) -> None:
        if self._flights.get(key) is task:
            del self._flights[key]
