"""
Cancellable periodic tasks and keyed single-flight leases.

The directory sync scheduler and the SSO state garbage collector run on top
of TaskScheduler so tests can substitute a fake clock.
"""

import asyncio
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Awaitable, Callable, Hashable, Iterator, Optional

import structlog


logger = structlog.get_logger(__name__)

TaskCallback = Callable[[], Awaitable[None]]


class LeaseUnavailableError(Exception):
    """Raised when a lease is already held by someone else."""

    def __init__(self, key: Hashable):
        self.key = key
        super().__init__(f"Lease already held: {key}")


class KeyedLeases:
    """
    One lease per key; a second acquirer is refused instead of queued.

    Acquisition never awaits, so it is atomic under cooperative scheduling.
    """

    def __init__(self):
        self._held: set = set()

    def try_acquire(self, key: Hashable) -> bool:
        if key in self._held:
            return False
        self._held.add(key)
        return True

    def release(self, key: Hashable) -> None:
        self._held.discard(key)

    def is_held(self, key: Hashable) -> bool:
        return key in self._held

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        """Hold the lease for the duration of the block or raise LeaseUnavailableError."""
        if not self.try_acquire(key):
            raise LeaseUnavailableError(key)
        try:
            yield
        finally:
            self.release(key)


class ScheduledTask(ABC):
    """Handle to a periodic task."""

    @abstractmethod
    def cancel(self) -> None:
        """Stop future runs. A run already in progress is not interrupted."""

    @property
    @abstractmethod
    def cancelled(self) -> bool:
        ...


class TaskScheduler(ABC):
    """Runs callbacks on a fixed interval."""

    @abstractmethod
    def call_every(
        self,
        interval_seconds: float,
        callback: TaskCallback,
        name: str,
        initial_delay: Optional[float] = None,
    ) -> ScheduledTask:
        """Arm a periodic callback. The first run happens after initial_delay (default: one interval)."""

    @abstractmethod
    async def shutdown(self) -> None:
        """Cancel every task armed through this scheduler."""


class _AsyncioScheduledTask(ScheduledTask):
    def __init__(self, name: str):
        self.name = name
        self.loop_task: Optional[asyncio.Task] = None
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True
        if self.loop_task is not None:
            self.loop_task.cancel()

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class AsyncioTaskScheduler(TaskScheduler):
    """
    asyncio implementation.

    Each tick starts the callback as its own task, so a slow run does not
    delay the cadence; overlapping runs are the callback's concern.
    """

    def __init__(self):
        self._tasks: set[_AsyncioScheduledTask] = set()
        self._runs: set[asyncio.Task] = set()

    def call_every(
        self,
        interval_seconds: float,
        callback: TaskCallback,
        name: str,
        initial_delay: Optional[float] = None,
    ) -> ScheduledTask:
        handle = _AsyncioScheduledTask(name)
        handle.loop_task = asyncio.create_task(
            self._loop(handle, interval_seconds, callback, initial_delay),
            name=f"periodic:{name}",
        )
        self._tasks.add(handle)
        handle.loop_task.add_done_callback(lambda _: self._tasks.discard(handle))
        return handle

    async def _loop(
        self,
        handle: _AsyncioScheduledTask,
        interval_seconds: float,
        callback: TaskCallback,
        initial_delay: Optional[float],
    ) -> None:
        await asyncio.sleep(interval_seconds if initial_delay is None else initial_delay)
        while not handle.cancelled:
            run = asyncio.create_task(self._run(handle.name, callback), name=f"run:{handle.name}")
            self._runs.add(run)
            run.add_done_callback(self._runs.discard)
            await asyncio.sleep(interval_seconds)

    @staticmethod
    async def _run(name: str, callback: TaskCallback) -> None:
        try:
            await callback()
        except Exception as e:
            logger.error("Scheduled task failed", task=name, error=str(e), exc_info=e)

    async def shutdown(self) -> None:
        for handle in list(self._tasks):
            handle.cancel()
        pending = [handle.loop_task for handle in self._tasks if handle.loop_task] + list(self._runs)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()
        self._runs.clear()
