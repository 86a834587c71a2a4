"""
groupcrypt - Bounded background task queue.

Best-effort work (opportunistic re-wrapping of group keys) is handed to a
fixed pool of worker tasks through a bounded asyncio.Queue. Failures never
reach the caller that submitted the job: they are logged and published on a
separate error channel that observers can drain.
"""

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional

from .constants import BACKGROUND_ERROR_CHANNEL_SIZE, BACKGROUND_QUEUE_SIZE, BACKGROUND_WORKERS

logger = logging.getLogger(__name__)

JobFactory = Callable[[], Awaitable[Any]]


@dataclass
class BackgroundJob:
    name: str
    factory: JobFactory
    submitted_at: float = field(default_factory=time.time)


@dataclass
class BackgroundFailure:
    """A background job that raised."""

    name: str
    error: BaseException
    timestamp: float = field(default_factory=time.time)


class BackgroundTaskQueue:
    """
    Fixed-size worker pool fed by a bounded queue.

    ``submit`` never blocks and never raises for a full queue; it returns
    False and the job is dropped. Workers are started lazily on the first
    submit, so the queue can be constructed outside a running loop.
    """

    def __init__(
        self,
        workers: int = BACKGROUND_WORKERS,
        max_size: int = BACKGROUND_QUEUE_SIZE,
        error_channel_size: int = BACKGROUND_ERROR_CHANNEL_SIZE,
    ):
        self.worker_count = max(1, workers)
        self.max_size = max_size
        self.error_channel_size = error_channel_size
        self._queue: Optional[asyncio.Queue] = None
        self._errors: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []
        self._closed = False
        self.completed = 0
        self.failed = 0
        self.dropped = 0

    @property
    def running(self) -> bool:
        return bool(self._workers) and not self._closed

    def _ensure_started(self) -> None:
        if self._workers:
            return
        self._queue = asyncio.Queue(maxsize=self.max_size)
        self._errors = asyncio.Queue(maxsize=self.error_channel_size)
        for index in range(self.worker_count):
            task = asyncio.create_task(self._worker(), name=f"groupcrypt-background-{index}")
            self._workers.append(task)
        logger.debug(f"Started {self.worker_count} background workers")

    def submit(self, name: str, factory: JobFactory) -> bool:
        """Queue ``factory()`` to run in the background. Returns False if dropped."""
        if self._closed:
            logger.debug(f"Background queue closed, dropping job {name}")
            self.dropped += 1
            return False
        self._ensure_started()
        try:
            self._queue.put_nowait(BackgroundJob(name, factory))
        except asyncio.QueueFull:
            logger.warning(f"Background queue full ({self.max_size}), dropping job {name}")
            self.dropped += 1
            return False
        return True

    async def _worker(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                await job.factory()
                self.completed += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.failed += 1
                logger.warning(f"Background job {job.name} failed: {e}")
                self._publish_failure(BackgroundFailure(job.name, e))
            finally:
                self._queue.task_done()

    def _publish_failure(self, failure: BackgroundFailure) -> None:
        if self._errors.full():
            # Keep the most recent failures
            with contextlib.suppress(asyncio.QueueEmpty):
                self._errors.get_nowait()
        self._errors.put_nowait(failure)

    def drain_errors(self) -> List[BackgroundFailure]:
        """Return and clear all failures published so far."""
        failures: List[BackgroundFailure] = []
        if self._errors is None:
            return failures
        while not self._errors.empty():
            failures.append(self._errors.get_nowait())
        return failures

    async def next_error(self, timeout: Optional[float] = None) -> BackgroundFailure:
        """
        Wait for the next published failure.

        After ``stop`` only failures already published are returned; with
        none left this raises RuntimeError instead of restarting workers.
        """
        if self._closed:
            if self._errors is not None and not self._errors.empty():
                return self._errors.get_nowait()
            raise RuntimeError("Background queue is stopped")
        self._ensure_started()
        return await asyncio.wait_for(self._errors.get(), timeout=timeout)

    async def join(self) -> None:
        """Wait until every queued job has finished."""
        if self._queue is not None:
            await self._queue.join()

    async def stop(self) -> None:
        """Cancel the workers. Jobs still queued are discarded."""
        self._closed = True
        for task in self._workers:
            task.cancel()
        for task in self._workers:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._workers.clear()
        logger.debug("Background workers stopped")
