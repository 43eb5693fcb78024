"""Bounded worker pool for asynchronous dispatch. Admission never blocks."""

import asyncio
import logging
from typing import Awaitable, Callable

from eventbroker.errors import (
    ConfigurationError,
    PoolStoppedError,
    QueueFullError,
    StopTimeoutError,
)
from eventbroker.models import Event

logger = logging.getLogger(__name__)

Processor = Callable[[Event], Awaitable[None]]


class WorkerPool:
    """N asyncio workers sharing one bounded queue."""

    def __init__(self, worker_count: int, buffer_size: int, processor: Processor) -> None:
        if worker_count < 1:
            raise ConfigurationError("worker_count must be >= 1")
        if buffer_size < 1:
            raise ConfigurationError("buffer_size must be >= 1")
        self._worker_count = worker_count
        self._buffer_size = buffer_size
        self._processor = processor
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=buffer_size)
        self._workers: list[asyncio.Task[None]] = []
        self._active = 0
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Spawn workers. Must be called from a running event loop. No-op if running."""
        if self._running:
            return
        self._running = True
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"eventbroker-worker-{i}")
            for i in range(self._worker_count)
        ]
        logger.info("Worker pool started with %d workers", self._worker_count)

    def submit(self, event: Event) -> None:
        """Queue an event or fail fast. Never suspends the caller."""
        if not self._running:
            raise PoolStoppedError("worker pool is stopped")
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            raise QueueFullError("event queue is full") from None

    async def stop(self, timeout: float | None = 30.0) -> None:
        """Stop admission and drain the queue within timeout.

        Raises StopTimeoutError if work is still running at the deadline;
        remaining workers are cancelled and their events are lost.
        """
        if not self._running:
            return
        self._running = False
        try:
            await asyncio.wait_for(self._queue.join(), timeout)
        except asyncio.TimeoutError:
            logger.warning("Worker pool stop timed out, some events may be lost")
            await self._cancel_workers()
            raise StopTimeoutError(
                f"worker pool did not drain within {timeout}s"
            ) from None
        await self._cancel_workers()
        logger.info("Worker pool stopped gracefully")

    async def _cancel_workers(self) -> None:
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

    async def _worker(self, worker_id: int) -> None:
        logger.debug("Worker %d started", worker_id)
        while True:
            event = await self._queue.get()
            self._active += 1
            try:
                await self._processor(event)
            except Exception as e:
                logger.exception(
                    "Worker %d failed to process event %s: %s", worker_id, event.id, e
                )
            finally:
                self._active -= 1
                self._queue.task_done()

    def queue_size(self) -> int:
        return self._queue.qsize()

    def active_workers(self) -> int:
        return self._active
