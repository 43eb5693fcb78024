"""Broker: validates, persists via the provider, routes to handlers with retry."""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel

from eventbroker.errors import (
    AlreadyRunningError,
    ConfigurationError,
    HandlerError,
    NotRunningError,
    QueueFullError,
    StopTimeoutError,
)
from eventbroker.handlers import EventHandler
from eventbroker.metrics import (
    MetricsSink,
    record_event_processed,
    record_event_published,
    update_queue_size,
)
from eventbroker.models import Event, EventStatus
from eventbroker.providers.base import Provider, ProviderStats
from eventbroker.subscriptions import SubscriptionID, SubscriptionManager
from eventbroker.worker_pool import WorkerPool

logger = logging.getLogger(__name__)


class ProcessingMode(str, Enum):
    SYNC = "sync"
    ASYNC = "async"


@dataclass
class RetryPolicy:
    """Per-handler retry budget with capped exponential backoff. Delays in seconds."""

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_factor: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        delay = self.initial_delay * (self.backoff_factor ** (attempt - 1))
        return min(delay, self.max_delay)


class BrokerStats(BaseModel):
    instance_id: str
    mode: ProcessingMode
    is_running: bool
    total_published: int = 0
    total_processed: int = 0
    total_failed: int = 0
    active_subscribers: int = 0
    queue_size: int = 0
    active_workers: int = 0
    provider_stats: ProviderStats | None = None


class Broker:
    """Facade over a provider, the subscription table and the worker pool.

    Sync mode runs every handler in the publishing task and raises
    HandlerError when one ultimately fails. Async mode returns once the
    event is admitted to the pool; outcomes are visible through the
    provider status and stats().
    """

    def __init__(
        self,
        provider: Provider,
        *,
        instance_id: str,
        mode: ProcessingMode | str = ProcessingMode.ASYNC,
        worker_count: int = 10,
        buffer_size: int = 1000,
        retry_policy: RetryPolicy | None = None,
        metrics: MetricsSink | None = None,
    ) -> None:
        if provider is None:
            raise ConfigurationError("provider is required")
        if not instance_id:
            raise ConfigurationError("instance ID is required")
        try:
            mode = ProcessingMode(mode)
        except ValueError:
            raise ConfigurationError(f"unknown processing mode: {mode}") from None
        self._provider = provider
        self._instance_id = instance_id
        self._mode = mode
        self._retry_policy = retry_policy or RetryPolicy()
        self._metrics = metrics
        self._subscriptions = SubscriptionManager()
        self._pool: WorkerPool | None = None
        if mode is ProcessingMode.ASYNC:
            self._pool = WorkerPool(worker_count, buffer_size, self._process_queued)
        self._running = False
        self._stopped = False
        self._published = 0
        self._processed = 0
        self._failed = 0

    @property
    def instance_id(self) -> str:
        return self._instance_id

    @property
    def mode(self) -> ProcessingMode:
        return self._mode

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def provider(self) -> Provider:
        return self._provider

    # --- lifecycle ---

    async def start(self) -> None:
        if self._running:
            raise AlreadyRunningError("broker already running")
        if self._stopped:
            raise NotRunningError("broker has been stopped and cannot be restarted")
        self._running = True
        if self._pool is not None:
            self._pool.start()
        logger.info(
            "Event broker started (mode: %s, instance: %s)",
            self._mode.value,
            self._instance_id,
        )

    async def stop(self, timeout: float | None = 30.0) -> None:
        """Stop admission, drain queued work within timeout, close the provider.

        Idempotent. A drain timeout is re-raised after the provider is closed.
        """
        if self._stopped:
            return
        self._stopped = True
        self._running = False
        logger.info("Stopping event broker...")

        stop_error: Exception | None = None
        if self._pool is not None:
            try:
                await self._pool.stop(timeout)
            except StopTimeoutError as e:
                logger.error("Error stopping worker pool: %s", e)
                stop_error = e

        self._subscriptions.clear()
        try:
            await self._provider.close()
        except Exception as e:
            logger.error("Error closing provider: %s", e)
            if stop_error is None:
                stop_error = e

        logger.info("Event broker stopped")
        if stop_error is not None:
            raise stop_error

    # --- publishing ---

    async def publish(self, event: Event) -> None:
        if self._mode is ProcessingMode.SYNC:
            await self.publish_sync(event)
        else:
            await self.publish_async(event)

    async def _admit(self, event: Event) -> None:
        if not self._running:
            raise NotRunningError("broker is not running")
        event.validate()
        await self._provider.publish(event)
        self._published += 1
        record_event_published(self._metrics, event)

    async def publish_sync(self, event: Event) -> None:
        """Publish and run all matching handlers in this task.

        Raises HandlerError if any handler still failed after its retries.
        """
        await self._admit(event)
        try:
            await self.process_event(event)
        except HandlerError as e:
            logger.error("Failed to process event %s: %s", event.id, e)
            self._failed += 1
            raise
        self._processed += 1

    async def publish_async(self, event: Event) -> None:
        """Publish and queue for the worker pool. Returns on admission.

        The event is stored before queueing; if the queue is full it is marked
        failed in the provider and QueueFullError is raised.
        """
        await self._admit(event)
        if self._pool is not None:
            update_queue_size(self._metrics, self._pool.queue_size())
            try:
                self._pool.submit(event.clone())
            except QueueFullError as e:
                event.mark_failed(e.message)
                await self._persist_status(event, EventStatus.FAILED, event.error)
                self._failed += 1
                raise
            return
        await self._process_queued(event)

    async def _process_queued(self, event: Event) -> None:
        try:
            await self.process_event(event)
        except HandlerError:
            self._failed += 1
        else:
            self._processed += 1

    # --- dispatch ---

    async def process_event(self, event: Event) -> None:
        """Run every matching handler with its own retry budget.

        A failing handler does not stop the others. The event ends completed,
        or failed with the last failing handler's last error message.
        """
        started = time.monotonic()
        handlers = self._subscriptions.get_matching(event.type)
        if not handlers:
            logger.debug("No handlers for event type: %s", event.type)
            return

        logger.debug("Processing event %s with %d handler(s)", event.id, len(handlers))
        event.mark_processing()
        await self._persist_status(event, EventStatus.PROCESSING)

        last_error: HandlerError | None = None
        for i, handler in enumerate(handlers, start=1):
            try:
                await self._execute_with_retry(handler, event)
            except HandlerError as e:
                logger.error("Handler %d failed for event %s: %s", i, event.id, e)
                last_error = e

        if last_error is not None:
            event.mark_failed(last_error.message)
            await self._persist_status(event, EventStatus.FAILED, event.error)
            record_event_processed(self._metrics, event, time.monotonic() - started)
            raise last_error

        event.mark_completed()
        await self._persist_status(event, EventStatus.COMPLETED)
        record_event_processed(self._metrics, event, time.monotonic() - started)

    async def _persist_status(
        self, event: Event, status: EventStatus, error: str = ""
    ) -> None:
        try:
            await self._provider.update_status(event.id, status, error)
        except Exception as e:
            logger.warning("Failed to update event status for %s: %s", event.id, e)

    async def _execute_with_retry(self, handler: EventHandler, event: Event) -> None:
        """Call handler up to 1 + max_retries times on its own copy of the event.

        Backoff sleeps are cancelable; cancellation propagates as-is.
        """
        policy = self._retry_policy
        attempt_event = event.clone()
        last_exc: Exception | None = None
        for attempt in range(policy.max_retries + 1):
            if attempt > 0:
                delay = policy.delay_for(attempt)
                logger.debug(
                    "Retrying event %s (attempt %d/%d) after %.3fs",
                    event.id,
                    attempt,
                    policy.max_retries,
                    delay,
                )
                await asyncio.sleep(delay)
                attempt_event.increment_retry()
                event.increment_retry()
            try:
                await handler.handle(attempt_event)
                return
            except Exception as e:
                last_exc = e
                logger.warning(
                    "Handler failed for event %s (attempt %d): %s",
                    event.id,
                    attempt + 1,
                    e,
                )
        raise HandlerError(str(last_exc), attempts=policy.max_retries + 1) from last_exc

    # --- subscriptions ---

    def subscribe(self, pattern: str, handler: object) -> SubscriptionID:
        return self._subscriptions.subscribe(pattern, handler)

    def unsubscribe(self, sub_id: SubscriptionID) -> None:
        self._subscriptions.unsubscribe(sub_id)

    # --- observability ---

    async def stats(self) -> BrokerStats:
        result = BrokerStats(
            instance_id=self._instance_id,
            mode=self._mode,
            is_running=self._running,
            total_published=self._published,
            total_processed=self._processed,
            total_failed=self._failed,
            active_subscribers=self._subscriptions.count(),
        )
        if self._pool is not None:
            result.queue_size = self._pool.queue_size()
            result.active_workers = self._pool.active_workers()
        try:
            result.provider_stats = await self._provider.stats()
        except Exception as e:
            logger.warning("Failed to get provider stats: %s", e)
        return result
