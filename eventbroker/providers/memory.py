"""In-memory provider: single process, best-effort delivery, bounded storage."""

import asyncio
import logging
import threading
from collections import OrderedDict
from datetime import timedelta

from eventbroker.errors import ConfigurationError, NotFoundError
from eventbroker.models import Event, EventStatus, utcnow
from eventbroker.providers.base import EventFilter, EventStream, Provider, ProviderStats
from eventbroker.subscriptions import match_pattern

logger = logging.getLogger(__name__)


class MemoryProvider(Provider):
    """Events in an insertion-ordered map.

    Oldest insertion is evicted first once max_events is reached. A
    background task drops terminal events older than max_age. Streams get
    a bounded buffer each; a full buffer drops the event for that
    subscriber only, publishers never wait.
    """

    provider_type = "memory"

    def __init__(
        self,
        instance_id: str = "",
        max_events: int = 10000,
        cleanup_interval: float = 300.0,
        max_age: float = 86400.0,
        stream_buffer_size: int = 100,
        stream_drop_evicted: bool = False,
    ) -> None:
        if max_events < 1:
            raise ConfigurationError("max_events must be >= 1")
        self._instance_id = instance_id
        self._max_events = max_events
        self._cleanup_interval = cleanup_interval
        self._max_age = max_age
        self._stream_buffer_size = stream_buffer_size
        self._stream_drop_evicted = stream_drop_evicted
        self._lock = threading.Lock()
        self._events: OrderedDict[str, Event] = OrderedDict()
        self._streams: list[EventStream] = []
        self._cleanup_task: asyncio.Task[None] | None = None
        self._closed = False
        self._published = 0
        self._consumed = 0
        self._evictions = 0
        self._dropped = 0
        logger.info(
            "Memory provider initialized (max_events: %d, cleanup: %ss, max_age: %ss)",
            max_events,
            cleanup_interval,
            max_age,
        )

    def _ensure_cleanup_task(self) -> None:
        if self._cleanup_task is not None or self._closed:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def store(self, event: Event) -> None:
        self._ensure_cleanup_task()
        with self._lock:
            if event.id in self._events:
                self._events.pop(event.id)
            while len(self._events) >= self._max_events:
                self._evict_oldest_locked()
            self._events[event.id] = event.clone()

    def _evict_oldest_locked(self) -> None:
        oldest_id, _ = self._events.popitem(last=False)
        self._evictions += 1
        logger.debug("Evicted oldest event: %s", oldest_id)

    async def get(self, event_id: str) -> Event:
        with self._lock:
            event = self._events.get(event_id)
            if event is None:
                raise NotFoundError(f"event not found: {event_id}")
            return event.clone()

    async def list(self, event_filter: EventFilter | None = None) -> list[Event]:
        with self._lock:
            snapshot = list(self._events.values())
        if event_filter is None:
            return [e.clone() for e in snapshot]
        matched = [e.clone() for e in snapshot if event_filter.matches(e)]
        return event_filter.paginate(matched)

    async def update_status(
        self, event_id: str, status: EventStatus, error: str = ""
    ) -> None:
        with self._lock:
            event = self._events.get(event_id)
            if event is None:
                raise NotFoundError(f"event not found: {event_id}")
            event.apply_status(status, error)

    async def delete(self, event_id: str) -> None:
        with self._lock:
            if self._events.pop(event_id, None) is None:
                raise NotFoundError(f"event not found: {event_id}")

    async def stream(self, pattern: str) -> EventStream:
        """Register an in-process subscriber. Not cross-instance."""
        self._ensure_cleanup_task()
        accept = self._is_retained if self._stream_drop_evicted else None
        sub = EventStream(
            pattern,
            self._stream_buffer_size,
            accept=accept,
            on_close=self._remove_stream,
        )
        with self._lock:
            closed = self._closed
            if not closed:
                self._streams.append(sub)
        if closed:
            # close() calls back into _remove_stream, which takes the lock.
            sub.close()
            return sub
        logger.debug("Stream created for pattern: %s", pattern)
        return sub

    def _is_retained(self, event: Event) -> bool:
        with self._lock:
            return event.id in self._events

    def _remove_stream(self, sub: EventStream) -> None:
        with self._lock:
            if sub in self._streams:
                self._streams.remove(sub)

    async def publish(self, event: Event) -> None:
        await self.store(event)
        with self._lock:
            self._published += 1
            targets = [s for s in self._streams if match_pattern(s.pattern, event.type)]
        for sub in targets:
            if sub.offer(event.clone()):
                self._consumed += 1
            else:
                self._dropped += 1
                logger.warning("Subscriber buffer full for pattern: %s", sub.pattern)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
        with self._lock:
            streams = list(self._streams)
        for sub in streams:
            sub.close()
        logger.info("Memory provider closed")

    async def stats(self) -> ProviderStats:
        with self._lock:
            counts = {status: 0 for status in EventStatus}
            for event in self._events.values():
                counts[event.status] += 1
            total = len(self._events)
            subscribers = len(self._streams)
        return ProviderStats(
            provider_type=self.provider_type,
            total_events=total,
            pending_events=counts[EventStatus.PENDING],
            processing_events=counts[EventStatus.PROCESSING],
            completed_events=counts[EventStatus.COMPLETED],
            failed_events=counts[EventStatus.FAILED],
            events_published=self._published,
            events_consumed=self._consumed,
            active_subscribers=subscribers,
            provider_specific={
                "max_events": self._max_events,
                "cleanup_interval": self._cleanup_interval,
                "max_age": self._max_age,
                "evictions": self._evictions,
                "dropped": self._dropped,
                "stream_drop_evicted": self._stream_drop_evicted,
            },
        )

    async def _cleanup_loop(self) -> None:
        while not self._closed:
            await asyncio.sleep(self._cleanup_interval)
            try:
                self.cleanup()
            except Exception as e:
                logger.exception("Memory provider cleanup failed: %s", e)

    def cleanup(self) -> int:
        """Remove terminal events created more than max_age seconds ago. Returns count."""
        cutoff = utcnow() - timedelta(seconds=self._max_age)
        with self._lock:
            expired = [
                eid
                for eid, e in self._events.items()
                if e.is_terminal and e.created_at < cutoff
            ]
            for eid in expired:
                del self._events[eid]
        if expired:
            logger.debug("Cleanup removed %d old events", len(expired))
        return len(expired)
