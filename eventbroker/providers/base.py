"""Provider contract: storage and/or transport of events."""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from pydantic import BaseModel, Field

from eventbroker.models import Event, EventSource, EventStatus

logger = logging.getLogger(__name__)


@dataclass
class EventFilter:
    """Query shape for Provider.list. Empty fields do not filter; limit 0 = unbounded."""

    source: EventSource | None = None
    status: EventStatus | None = None
    user_id: int | None = None
    schema: str = ""
    entity: str = ""
    operation: str = ""
    instance_id: str = ""
    start_time: datetime | None = None
    end_time: datetime | None = None
    limit: int = 0
    offset: int = 0

    def matches(self, event: Event) -> bool:
        if self.source is not None and event.source != self.source:
            return False
        if self.status is not None and event.status != self.status:
            return False
        if self.user_id is not None and event.user_id != self.user_id:
            return False
        if self.schema and event.schema != self.schema:
            return False
        if self.entity and event.entity != self.entity:
            return False
        if self.operation and event.operation != self.operation:
            return False
        if self.instance_id and event.instance_id != self.instance_id:
            return False
        if self.start_time is not None and event.created_at < self.start_time:
            return False
        if self.end_time is not None and event.created_at > self.end_time:
            return False
        return True

    def paginate(self, events: list[Event]) -> list[Event]:
        if self.offset > 0:
            events = events[self.offset:]
        if self.limit > 0:
            events = events[: self.limit]
        return events


class ProviderStats(BaseModel):
    """Point-in-time provider snapshot."""

    provider_type: str
    total_events: int = 0
    pending_events: int = 0
    processing_events: int = 0
    completed_events: int = 0
    failed_events: int = 0
    events_published: int = 0
    events_consumed: int = 0
    active_subscribers: int = 0
    provider_specific: dict[str, Any] = Field(default_factory=dict)


_CLOSED = object()


class EventStream:
    """Live, cancelable sequence of events with a bounded buffer.

    Providers push with offer() (drop when full) or put() (wait for room).
    Iteration ends after close(); buffered events are still yielded first.
    The queue holds one slot beyond buffer_size for the close marker.
    """

    def __init__(
        self,
        pattern: str,
        buffer_size: int = 100,
        *,
        accept: Callable[[Event], bool] | None = None,
        on_close: Callable[["EventStream"], None] | None = None,
    ) -> None:
        self.pattern = pattern
        self._buffer_size = buffer_size
        self._queue: asyncio.Queue[Any] = asyncio.Queue(
            maxsize=buffer_size + 1 if buffer_size > 0 else 0
        )
        # Set whenever a reader frees a slot or the stream closes.
        self._changed = asyncio.Event()
        self._accept = accept
        self._on_close = on_close
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def _full(self) -> bool:
        return self._buffer_size > 0 and self._queue.qsize() >= self._buffer_size

    def offer(self, event: Event) -> bool:
        """Non-blocking push. Returns False if closed or full (event dropped)."""
        if self._closed:
            return False
        if self._full():
            self.dropped += 1
            return False
        self._queue.put_nowait(event)
        return True

    def has_room(self) -> bool:
        return not self._closed and not self._full()

    async def put(self, event: Event) -> bool:
        """Blocking push for at-least-once consumers. Returns False if closed meanwhile."""
        while not self._closed:
            if not self._full():
                self._queue.put_nowait(event)
                return True
            self._changed.clear()
            await self._changed.wait()
        return False

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)
        self._changed.set()
        if self._on_close is not None:
            self._on_close(self)

    async def aclose(self) -> None:
        self.close()

    def __aiter__(self) -> "EventStream":
        return self

    async def __anext__(self) -> Event:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                # Keep the marker for any other reader.
                self._queue.put_nowait(_CLOSED)
                raise StopAsyncIteration
            self._changed.set()
            if self._accept is None or self._accept(item):
                return item

    async def __aenter__(self) -> "EventStream":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.close()


class Provider(ABC):
    """Storage/transport backend for events. Delivery guarantees are backend-specific."""

    provider_type = "abstract"

    @abstractmethod
    async def store(self, event: Event) -> None:
        """Persist the event."""

    @abstractmethod
    async def get(self, event_id: str) -> Event:
        """Return the event or raise NotFoundError."""

    @abstractmethod
    async def list(self, event_filter: EventFilter | None = None) -> list[Event]:
        """Events matching the filter."""

    @abstractmethod
    async def update_status(
        self, event_id: str, status: EventStatus, error: str = ""
    ) -> None:
        """Record a status change or raise NotFoundError."""

    @abstractmethod
    async def delete(self, event_id: str) -> None:
        """Remove the event or raise NotFoundError."""

    @abstractmethod
    async def stream(self, pattern: str) -> EventStream:
        """Open a live stream of events whose type matches pattern."""

    @abstractmethod
    async def publish(self, event: Event) -> None:
        """Store and deliver to subscribers. Transport errors propagate."""

    @abstractmethod
    async def close(self) -> None:
        """Release resources and close open streams. Idempotent."""

    @abstractmethod
    async def stats(self) -> ProviderStats:
        """Statistics snapshot."""
