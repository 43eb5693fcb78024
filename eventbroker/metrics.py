"""Metrics sink contract. The broker reports through it best-effort."""

import logging
from typing import Protocol, runtime_checkable

from eventbroker.models import Event

logger = logging.getLogger(__name__)


@runtime_checkable
class MetricsSink(Protocol):
    """Receives broker counters. Implementations must be cheap and non-blocking."""

    def record_event_published(self, source: str, event_type: str) -> None: ...

    def record_event_processed(
        self, source: str, event_type: str, status: str, duration: float
    ) -> None: ...

    def update_queue_size(self, size: int) -> None: ...


def record_event_published(sink: MetricsSink | None, event: Event) -> None:
    if sink is None:
        return
    try:
        sink.record_event_published(event.source.value, event.type)
    except Exception as e:
        logger.debug("Metrics sink failed on record_event_published: %s", e)


def record_event_processed(sink: MetricsSink | None, event: Event, duration: float) -> None:
    """Duration is in seconds."""
    if sink is None:
        return
    try:
        sink.record_event_processed(
            event.source.value, event.type, event.status.value, duration
        )
    except Exception as e:
        logger.debug("Metrics sink failed on record_event_processed: %s", e)


def update_queue_size(sink: MetricsSink | None, size: int) -> None:
    if sink is None:
        return
    try:
        sink.update_queue_size(size)
    except Exception as e:
        logger.debug("Metrics sink failed on update_queue_size: %s", e)
