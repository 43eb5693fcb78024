"""Subscription table: glob patterns over dot-delimited event types -> handlers. No I/O."""

import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Any

from eventbroker.errors import NotFoundError, ValidationError
from eventbroker.handlers import EventHandler, as_handler

logger = logging.getLogger(__name__)

SubscriptionID = str


def match_pattern(pattern: str, event_type: str) -> bool:
    """Glob match over dot segments.

    "*" alone matches every type. Otherwise segment counts must be equal and
    each pattern segment is either "*" (any single segment) or an exact,
    case-sensitive match. Examples: "public.users.*", "*.*.create".
    """
    if pattern == "*":
        return True
    pattern_parts = pattern.split(".")
    type_parts = event_type.split(".")
    if len(pattern_parts) != len(type_parts):
        return False
    return all(p == "*" or p == t for p, t in zip(pattern_parts, type_parts))


@dataclass(frozen=True)
class Subscription:
    id: SubscriptionID
    pattern: str
    handler: EventHandler


class SubscriptionManager:
    """Thread-safe pattern -> handler table. Readers work on a snapshot."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: dict[SubscriptionID, Subscription] = {}
        self._ids = itertools.count(1)

    def subscribe(self, pattern: str, handler: Any) -> SubscriptionID:
        if not pattern:
            raise ValidationError("pattern cannot be empty")
        if handler is None:
            raise ValidationError("handler cannot be nil")
        try:
            normalized = as_handler(handler)
        except TypeError as e:
            raise ValidationError(str(e)) from e

        with self._lock:
            sub_id = f"sub-{next(self._ids)}"
            self._subscriptions[sub_id] = Subscription(sub_id, pattern, normalized)
        logger.info("Subscribed to pattern '%s' with ID: %s", pattern, sub_id)
        return sub_id

    def unsubscribe(self, sub_id: SubscriptionID) -> None:
        with self._lock:
            if sub_id not in self._subscriptions:
                raise NotFoundError(f"subscription not found: {sub_id}")
            del self._subscriptions[sub_id]
        logger.info("Unsubscribed: %s", sub_id)

    def get_matching(self, event_type: str) -> list[EventHandler]:
        """All handlers whose pattern matches. Callers must not rely on the order."""
        with self._lock:
            snapshot = list(self._subscriptions.values())
        return [s.handler for s in snapshot if match_pattern(s.pattern, event_type)]

    def count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def clear(self) -> None:
        with self._lock:
            self._subscriptions.clear()
        logger.info("Cleared all subscriptions")
