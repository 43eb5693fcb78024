"""Event model and its status state machine."""

import base64
import copy
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from eventbroker.errors import InvalidTransitionError, ValidationError

__all__ = ["Event", "EventSource", "EventStatus", "event_type", "parse_timestamp", "utcnow"]


class EventSource(str, Enum):
    """Where an event originated."""

    DATABASE = "database"
    WEBSOCKET = "websocket"
    FRONTEND = "frontend"
    SYSTEM = "system"
    INTERNAL = "internal"


class EventStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (EventStatus.COMPLETED, EventStatus.FAILED)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def event_type(schema: str, entity: str, operation: str) -> str:
    """Build a routing key: schema.entity.operation (e.g. 'public.users.create')."""
    return f"{schema}.{entity}.{operation}"


def _dt_to_str(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Event:
    """Unit of work exchanged by the broker.

    The payload is opaque bytes; handlers decode it themselves. Status only
    moves forward: pending -> processing -> completed | failed.
    """

    source: EventSource
    type: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: EventStatus = EventStatus.PENDING
    retry_count: int = 0
    error: str = ""
    payload: bytes = b""
    user_id: int | None = None
    session_id: str = ""
    instance_id: str = ""
    schema: str = ""
    entity: str = ""
    operation: str = ""
    created_at: datetime = field(default_factory=utcnow)
    processed_at: datetime | None = None
    completed_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        try:
            if self.source and not isinstance(self.source, EventSource):
                self.source = EventSource(self.source)
            if not isinstance(self.status, EventStatus):
                self.status = EventStatus(self.status)
        except ValueError as e:
            raise ValidationError(str(e)) from e

    @classmethod
    def new(cls, source: EventSource | str, type: str, **context: Any) -> "Event":
        """Create a pending event with a fresh id."""
        return cls(source=source, type=type, **context)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    # --- state machine ---

    def mark_processing(self) -> None:
        if self.status.is_terminal:
            raise InvalidTransitionError(
                f"event {self.id} is {self.status.value}; cannot move to processing"
            )
        self.status = EventStatus.PROCESSING
        self.processed_at = utcnow()

    def mark_completed(self) -> None:
        self._finish(EventStatus.COMPLETED)

    def mark_failed(self, error: BaseException | str) -> None:
        self._finish(EventStatus.FAILED)
        self.error = str(error)

    def _finish(self, status: EventStatus) -> None:
        if self.status.is_terminal and self.status is not status:
            raise InvalidTransitionError(
                f"event {self.id} is {self.status.value}; cannot move to {status.value}"
            )
        now = utcnow()
        if self.processed_at is None:
            self.processed_at = now
        self.status = status
        self.completed_at = now

    def increment_retry(self) -> None:
        self.retry_count += 1

    def apply_status(self, status: EventStatus | str, error: str = "") -> None:
        """Apply a status by name, honoring the transition rules."""
        status = EventStatus(status)
        if status is EventStatus.PROCESSING:
            self.mark_processing()
        elif status is EventStatus.COMPLETED:
            self.mark_completed()
        elif status is EventStatus.FAILED:
            self.mark_failed(error)
        elif self.status is not EventStatus.PENDING:
            raise InvalidTransitionError(
                f"event {self.id} is {self.status.value}; cannot return to pending"
            )

    # --- payload helpers ---

    def set_payload(self, value: Any) -> None:
        """Serialize value as JSON into the payload."""
        try:
            self.payload = json.dumps(value, ensure_ascii=False, default=str).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise ValidationError(f"failed to marshal payload: {e}") from e

    def get_payload(self) -> Any:
        if not self.payload:
            raise ValidationError("payload is empty")
        try:
            return json.loads(self.payload)
        except ValueError as e:
            raise ValidationError(f"failed to unmarshal payload: {e}") from e

    # --- copies and records ---

    def clone(self) -> "Event":
        return copy.deepcopy(self)

    def validate(self) -> None:
        if not self.id:
            raise ValidationError("event ID is required")
        if not self.source:
            raise ValidationError("event source is required")
        if not self.type:
            raise ValidationError("event type is required")
        if not self.instance_id:
            raise ValidationError("instance ID is required")

    def to_dict(self) -> dict[str, Any]:
        """Self-describing record for durable providers."""
        return {
            "id": self.id,
            "source": self.source.value,
            "type": self.type,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "error": self.error,
            "payload": base64.b64encode(self.payload).decode("ascii"),
            "user_id": self.user_id,
            "session_id": self.session_id,
            "instance_id": self.instance_id,
            "schema": self.schema,
            "entity": self.entity,
            "operation": self.operation,
            "created_at": _dt_to_str(self.created_at),
            "processed_at": _dt_to_str(self.processed_at),
            "completed_at": _dt_to_str(self.completed_at),
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Event":
        return cls(
            id=data["id"],
            source=data["source"],
            type=data["type"],
            status=data.get("status", EventStatus.PENDING.value),
            retry_count=int(data.get("retry_count", 0)),
            error=data.get("error") or "",
            payload=base64.b64decode(data.get("payload") or ""),
            user_id=data.get("user_id"),
            session_id=data.get("session_id") or "",
            instance_id=data.get("instance_id") or "",
            schema=data.get("schema") or "",
            entity=data.get("entity") or "",
            operation=data.get("operation") or "",
            created_at=parse_timestamp(data.get("created_at")) or utcnow(),
            processed_at=parse_timestamp(data.get("processed_at")),
            completed_at=parse_timestamp(data.get("completed_at")),
            metadata=dict(data.get("metadata") or {}),
        )
