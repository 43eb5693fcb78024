"""SQL-polling provider: append-only SQLite event log with side-channel status."""

import asyncio
import json
import logging
import re
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite

from eventbroker.errors import ConfigurationError, NotFoundError, NotRunningError
from eventbroker.models import Event, EventStatus
from eventbroker.providers.base import EventFilter, EventStream, Provider, ProviderStats
from eventbroker.subscriptions import match_pattern

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS {t} (
    seq             INTEGER PRIMARY KEY AUTOINCREMENT,
    id              TEXT    NOT NULL UNIQUE,
    source          TEXT    NOT NULL,
    type            TEXT    NOT NULL,
    status          TEXT    NOT NULL,
    retry_count     INTEGER NOT NULL DEFAULT 0,
    error           TEXT    NOT NULL DEFAULT '',
    payload         BLOB,
    user_id         INTEGER,
    session_id      TEXT,
    instance_id     TEXT    NOT NULL,
    schema_name     TEXT,
    entity          TEXT,
    operation       TEXT,
    created_at      REAL    NOT NULL,
    processed_at    REAL,
    completed_at    REAL,
    metadata        TEXT
);

CREATE TABLE IF NOT EXISTS {t}_status (
    id              TEXT    PRIMARY KEY,
    status          TEXT    NOT NULL,
    error           TEXT    NOT NULL DEFAULT '',
    processed_at    REAL,
    completed_at    REAL,
    updated_at      REAL    NOT NULL
);

CREATE TABLE IF NOT EXISTS {t}_tombstones (
    id              TEXT    PRIMARY KEY,
    deleted_at      REAL    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_{t}_type ON {t}(type);
CREATE INDEX IF NOT EXISTS idx_{t}_source ON {t}(source);
CREATE INDEX IF NOT EXISTS idx_{t}_created_at ON {t}(created_at);
CREATE INDEX IF NOT EXISTS idx_{t}_instance_id ON {t}(instance_id);
CREATE INDEX IF NOT EXISTS idx_{t}_status_status ON {t}_status(status);
"""

# Effective view: log row + latest status row, tombstoned rows hidden.
_SELECT = """
SELECT e.seq, e.id, e.source, e.type,
       COALESCE(s.status, e.status), e.retry_count, COALESCE(s.error, e.error),
       e.payload, e.user_id, e.session_id, e.instance_id,
       e.schema_name, e.entity, e.operation,
       e.created_at, COALESCE(s.processed_at, e.processed_at),
       COALESCE(s.completed_at, e.completed_at), e.metadata
FROM {t} e
LEFT JOIN {t}_status s ON s.id = e.id
LEFT JOIN {t}_tombstones d ON d.id = e.id
WHERE d.id IS NULL
"""

_TERMINAL = (EventStatus.COMPLETED.value, EventStatus.FAILED.value)


def _ts(value: datetime | None) -> float | None:
    return value.timestamp() if value is not None else None


def _dt(value: float | None) -> datetime | None:
    return datetime.fromtimestamp(value, tz=timezone.utc) if value is not None else None


def _row_to_event(row: tuple) -> Event:
    """Convert an effective-view row (see _SELECT) to an Event."""
    metadata: dict[str, Any] = {}
    if row[17]:
        try:
            metadata = json.loads(row[17])
        except ValueError as e:
            logger.warning("Failed to unmarshal metadata for event %s: %s", row[1], e)
    return Event(
        id=row[1],
        source=row[2],
        type=row[3],
        status=row[4],
        retry_count=row[5] or 0,
        error=row[6] or "",
        payload=bytes(row[7] or b""),
        user_id=row[8],
        session_id=row[9] or "",
        instance_id=row[10] or "",
        schema=row[11] or "",
        entity=row[12] or "",
        operation=row[13] or "",
        created_at=_dt(row[14]),
        processed_at=_dt(row[15]),
        completed_at=_dt(row[16]),
        metadata=metadata,
    )


class _Subscription:
    __slots__ = ("stream", "watermark")

    def __init__(self, stream: EventStream, watermark: int) -> None:
        self.stream = stream
        self.watermark = watermark


class DatabaseProvider(Provider):
    """Durable provider over SQLite; cross-process delivery by polling.

    The log table is append-only. Status changes and deletes are side-channel
    rows (status table, tombstones) overlaid at read time. Each stream keeps a
    seq watermark; a full subscriber buffer holds the watermark so the row is
    retried on the next poll.
    """

    provider_type = "database"

    def __init__(
        self,
        db_path: Path | str,
        instance_id: str = "",
        table_name: str = "events",
        poll_interval: float = 1.0,
        batch_size: int = 100,
        busy_timeout: int = 5000,
        max_age: float | None = None,
        purge_interval: float = 300.0,
        stream_buffer_size: int = 100,
    ) -> None:
        if not _IDENTIFIER.match(table_name):
            raise ConfigurationError(f"invalid table name: {table_name!r}")
        self._db_path = str(db_path)
        self._instance_id = instance_id
        self._table = table_name
        self._poll_interval = poll_interval
        self._batch_size = batch_size
        self._busy_timeout = busy_timeout
        self._max_age = max_age
        self._purge_interval = purge_interval
        self._stream_buffer_size = stream_buffer_size
        self._conn: aiosqlite.Connection | None = None
        self._conn_lock = asyncio.Lock()
        self._subscriptions: list[_Subscription] = []
        self._wake = asyncio.Event()
        self._poll_task: asyncio.Task[None] | None = None
        self._closed = False
        self._published = 0
        self._consumed = 0
        self._poll_errors = 0
        self._select = _SELECT.format(t=self._table)
        logger.info(
            "Database provider initialized (table: %s, poll_interval: %ss)",
            table_name,
            poll_interval,
        )

    async def _ensure_conn(self) -> aiosqlite.Connection:
        if self._closed:
            raise NotRunningError("database provider is closed")
        async with self._conn_lock:
            if self._conn is None:
                if self._db_path != ":memory:":
                    Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
                conn = await aiosqlite.connect(self._db_path)
                await conn.execute("PRAGMA journal_mode=WAL")
                await conn.execute("PRAGMA synchronous=NORMAL")
                await conn.execute(f"PRAGMA busy_timeout={self._busy_timeout}")
                await conn.executescript(_SCHEMA.format(t=self._table))
                await conn.commit()
                self._conn = conn
            return self._conn

    def _ensure_poll_task(self) -> None:
        if self._poll_task is None and not self._closed:
            self._poll_task = asyncio.create_task(self._poll_loop())

    async def store(self, event: Event) -> None:
        conn = await self._ensure_conn()
        await conn.execute(
            f"""
            INSERT INTO {self._table} (
                id, source, type, status, retry_count, error,
                payload, user_id, session_id, instance_id,
                schema_name, entity, operation,
                created_at, processed_at, completed_at, metadata
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.id,
                event.source.value,
                event.type,
                event.status.value,
                event.retry_count,
                event.error,
                event.payload,
                event.user_id,
                event.session_id,
                event.instance_id,
                event.schema,
                event.entity,
                event.operation,
                _ts(event.created_at),
                _ts(event.processed_at),
                _ts(event.completed_at),
                json.dumps(event.metadata, ensure_ascii=False, default=str),
            ),
        )
        await conn.commit()
        if self._max_age is not None:
            self._ensure_poll_task()

    async def get(self, event_id: str) -> Event:
        conn = await self._ensure_conn()
        cursor = await conn.execute(self._select + " AND e.id = ?", (event_id,))
        row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(f"event not found: {event_id}")
        return _row_to_event(row)

    async def list(self, event_filter: EventFilter | None = None) -> list[Event]:
        conn = await self._ensure_conn()
        query = self._select
        args: list[Any] = []
        f = event_filter or EventFilter()
        if f.source is not None:
            query += " AND e.source = ?"
            args.append(f.source.value)
        if f.status is not None:
            query += " AND COALESCE(s.status, e.status) = ?"
            args.append(EventStatus(f.status).value)
        if f.user_id is not None:
            query += " AND e.user_id = ?"
            args.append(f.user_id)
        for column, value in (
            ("schema_name", f.schema),
            ("entity", f.entity),
            ("operation", f.operation),
            ("instance_id", f.instance_id),
        ):
            if value:
                query += f" AND e.{column} = ?"
                args.append(value)
        if f.start_time is not None:
            query += " AND e.created_at >= ?"
            args.append(_ts(f.start_time))
        if f.end_time is not None:
            query += " AND e.created_at <= ?"
            args.append(_ts(f.end_time))
        query += " ORDER BY e.created_at DESC, e.seq DESC"
        if f.limit > 0 or f.offset > 0:
            query += " LIMIT ? OFFSET ?"
            args.extend([f.limit if f.limit > 0 else -1, max(f.offset, 0)])
        cursor = await conn.execute(query, args)
        rows = await cursor.fetchall()
        return [_row_to_event(row) for row in rows]

    async def update_status(
        self, event_id: str, status: EventStatus, error: str = ""
    ) -> None:
        """Upsert the side-channel status row. Transition rules follow Event.apply_status."""
        event = await self.get(event_id)
        event.apply_status(status, error)
        conn = await self._ensure_conn()
        await conn.execute(
            f"""
            INSERT INTO {self._table}_status
                (id, status, error, processed_at, completed_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                status = excluded.status,
                error = excluded.error,
                processed_at = excluded.processed_at,
                completed_at = excluded.completed_at,
                updated_at = excluded.updated_at
            """,
            (
                event_id,
                event.status.value,
                event.error,
                _ts(event.processed_at),
                _ts(event.completed_at),
                time.time(),
            ),
        )
        await conn.commit()

    async def delete(self, event_id: str) -> None:
        """Tombstone the event; the log row stays until purge()."""
        await self.get(event_id)
        conn = await self._ensure_conn()
        await conn.execute(
            f"INSERT OR IGNORE INTO {self._table}_tombstones (id, deleted_at) VALUES (?, ?)",
            (event_id, time.time()),
        )
        await conn.commit()

    async def stream(self, pattern: str) -> EventStream:
        """Poll-based stream starting at the current log tail."""
        conn = await self._ensure_conn()
        cursor = await conn.execute(f"SELECT COALESCE(MAX(seq), 0) FROM {self._table}")
        row = await cursor.fetchone()
        sub = EventStream(
            pattern, self._stream_buffer_size, on_close=self._remove_stream
        )
        self._subscriptions.append(_Subscription(sub, row[0] if row else 0))
        self._ensure_poll_task()
        logger.debug("Stream created for pattern: %s", pattern)
        return sub

    def _remove_stream(self, stream: EventStream) -> None:
        self._subscriptions = [s for s in self._subscriptions if s.stream is not stream]

    async def publish(self, event: Event) -> None:
        await self.store(event)
        self._published += 1
        self._wake.set()

    async def poll(self) -> int:
        """Deliver rows past each subscriber's watermark. Returns events delivered."""
        conn = await self._ensure_conn()
        delivered = 0
        more = False
        for sub in list(self._subscriptions):
            if sub.stream.closed:
                continue
            cursor = await conn.execute(
                self._select + " AND e.seq > ? ORDER BY e.seq ASC LIMIT ?",
                (sub.watermark, self._batch_size),
            )
            rows = await cursor.fetchall()
            for row in rows:
                event = _row_to_event(row)
                if match_pattern(sub.stream.pattern, event.type):
                    if not sub.stream.has_room():
                        logger.debug(
                            "Subscriber buffer full for pattern: %s", sub.stream.pattern
                        )
                        break
                    sub.stream.offer(event)
                    self._consumed += 1
                    delivered += 1
                sub.watermark = row[0]
            else:
                more = more or len(rows) == self._batch_size
        if more:
            self._wake.set()
        return delivered

    async def _poll_loop(self) -> None:
        last_purge = time.monotonic()
        while not self._closed:
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()
            if self._closed:
                break
            if self._subscriptions:
                try:
                    await self.poll()
                except Exception as e:
                    self._poll_errors += 1
                    logger.warning("Failed to poll events: %s", e)
            if self._max_age is not None and time.monotonic() - last_purge >= self._purge_interval:
                last_purge = time.monotonic()
                try:
                    await self.purge(self._max_age)
                except Exception as e:
                    logger.warning("Failed to purge events: %s", e)

    async def purge(self, older_than: float) -> int:
        """Physically remove terminal or tombstoned events older than `older_than` seconds."""
        conn = await self._ensure_conn()
        cutoff = time.time() - older_than
        t = self._table
        cursor = await conn.execute(
            f"""
            SELECT e.id FROM {t} e
            LEFT JOIN {t}_status s ON s.id = e.id
            LEFT JOIN {t}_tombstones d ON d.id = e.id
            WHERE e.created_at < ?
              AND (d.id IS NOT NULL OR COALESCE(s.status, e.status) IN (?, ?))
            """,
            (cutoff, *_TERMINAL),
        )
        ids = [row[0] for row in await cursor.fetchall()]
        for start in range(0, len(ids), 500):
            chunk = ids[start : start + 500]
            placeholders = ",".join("?" * len(chunk))
            for table in (t, f"{t}_status", f"{t}_tombstones"):
                await conn.execute(
                    f"DELETE FROM {table} WHERE id IN ({placeholders})", chunk
                )
        await conn.commit()
        if ids:
            logger.debug("Purge removed %d old events", len(ids))
        return len(ids)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._wake.set()
        if self._poll_task is not None:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None
        for sub in list(self._subscriptions):
            sub.stream.close()
        if self._conn is not None:
            await self._conn.close()
            self._conn = None
        logger.info("Database provider closed")

    async def stats(self) -> ProviderStats:
        conn = await self._ensure_conn()
        t = self._table
        cursor = await conn.execute(
            f"""
            SELECT COUNT(*),
                   SUM(CASE WHEN st = 'pending' THEN 1 ELSE 0 END),
                   SUM(CASE WHEN st = 'processing' THEN 1 ELSE 0 END),
                   SUM(CASE WHEN st = 'completed' THEN 1 ELSE 0 END),
                   SUM(CASE WHEN st = 'failed' THEN 1 ELSE 0 END)
            FROM (
                SELECT COALESCE(s.status, e.status) AS st
                FROM {t} e
                LEFT JOIN {t}_status s ON s.id = e.id
                LEFT JOIN {t}_tombstones d ON d.id = e.id
                WHERE d.id IS NULL
            )
            """
        )
        row = await cursor.fetchone() or (0, 0, 0, 0, 0)
        total, pending, processing, completed, failed = (v or 0 for v in row)
        return ProviderStats(
            provider_type=self.provider_type,
            total_events=total,
            pending_events=pending,
            processing_events=processing,
            completed_events=completed,
            failed_events=failed,
            events_published=self._published,
            events_consumed=self._consumed,
            active_subscribers=len(self._subscriptions),
            provider_specific={
                "db_path": self._db_path,
                "table_name": self._table,
                "poll_interval": self._poll_interval,
                "poll_errors": self._poll_errors,
                "max_age": self._max_age,
            },
        )
