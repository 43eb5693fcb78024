"""Message-stream provider on Redis Streams: durable, cross-instance, at-least-once."""

import asyncio
import json
import logging
import time
from typing import Any

import redis.asyncio as redis
from redis.exceptions import RedisError, ResponseError

from eventbroker.errors import NotFoundError, NotRunningError, ValidationError
from eventbroker.models import Event, EventStatus, parse_timestamp, utcnow
from eventbroker.providers.base import EventFilter, EventStream, Provider, ProviderStats
from eventbroker.subscriptions import match_pattern

logger = logging.getLogger(__name__)

_SCAN_BATCH = 1000


def _entry_key(entry_id: str) -> tuple[int, int]:
    ms, _, seq = entry_id.partition("-")
    return int(ms), int(seq or 0)


def _stream_items(response: Any) -> list[tuple[str, list]]:
    """XREADGROUP reply as (stream, messages) pairs for both RESP2 and RESP3."""
    if isinstance(response, dict):
        return list(response.items())
    return [(item[0], item[1]) for item in response]


class RedisStreamProvider(Provider):
    """Events appended to one Redis stream.

    The stream is append-only, so status changes live in a per-event hash
    (`<stream>:status:<id>`, with TTL) and deletes in a tombstone sorted set
    (`<stream>:deleted`, scored by delete time). `<stream>:index` maps event
    id -> entry id so get() does not scan the log. Every prune_every stores,
    prune() drops index entries MAXLEN has trimmed away and tombstones older
    than tombstone_ttl, so neither key outgrows the stream.

    Every stream() pattern reads through its own consumer group; instances
    sharing the configuration share the group and split the work.
    """

    provider_type = "redis"

    def __init__(
        self,
        client: redis.Redis | None = None,
        *,
        instance_id: str = "",
        host: str = "localhost",
        port: int = 6379,
        password: str | None = None,
        db: int = 0,
        stream_name: str = "eventbroker:events",
        consumer_group: str = "eventbroker-workers",
        consumer_name: str = "",
        max_len: int = 10000,
        block_ms: int = 1000,
        batch_size: int = 10,
        status_ttl: int = 7 * 24 * 3600,
        tombstone_ttl: int = 7 * 24 * 3600,
        prune_every: int = 1000,
        use_index: bool = True,
        stream_buffer_size: int = 100,
        error_backoff: float = 1.0,
        idle_sleep: float = 0.05,
    ) -> None:
        self._owns_client = client is None
        if client is None:
            client = redis.Redis(
                host=host,
                port=port,
                password=password,
                db=db,
                decode_responses=True,
            )
        self._client = client
        self._instance_id = instance_id
        self._stream_name = stream_name
        self._consumer_group = consumer_group
        self._consumer_name = consumer_name or instance_id or "eventbroker"
        self._max_len = max_len
        self._block_ms = block_ms
        self._batch_size = batch_size
        self._status_ttl = status_ttl
        self._tombstone_ttl = tombstone_ttl
        self._prune_every = prune_every
        self._use_index = use_index
        self._stream_buffer_size = stream_buffer_size
        self._error_backoff = error_backoff
        self._idle_sleep = idle_sleep
        self._index_key = f"{stream_name}:index"
        self._deleted_key = f"{stream_name}:deleted"
        self._subscriptions: dict[EventStream, asyncio.Task[None]] = {}
        self._closed = False
        self._stored = 0
        self._published = 0
        self._consumed = 0
        self._consumer_errors = 0
        self._pruned = 0
        logger.info(
            "Redis provider initialized (stream: %s, consumer_group: %s, consumer: %s)",
            stream_name,
            consumer_group,
            self._consumer_name,
        )

    def _status_key(self, event_id: str) -> str:
        return f"{self._stream_name}:status:{event_id}"

    def _check_open(self) -> None:
        if self._closed:
            raise NotRunningError("redis provider is closed")

    @staticmethod
    def _record(event: Event) -> dict[str, str]:
        """Full event JSON plus routing fields readable without decoding it."""
        return {
            "event": json.dumps(event.to_dict(), ensure_ascii=False, default=str),
            "id": event.id,
            "type": event.type,
            "source": event.source.value,
            "status": event.status.value,
            "instance_id": event.instance_id,
        }

    @staticmethod
    def _decode(fields: dict[str, Any]) -> Event:
        return Event.from_dict(json.loads(fields["event"]))

    async def _overlay(self, event: Event) -> Event:
        """Apply the side-channel status hash, if any."""
        status = await self._client.hgetall(self._status_key(event.id))
        if status:
            event.status = EventStatus(status["status"])
            event.error = status.get("error", "")
            if status.get("processed_at"):
                event.processed_at = parse_timestamp(status["processed_at"])
            if status.get("completed_at"):
                event.completed_at = parse_timestamp(status["completed_at"])
        return event

    async def store(self, event: Event) -> None:
        self._check_open()
        entry_id = await self._client.xadd(
            self._stream_name,
            self._record(event),
            maxlen=self._max_len or None,
            approximate=True,
        )
        if self._use_index:
            await self._client.hset(self._index_key, event.id, entry_id)
        self._stored += 1
        if self._prune_every and self._stored % self._prune_every == 0:
            try:
                await self.prune()
            except RedisError as e:
                logger.warning("Failed to prune side keys of %s: %s", self._stream_name, e)

    async def prune(self) -> tuple[int, int]:
        """Drop index entries older than the stream head and expired tombstones.

        Returns (index entries removed, tombstones removed).
        """
        self._check_open()
        removed_index = 0
        if self._use_index:
            head = await self._client.xrange(self._stream_name, min="-", max="+", count=1)
            first = _entry_key(head[0][0]) if head else None
            stale = [
                event_id
                async for event_id, entry_id in self._client.hscan_iter(self._index_key)
                if first is None or _entry_key(entry_id) < first
            ]
            for i in range(0, len(stale), _SCAN_BATCH):
                removed_index += await self._client.hdel(
                    self._index_key, *stale[i : i + _SCAN_BATCH]
                )
        removed_tombstones = 0
        if self._tombstone_ttl:
            removed_tombstones = await self._client.zremrangebyscore(
                self._deleted_key, "-inf", time.time() - self._tombstone_ttl
            )
        self._pruned += removed_index + removed_tombstones
        if removed_index or removed_tombstones:
            logger.debug(
                "Pruned %d index entries and %d tombstones from %s",
                removed_index,
                removed_tombstones,
                self._stream_name,
            )
        return removed_index, removed_tombstones

    async def _find_entry(self, event_id: str) -> dict[str, Any] | None:
        if self._use_index:
            entry_id = await self._client.hget(self._index_key, event_id)
            if entry_id is None:
                return None
            entries = await self._client.xrange(self._stream_name, min=entry_id, max=entry_id)
            if not entries:
                # Trimmed by MAXLEN.
                await self._client.hdel(self._index_key, event_id)
                return None
            return entries[0][1]
        async for _entry_id, fields in self._scan():
            if fields.get("id") == event_id:
                return fields
        return None

    async def _scan(self):
        """Yield (entry_id, fields) over the whole stream in batches."""
        start = "-"
        while True:
            entries = await self._client.xrange(
                self._stream_name, min=start, max="+", count=_SCAN_BATCH
            )
            for entry_id, fields in entries:
                yield entry_id, fields
            if len(entries) < _SCAN_BATCH:
                return
            start = f"({entries[-1][0]}"

    async def get(self, event_id: str) -> Event:
        self._check_open()
        if await self._client.zscore(self._deleted_key, event_id) is not None:
            raise NotFoundError(f"event not found: {event_id}")
        fields = await self._find_entry(event_id)
        if fields is None:
            raise NotFoundError(f"event not found: {event_id}")
        return await self._overlay(self._decode(fields))

    async def list(self, event_filter: EventFilter | None = None) -> list[Event]:
        """Linear scan of the stream; filters applied in process."""
        self._check_open()
        deleted = set(await self._client.zrange(self._deleted_key, 0, -1))
        results = []
        async for _entry_id, fields in self._scan():
            if fields.get("id") in deleted:
                continue
            try:
                event = await self._overlay(self._decode(fields))
            except (KeyError, ValueError, ValidationError) as e:
                logger.warning("Failed to unmarshal event: %s", e)
                continue
            if event_filter is None or event_filter.matches(event):
                results.append(event)
        if event_filter is not None:
            results = event_filter.paginate(results)
        return results

    async def update_status(
        self, event_id: str, status: EventStatus, error: str = ""
    ) -> None:
        event = await self.get(event_id)
        event.apply_status(status, error)
        key = self._status_key(event_id)
        await self._client.hset(
            key,
            mapping={
                "status": event.status.value,
                "error": event.error,
                "processed_at": event.processed_at.isoformat() if event.processed_at else "",
                "completed_at": event.completed_at.isoformat() if event.completed_at else "",
                "updated_at": utcnow().isoformat(),
            },
        )
        await self._client.expire(key, self._status_ttl)

    async def delete(self, event_id: str) -> None:
        """Tombstone the event; stream entries are never removed by id."""
        await self.get(event_id)
        await self._client.zadd(self._deleted_key, {event_id: time.time()})
        await self._client.delete(self._status_key(event_id))
        if self._use_index:
            await self._client.hdel(self._index_key, event_id)

    async def _ensure_group(self, group: str) -> None:
        try:
            await self._client.xgroup_create(
                self._stream_name, group, id="$", mkstream=True
            )
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def stream(self, pattern: str) -> EventStream:
        self._check_open()
        group = f"{self._consumer_group}:{pattern}"
        await self._ensure_group(group)
        sub = EventStream(pattern, self._stream_buffer_size, on_close=self._remove_stream)
        self._subscriptions[sub] = asyncio.create_task(self._consume(sub, group))
        logger.debug("Stream created for pattern: %s (group %s)", pattern, group)
        return sub

    def _remove_stream(self, sub: EventStream) -> None:
        task = self._subscriptions.pop(sub, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _consume(self, sub: EventStream, group: str) -> None:
        try:
            while not sub.closed:
                try:
                    response = await self._client.xreadgroup(
                        group,
                        self._consumer_name,
                        {self._stream_name: ">"},
                        count=self._batch_size,
                        block=self._block_ms or None,
                    )
                except RedisError as e:
                    if sub.closed:
                        break
                    self._consumer_errors += 1
                    logger.warning("Failed to read from consumer group %s: %s", group, e)
                    await asyncio.sleep(self._error_backoff)
                    continue
                if not response:
                    await asyncio.sleep(0 if self._block_ms else self._idle_sleep)
                    continue
                for _name, messages in _stream_items(response):
                    for message_id, fields in messages:
                        if not await self._deliver(sub, group, message_id, fields):
                            return
        finally:
            sub.close()
            logger.debug("Stream consumer stopped for pattern: %s", sub.pattern)

    async def _deliver(
        self, sub: EventStream, group: str, message_id: str, fields: dict[str, Any]
    ) -> bool:
        """Hand one message to the subscriber, then ack. False if the stream closed first."""
        try:
            event = self._decode(fields)
        except (KeyError, ValueError, ValidationError) as e:
            logger.warning("Failed to unmarshal event %s: %s", message_id, e)
            await self._client.xack(self._stream_name, group, message_id)
            return True
        if match_pattern(sub.pattern, event.type) and await self._client.zscore(
            self._deleted_key, event.id
        ) is None:
            if not await sub.put(event):
                # Unacknowledged: stays pending in the group for redelivery.
                return False
            self._consumed += 1
        await self._client.xack(self._stream_name, group, message_id)
        return True

    async def publish(self, event: Event) -> None:
        await self.store(event)
        self._published += 1

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        tasks = list(self._subscriptions.values())
        for sub in list(self._subscriptions):
            sub.close()
        await asyncio.gather(*tasks, return_exceptions=True)
        if self._owns_client:
            await self._client.aclose()
        logger.info("Redis provider closed")

    async def stats(self) -> ProviderStats:
        specific: dict[str, Any] = {
            "stream_name": self._stream_name,
            "consumer_group": self._consumer_group,
            "consumer_name": self._consumer_name,
            "max_len": self._max_len,
            "consumer_errors": self._consumer_errors,
            "pruned": self._pruned,
        }
        if not self._closed:
            try:
                info = await self._client.xinfo_stream(self._stream_name)
            except RedisError as e:
                logger.warning("Failed to get stream info: %s", e)
            else:
                specific["stream_length"] = info.get("length")
                first, last = info.get("first-entry"), info.get("last-entry")
                specific["first_entry_id"] = first[0] if first else None
                specific["last_entry_id"] = last[0] if last else None
        return ProviderStats(
            provider_type=self.provider_type,
            total_events=self._stored,
            events_published=self._published,
            events_consumed=self._consumed,
            active_subscribers=len(self._subscriptions),
            provider_specific=specific,
        )
