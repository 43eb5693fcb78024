"""Tests for DatabaseProvider: SQL queries, side-channel status, tombstones, polling streams."""

import asyncio
from datetime import timedelta
from pathlib import Path

import pytest

from eventbroker.errors import (
    ConfigurationError,
    InvalidTransitionError,
    NotFoundError,
    NotRunningError,
)
from eventbroker.models import Event, EventSource, EventStatus, utcnow
from eventbroker.providers.base import EventFilter
from eventbroker.providers.database import DatabaseProvider


def _event(event_type: str = "public.users.create", **kwargs) -> Event:
    kwargs.setdefault("instance_id", "test")
    return Event.new(EventSource.DATABASE, event_type, **kwargs)


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "events.db"


@pytest.fixture
async def provider(db_path: Path) -> DatabaseProvider:
    p = DatabaseProvider(db_path, instance_id="test", poll_interval=0.05, batch_size=5)
    yield p
    await p.close()


class TestDatabaseProviderStorage:
    def test_rejects_bad_table_name(self, db_path: Path) -> None:
        with pytest.raises(ConfigurationError):
            DatabaseProvider(db_path, table_name="events; DROP TABLE x")

    @pytest.mark.asyncio
    async def test_store_and_get(self, provider: DatabaseProvider) -> None:
        event = _event(user_id=5, schema="public", entity="users", operation="create")
        event.set_payload({"name": "Ada"})
        event.metadata["table_name"] = "users"
        await provider.store(event)
        got = await provider.get(event.id)
        assert got.id == event.id
        assert got.source is EventSource.DATABASE
        assert got.get_payload() == {"name": "Ada"}
        assert got.user_id == 5
        assert got.schema == "public"
        assert got.metadata == {"table_name": "users"}
        assert abs((got.created_at - event.created_at).total_seconds()) < 0.001

    @pytest.mark.asyncio
    async def test_get_unknown(self, provider: DatabaseProvider) -> None:
        with pytest.raises(NotFoundError):
            await provider.get("missing")

    @pytest.mark.asyncio
    async def test_update_status_uses_side_channel(
        self, provider: DatabaseProvider, db_path: Path
    ) -> None:
        event = _event()
        await provider.store(event)
        await provider.update_status(event.id, EventStatus.PROCESSING)
        await provider.update_status(event.id, EventStatus.COMPLETED)

        got = await provider.get(event.id)
        assert got.status is EventStatus.COMPLETED
        assert got.processed_at is not None
        assert got.completed_at is not None

        conn = await provider._ensure_conn()
        cursor = await conn.execute("SELECT status FROM events WHERE id = ?", (event.id,))
        assert (await cursor.fetchone())[0] == "pending"

    @pytest.mark.asyncio
    async def test_terminal_status_not_overwritten(self, provider: DatabaseProvider) -> None:
        event = _event()
        await provider.store(event)
        await provider.update_status(event.id, EventStatus.FAILED, "boom")
        with pytest.raises(InvalidTransitionError):
            await provider.update_status(event.id, EventStatus.PROCESSING)
        got = await provider.get(event.id)
        assert got.status is EventStatus.FAILED
        assert got.error == "boom"

    @pytest.mark.asyncio
    async def test_update_unknown(self, provider: DatabaseProvider) -> None:
        with pytest.raises(NotFoundError):
            await provider.update_status("missing", EventStatus.COMPLETED)

    @pytest.mark.asyncio
    async def test_delete_tombstones_event(self, provider: DatabaseProvider) -> None:
        event = _event()
        await provider.store(event)
        await provider.delete(event.id)
        with pytest.raises(NotFoundError):
            await provider.get(event.id)
        with pytest.raises(NotFoundError):
            await provider.delete(event.id)
        assert await provider.list() == []
        assert (await provider.stats()).total_events == 0

    @pytest.mark.asyncio
    async def test_survives_reopen(self, db_path: Path) -> None:
        first = DatabaseProvider(db_path)
        event = _event()
        await first.store(event)
        await first.update_status(event.id, EventStatus.COMPLETED)
        await first.close()

        second = DatabaseProvider(db_path)
        got = await second.get(event.id)
        assert got.status is EventStatus.COMPLETED
        await second.close()

    @pytest.mark.asyncio
    async def test_closed_provider_rejects_calls(self, db_path: Path) -> None:
        p = DatabaseProvider(db_path)
        await p.close()
        with pytest.raises(NotRunningError):
            await p.store(_event())


class TestDatabaseProviderList:
    @pytest.mark.asyncio
    async def test_filters(self, provider: DatabaseProvider) -> None:
        a = _event(user_id=1, entity="users")
        b = _event("public.orders.create", user_id=2, entity="orders")
        c = Event.new(
            EventSource.FRONTEND, "public.users.create", instance_id="test", user_id=1, entity="users"
        )
        for event in (a, b, c):
            await provider.store(event)
        await provider.update_status(a.id, EventStatus.COMPLETED)

        assert len(await provider.list()) == 3
        assert {e.id for e in await provider.list(EventFilter(user_id=1))} == {a.id, c.id}
        assert [e.id for e in await provider.list(EventFilter(entity="orders"))] == [b.id]
        assert [e.id for e in await provider.list(EventFilter(status=EventStatus.COMPLETED))] == [a.id]
        assert [e.id for e in await provider.list(EventFilter(source=EventSource.FRONTEND))] == [c.id]

    @pytest.mark.asyncio
    async def test_newest_first_with_pagination(self, provider: DatabaseProvider) -> None:
        now = utcnow()
        events = [_event(created_at=now + timedelta(seconds=i)) for i in range(5)]
        for event in events:
            await provider.store(event)
        newest = [e.id for e in reversed(events)]
        assert [e.id for e in await provider.list()] == newest
        assert [e.id for e in await provider.list(EventFilter(limit=2))] == newest[:2]
        assert [e.id for e in await provider.list(EventFilter(offset=3))] == newest[3:]

    @pytest.mark.asyncio
    async def test_time_range(self, provider: DatabaseProvider) -> None:
        now = utcnow()
        old = _event(created_at=now - timedelta(hours=2))
        recent = _event(created_at=now)
        await provider.store(old)
        await provider.store(recent)
        result = await provider.list(EventFilter(start_time=now - timedelta(hours=1)))
        assert [e.id for e in result] == [recent.id]


class TestDatabaseProviderStream:
    @pytest.mark.asyncio
    async def test_stream_delivers_new_matching_events(self, provider: DatabaseProvider) -> None:
        await provider.store(_event())  # before the stream: not delivered
        stream = await provider.stream("public.users.*")
        match = _event("public.users.update")
        await provider.publish(_event("public.orders.create"))
        await provider.publish(match)
        received = await asyncio.wait_for(stream.__anext__(), timeout=2.0)
        assert received.id == match.id

    @pytest.mark.asyncio
    async def test_full_buffer_holds_watermark(self, db_path: Path) -> None:
        p = DatabaseProvider(db_path, poll_interval=3600, stream_buffer_size=2)
        stream = await p.stream("*")
        events = [_event() for _ in range(4)]
        for event in events:
            await p.store(event)

        assert await p.poll() == 2
        assert await p.poll() == 0
        received = [await stream.__anext__(), await stream.__anext__()]
        assert await p.poll() == 2
        received += [await stream.__anext__(), await stream.__anext__()]
        assert [e.id for e in received] == [e.id for e in events]
        await p.close()

    @pytest.mark.asyncio
    async def test_close_ends_stream(self, provider: DatabaseProvider) -> None:
        stream = await provider.stream("*")
        await provider.close()
        assert [e async for e in stream] == []


class TestDatabaseProviderRetention:
    @pytest.mark.asyncio
    async def test_purge_removes_old_terminal_and_tombstoned(
        self, provider: DatabaseProvider
    ) -> None:
        old = utcnow() - timedelta(hours=2)
        done = _event(created_at=old)
        gone = _event(created_at=old)
        waiting = _event(created_at=old)
        fresh = _event()
        for event in (done, gone, waiting, fresh):
            await provider.store(event)
        await provider.update_status(done.id, EventStatus.COMPLETED)
        await provider.update_status(fresh.id, EventStatus.COMPLETED)
        await provider.delete(gone.id)

        assert await provider.purge(older_than=3600) == 2
        remaining = {e.id for e in await provider.list()}
        assert remaining == {waiting.id, fresh.id}

    @pytest.mark.asyncio
    async def test_stats_by_effective_status(self, provider: DatabaseProvider) -> None:
        a, b, c = _event(), _event(), _event()
        for event in (a, b, c):
            await provider.publish(event)
        await provider.update_status(a.id, EventStatus.PROCESSING)
        await provider.update_status(b.id, EventStatus.FAILED, "x")
        stats = await provider.stats()
        assert stats.provider_type == "database"
        assert stats.total_events == 3
        assert stats.pending_events == 1
        assert stats.processing_events == 1
        assert stats.failed_events == 1
        assert stats.events_published == 3
