"""Tests for Broker: lifecycle, sync/async dispatch, retry accounting, stats, end-to-end scenarios."""

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from eventbroker.broker import Broker, ProcessingMode, RetryPolicy
from eventbroker.errors import (
    AlreadyRunningError,
    ConfigurationError,
    HandlerError,
    NotRunningError,
    QueueFullError,
    StopTimeoutError,
    ValidationError,
)
from eventbroker.models import Event, EventSource, EventStatus
from eventbroker.providers.database import DatabaseProvider
from eventbroker.providers.memory import MemoryProvider

FAST_RETRY = RetryPolicy(max_retries=3, initial_delay=0.001, max_delay=0.01, backoff_factor=2.0)


def _event(event_type: str = "public.users.create", **kwargs) -> Event:
    kwargs.setdefault("instance_id", "test-instance")
    return Event.new(EventSource.DATABASE, event_type, **kwargs)


@pytest.fixture
async def sync_broker() -> Broker:
    broker = Broker(
        MemoryProvider(instance_id="test-instance"),
        instance_id="test-instance",
        mode=ProcessingMode.SYNC,
        retry_policy=FAST_RETRY,
    )
    await broker.start()
    yield broker
    await broker.stop()


@pytest.fixture
async def async_broker() -> Broker:
    broker = Broker(
        MemoryProvider(instance_id="test-instance"),
        instance_id="test-instance",
        mode=ProcessingMode.ASYNC,
        worker_count=5,
        buffer_size=100,
        retry_policy=FAST_RETRY,
    )
    await broker.start()
    yield broker
    await broker.stop()


class FlakyHandler:
    """Fails the first `failures` calls, then succeeds."""

    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0
        self.retry_counts: list[int] = []

    async def handle(self, event: Event) -> None:
        self.calls += 1
        self.retry_counts.append(event.retry_count)
        if self.calls <= self.failures:
            raise RuntimeError(f"fail {self.calls}")


class TestRetryPolicy:
    def test_delay_grows_and_is_capped(self) -> None:
        policy = RetryPolicy(max_retries=4, initial_delay=1.0, max_delay=5.0, backoff_factor=2.0)
        assert [policy.delay_for(n) for n in range(1, 5)] == [1.0, 2.0, 4.0, 5.0]

    def test_defaults(self) -> None:
        policy = RetryPolicy()
        assert (policy.max_retries, policy.initial_delay, policy.max_delay, policy.backoff_factor) == (
            3,
            1.0,
            30.0,
            2.0,
        )


class TestBrokerLifecycle:
    def test_requires_provider_and_instance_id(self) -> None:
        with pytest.raises(ConfigurationError):
            Broker(None, instance_id="x")
        with pytest.raises(ConfigurationError):
            Broker(MemoryProvider(), instance_id="")

    def test_rejects_unknown_mode(self) -> None:
        with pytest.raises(ConfigurationError):
            Broker(MemoryProvider(), instance_id="x", mode="batch")

    @pytest.mark.asyncio
    async def test_publish_before_start_fails(self) -> None:
        broker = Broker(MemoryProvider(), instance_id="x", mode="sync")
        with pytest.raises(NotRunningError):
            await broker.publish(_event())
        await broker.stop()

    @pytest.mark.asyncio
    async def test_double_start_fails(self, async_broker: Broker) -> None:
        with pytest.raises(AlreadyRunningError):
            await async_broker.start()

    @pytest.mark.asyncio
    async def test_stopped_broker_cannot_restart_or_publish(self) -> None:
        broker = Broker(MemoryProvider(), instance_id="x")
        await broker.start()
        await broker.stop()
        await broker.stop()
        assert not broker.is_running
        with pytest.raises(NotRunningError):
            await broker.start()
        with pytest.raises(NotRunningError):
            await broker.publish_async(_event())

    @pytest.mark.asyncio
    async def test_stop_closes_provider_and_clears_subscriptions(self) -> None:
        provider = MemoryProvider()
        provider.close = AsyncMock()
        broker = Broker(provider, instance_id="x", mode="sync")
        broker.subscribe("*", lambda e: None)
        await broker.start()
        await broker.stop()
        provider.close.assert_awaited_once()
        assert (await broker.stats()).active_subscribers == 0


class TestBrokerValidation:
    @pytest.mark.asyncio
    async def test_invalid_event_rejected_before_io(self, sync_broker: Broker) -> None:
        handler = AsyncMock()
        sync_broker.subscribe("*", handler)
        event = _event(instance_id="")
        with pytest.raises(ValidationError):
            await sync_broker.publish(event)
        handler.assert_not_awaited()
        assert await sync_broker.provider.list() == []

    @pytest.mark.asyncio
    async def test_transport_error_propagates(self, sync_broker: Broker) -> None:
        sync_broker.provider.publish = AsyncMock(side_effect=ConnectionError("down"))
        with pytest.raises(ConnectionError):
            await sync_broker.publish(_event())
        assert (await sync_broker.stats()).total_published == 0


class TestBrokerSyncDispatch:
    @pytest.mark.asyncio
    async def test_scenario_single_subscriber_completes(self, sync_broker: Broker) -> None:
        handler = AsyncMock()
        sync_broker.subscribe("public.users.*", handler)
        event = _event()
        await sync_broker.publish(event)

        handler.assert_awaited_once()
        assert event.status is EventStatus.COMPLETED
        stored = await sync_broker.provider.get(event.id)
        assert stored.status is EventStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_scenario_overlapping_patterns_each_invoked_once(
        self, sync_broker: Broker
    ) -> None:
        wildcard, exact = AsyncMock(), AsyncMock()
        sync_broker.subscribe("*.*.create", wildcard)
        sync_broker.subscribe("public.users.create", exact)
        await sync_broker.publish(_event())
        wildcard.assert_awaited_once()
        exact.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_retry_until_success(self, sync_broker: Broker) -> None:
        handler = FlakyHandler(failures=2)
        sync_broker.subscribe("*", handler)
        event = _event()
        await sync_broker.publish_sync(event)

        assert handler.calls == 3
        assert handler.retry_counts == [0, 1, 2]
        assert event.retry_count == 2
        assert event.status is EventStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_retry_exhaustion_fails_with_last_error(self) -> None:
        broker = Broker(
            MemoryProvider(),
            instance_id="x",
            mode="sync",
            retry_policy=RetryPolicy(max_retries=2, initial_delay=0.001, max_delay=0.01),
        )
        await broker.start()
        handler = FlakyHandler(failures=100)
        broker.subscribe("*", handler)
        event = _event()

        with pytest.raises(HandlerError) as exc_info:
            await broker.publish_sync(event)

        assert handler.calls == 3
        assert exc_info.value.message == "fail 3"
        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert event.status is EventStatus.FAILED
        assert event.error == "fail 3"
        stored = await broker.provider.get(event.id)
        assert stored.status is EventStatus.FAILED
        assert stored.error == "fail 3"
        stats = await broker.stats()
        assert (stats.total_published, stats.total_processed, stats.total_failed) == (1, 0, 1)
        await broker.stop()

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_stop_others(self, sync_broker: Broker) -> None:
        healthy = AsyncMock()
        sync_broker.subscribe("*", FlakyHandler(failures=100))
        sync_broker.subscribe("*", healthy)
        with pytest.raises(HandlerError):
            await sync_broker.publish_sync(_event())
        healthy.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_handlers_get_their_own_copy(self, sync_broker: Broker) -> None:
        seen: list[Event] = []

        async def mutating(event: Event) -> None:
            event.metadata["touched"] = True
            seen.append(event)

        sync_broker.subscribe("*", mutating)
        event = _event()
        await sync_broker.publish(event)
        assert seen[0] is not event
        assert "touched" not in event.metadata
        assert seen[0].status is EventStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_no_handlers_leaves_status_untouched(self, sync_broker: Broker) -> None:
        event = _event()
        await sync_broker.publish(event)
        assert event.status is EventStatus.PENDING
        assert (await sync_broker.provider.get(event.id)).status is EventStatus.PENDING

    @pytest.mark.asyncio
    async def test_unsubscribed_handler_not_invoked(self, sync_broker: Broker) -> None:
        handler = AsyncMock()
        sub_id = sync_broker.subscribe("*", handler)
        sync_broker.unsubscribe(sub_id)
        await sync_broker.publish(_event())
        handler.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_status_persistence_failure_is_not_raised(self, sync_broker: Broker) -> None:
        sync_broker.provider.update_status = AsyncMock(side_effect=RuntimeError("db down"))
        handler = AsyncMock()
        sync_broker.subscribe("*", handler)
        event = _event()
        await sync_broker.publish(event)
        handler.assert_awaited_once()
        assert event.status is EventStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cancellation_aborts_backoff(self) -> None:
        broker = Broker(
            MemoryProvider(),
            instance_id="x",
            mode="sync",
            retry_policy=RetryPolicy(max_retries=3, initial_delay=10.0),
        )
        await broker.start()
        handler = FlakyHandler(failures=100)
        broker.subscribe("*", handler)
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(broker.publish_sync(_event()), timeout=0.1)
        assert handler.calls == 1
        await broker.stop()


class TestBrokerAsyncDispatch:
    @pytest.mark.asyncio
    async def test_scenario_concurrent_producers(self, async_broker: Broker) -> None:
        seen: list[str] = []

        async def handler(event: Event) -> None:
            await asyncio.sleep(0.001)
            seen.append(event.id)

        async_broker.subscribe("public.users.*", handler)
        events = [_event() for _ in range(50)]

        async def produce(batch: list[Event]) -> None:
            for event in batch:
                await async_broker.publish(event)

        await asyncio.gather(*(produce(events[i::5]) for i in range(5)))
        await async_broker.stop()

        assert len(seen) == 50
        assert sorted(seen) == sorted(e.id for e in events)
        stats = await async_broker.stats()
        assert stats.total_published == 50
        assert stats.total_processed == 50
        assert stats.total_failed == 0

    @pytest.mark.asyncio
    async def test_failures_are_not_raised_to_publisher(self, async_broker: Broker) -> None:
        async_broker.subscribe("*", FlakyHandler(failures=100))
        event = _event()
        await async_broker.publish_async(event)
        await async_broker._pool.stop(timeout=5.0)

        stored = await async_broker.provider.get(event.id)
        assert stored.status is EventStatus.FAILED
        assert stored.error == "fail 4"
        assert (await async_broker.stats()).total_failed == 1

    @pytest.mark.asyncio
    async def test_queue_full_is_raised_without_blocking(self) -> None:
        release = asyncio.Event()
        started = asyncio.Event()

        async def blocking(event: Event) -> None:
            started.set()
            await release.wait()

        provider = MemoryProvider()
        broker = Broker(provider, instance_id="x", worker_count=1, buffer_size=1)
        broker.subscribe("*", blocking)
        await broker.start()
        await broker.publish(_event())
        await asyncio.wait_for(started.wait(), timeout=1.0)
        await broker.publish(_event())
        rejected = _event()
        with pytest.raises(QueueFullError):
            await broker.publish(rejected)
        stats = await broker.stats()
        assert stats.queue_size == 1
        assert stats.active_workers == 1
        # The stored copy does not stay pending forever.
        stored = await provider.get(rejected.id)
        assert stored.status is EventStatus.FAILED
        assert stored.error == "event queue is full"
        assert stats.total_failed == 1
        assert stats.total_published == 3
        release.set()
        await broker.stop(timeout=1.0)

    @pytest.mark.asyncio
    async def test_scenario_stop_waits_for_in_flight_handlers(self, async_broker: Broker) -> None:
        started = 0
        completed = 0

        async def slow(event: Event) -> None:
            nonlocal started, completed
            started += 1
            await asyncio.sleep(0.2)
            completed += 1

        async_broker.subscribe("*", slow)
        for _ in range(5):
            await async_broker.publish(_event())
        for _ in range(100):
            if started == 5:
                break
            await asyncio.sleep(0.01)
        assert started == 5

        await async_broker.stop(timeout=5.0)
        assert completed == 5
        with pytest.raises(NotRunningError):
            await async_broker.publish(_event())

    @pytest.mark.asyncio
    async def test_stop_timeout_raised_after_provider_closed(self) -> None:
        provider = MemoryProvider()

        async def stuck(event: Event) -> None:
            await asyncio.sleep(10)

        broker = Broker(provider, instance_id="x", worker_count=1, buffer_size=10)
        broker.subscribe("*", stuck)
        await broker.start()
        await broker.publish(_event())
        await asyncio.sleep(0.01)
        with pytest.raises(StopTimeoutError):
            await broker.stop(timeout=0.05)
        assert provider._closed


class TestBrokerObservability:
    @pytest.mark.asyncio
    async def test_stats_snapshot(self, async_broker: Broker) -> None:
        async_broker.subscribe("*", AsyncMock())
        async_broker.subscribe("a.b.c", AsyncMock())
        stats = await async_broker.stats()
        assert stats.instance_id == "test-instance"
        assert stats.mode is ProcessingMode.ASYNC
        assert stats.is_running
        assert stats.active_subscribers == 2
        assert stats.provider_stats is not None
        assert stats.provider_stats.provider_type == "memory"

    @pytest.mark.asyncio
    async def test_provider_stats_failure_is_omitted(self, sync_broker: Broker) -> None:
        sync_broker.provider.stats = AsyncMock(side_effect=RuntimeError("nope"))
        stats = await sync_broker.stats()
        assert stats.provider_stats is None

    @pytest.mark.asyncio
    async def test_metrics_recorded(self) -> None:
        sink = MagicMock()
        broker = Broker(MemoryProvider(), instance_id="x", mode="sync", metrics=sink)
        broker.subscribe("*", AsyncMock())
        await broker.start()
        event = _event()
        await broker.publish(event)

        sink.record_event_published.assert_called_once_with("database", "public.users.create")
        args = sink.record_event_processed.call_args.args
        assert args[:3] == ("database", "public.users.create", "completed")
        assert args[3] >= 0
        await broker.stop()

    @pytest.mark.asyncio
    async def test_metrics_failures_are_ignored(self) -> None:
        sink = MagicMock()
        sink.record_event_published.side_effect = RuntimeError("metrics down")
        sink.record_event_processed.side_effect = RuntimeError("metrics down")
        broker = Broker(MemoryProvider(), instance_id="x", mode="sync", metrics=sink)
        broker.subscribe("*", AsyncMock())
        await broker.start()
        event = _event()
        await broker.publish(event)
        assert event.status is EventStatus.COMPLETED
        await broker.stop()


class TestBrokerWithDatabaseProvider:
    @pytest.mark.asyncio
    async def test_status_persisted_through_side_channel(self, tmp_path: Path) -> None:
        provider = DatabaseProvider(tmp_path / "events.db")
        broker = Broker(provider, instance_id="x", mode="sync", retry_policy=FAST_RETRY)
        ok = _event("public.users.create")
        bad = _event("public.users.delete")

        async def handler(event: Event) -> None:
            if event.type.endswith(".delete"):
                raise ValueError("cannot delete")

        broker.subscribe("public.users.*", handler)
        await broker.start()
        await broker.publish(ok)
        with pytest.raises(HandlerError):
            await broker.publish(bad)

        assert (await provider.get(ok.id)).status is EventStatus.COMPLETED
        failed = await provider.get(bad.id)
        assert failed.status is EventStatus.FAILED
        assert failed.error == "cannot delete"
        await broker.stop()
