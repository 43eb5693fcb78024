"""Publish/subscribe event broker with pluggable providers."""

from eventbroker.broker import Broker, BrokerStats, ProcessingMode, RetryPolicy
from eventbroker.errors import (
    AlreadyRunningError,
    BrokerError,
    ConfigurationError,
    HandlerError,
    InvalidTransitionError,
    LifecycleError,
    NotFoundError,
    NotInitializedError,
    NotRunningError,
    PoolStoppedError,
    QueueFullError,
    StopTimeoutError,
    ValidationError,
)
from eventbroker.factory import create_broker, create_provider, resolve_instance_id
from eventbroker.handlers import EventHandler, HandlerFunc, as_handler
from eventbroker.metrics import MetricsSink
from eventbroker.models import Event, EventSource, EventStatus, event_type
from eventbroker.providers import (
    DatabaseProvider,
    EventFilter,
    EventStream,
    MemoryProvider,
    Provider,
    ProviderStats,
    RedisStreamProvider,
)
from eventbroker.registry import BrokerRegistry, default_registry
from eventbroker.subscriptions import SubscriptionID, SubscriptionManager, match_pattern

__all__ = [
    "AlreadyRunningError",
    "Broker",
    "BrokerError",
    "BrokerRegistry",
    "BrokerStats",
    "ConfigurationError",
    "DatabaseProvider",
    "Event",
    "EventFilter",
    "EventHandler",
    "EventSource",
    "EventStatus",
    "EventStream",
    "HandlerError",
    "HandlerFunc",
    "InvalidTransitionError",
    "LifecycleError",
    "MemoryProvider",
    "MetricsSink",
    "NotFoundError",
    "NotInitializedError",
    "NotRunningError",
    "PoolStoppedError",
    "ProcessingMode",
    "Provider",
    "ProviderStats",
    "QueueFullError",
    "RedisStreamProvider",
    "RetryPolicy",
    "StopTimeoutError",
    "SubscriptionID",
    "SubscriptionManager",
    "ValidationError",
    "as_handler",
    "create_broker",
    "create_provider",
    "default_registry",
    "event_type",
    "match_pattern",
    "resolve_instance_id",
]
