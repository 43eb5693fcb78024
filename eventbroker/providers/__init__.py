"""Event storage and transport backends."""

from eventbroker.providers.base import EventFilter, EventStream, Provider, ProviderStats
from eventbroker.providers.database import DatabaseProvider
from eventbroker.providers.memory import MemoryProvider
from eventbroker.providers.redis_stream import RedisStreamProvider

__all__ = [
    "DatabaseProvider",
    "EventFilter",
    "EventStream",
    "MemoryProvider",
    "Provider",
    "ProviderStats",
    "RedisStreamProvider",
]
