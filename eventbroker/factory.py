"""Build providers and brokers from the `event_broker` settings section."""

import logging
import socket
from pathlib import Path
from typing import Any, Callable

from eventbroker.broker import Broker, ProcessingMode, RetryPolicy
from eventbroker.errors import ConfigurationError
from eventbroker.metrics import MetricsSink
from eventbroker.providers.base import Provider
from eventbroker.providers.database import DatabaseProvider
from eventbroker.providers.memory import MemoryProvider
from eventbroker.providers.redis_stream import RedisStreamProvider
from eventbroker.settings import _deep_merge, get_default_settings

logger = logging.getLogger(__name__)

DEFAULT_INSTANCE_ID = "eventbroker-instance"


def resolve_instance_id(configured: str | None) -> str:
    """Configured id, else hostname, else a fixed fallback."""
    if configured:
        return configured
    try:
        hostname = socket.gethostname()
    except OSError:
        hostname = ""
    return hostname or DEFAULT_INSTANCE_ID


def _section(cfg: dict[str, Any] | None) -> dict[str, Any]:
    """cfg merged over the default `event_broker` section."""
    merged = get_default_settings()["event_broker"]
    if cfg:
        _deep_merge(merged, cfg)
    return merged


def _memory(cfg: dict[str, Any], instance_id: str, project_root: Path | None) -> Provider:
    opts = cfg["memory"]
    return MemoryProvider(
        instance_id=instance_id,
        max_events=int(opts["max_events"]),
        cleanup_interval=float(opts["cleanup_interval"]),
        max_age=float(opts["max_age"]),
        stream_buffer_size=int(opts["stream_buffer_size"]),
        stream_drop_evicted=bool(opts["stream_drop_evicted"]),
    )


def _database(cfg: dict[str, Any], instance_id: str, project_root: Path | None) -> Provider:
    opts = cfg["database"]
    db_path = Path(opts["db_path"])
    if not db_path.is_absolute() and project_root is not None:
        db_path = project_root / db_path
    max_age = opts.get("max_age")
    return DatabaseProvider(
        db_path,
        instance_id=instance_id,
        table_name=opts["table_name"],
        poll_interval=float(opts["poll_interval"]),
        batch_size=int(opts["batch_size"]),
        busy_timeout=int(opts["busy_timeout"]),
        max_age=float(max_age) if max_age else None,
    )


def _redis(cfg: dict[str, Any], instance_id: str, project_root: Path | None) -> Provider:
    opts = cfg["redis"]
    return RedisStreamProvider(
        instance_id=instance_id,
        host=opts["host"],
        port=int(opts["port"]),
        password=opts.get("password") or None,
        db=int(opts["db"]),
        stream_name=opts["stream_name"],
        consumer_group=opts["consumer_group"],
        max_len=int(opts["max_len"]),
        block_ms=int(opts["block_ms"]),
        tombstone_ttl=int(opts["tombstone_ttl"]),
        prune_every=int(opts["prune_every"]),
    )


ProviderFactory = Callable[[dict[str, Any], str, Path | None], Provider]

PROVIDERS: dict[str, ProviderFactory] = {
    "memory": _memory,
    "database": _database,
    "sql": _database,
    "sql-polling": _database,
    "redis": _redis,
    "stream": _redis,
    "networked-stream": _redis,
}


def create_provider(
    cfg: dict[str, Any] | None, project_root: Path | None = None
) -> Provider:
    """Select and build the provider named by cfg["provider"]."""
    section = _section(cfg)
    name = str(section.get("provider", "")).lower()
    factory = PROVIDERS.get(name)
    if factory is None:
        raise ConfigurationError(f"unknown provider: {name}")
    instance_id = resolve_instance_id(section.get("instance_id"))
    provider = factory(section, instance_id, project_root)
    logger.info("Created %s provider for instance %s", provider.provider_type, instance_id)
    return provider


def retry_policy_from_config(cfg: dict[str, Any]) -> RetryPolicy:
    """max_retries == 0 selects the built-in policy, not "no retries"."""
    opts = cfg.get("retry_policy") or {}
    if not opts.get("max_retries"):
        return RetryPolicy()
    return RetryPolicy(
        max_retries=int(opts["max_retries"]),
        initial_delay=float(opts.get("initial_delay", 1.0)),
        max_delay=float(opts.get("max_delay", 30.0)),
        backoff_factor=float(opts.get("backoff_factor", 2.0)),
    )


def create_broker(
    cfg: dict[str, Any] | None,
    metrics: MetricsSink | None = None,
    project_root: Path | None = None,
) -> Broker:
    """Provider, mode, pool sizing and retry policy from one settings section. Not started."""
    section = _section(cfg)
    mode = ProcessingMode.SYNC if section.get("mode") == "sync" else ProcessingMode.ASYNC
    provider = create_provider(section, project_root)
    return Broker(
        provider,
        instance_id=resolve_instance_id(section.get("instance_id")),
        mode=mode,
        worker_count=int(section.get("worker_count") or 10),
        buffer_size=int(section.get("buffer_size") or 1000),
        retry_policy=retry_policy_from_config(section),
        metrics=metrics,
    )
