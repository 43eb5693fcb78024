"""Explicit holder for an application-wide broker.

Prefer passing a Broker to the components that need it. The registry exists
for code that cannot be handed one; tests call reset().
"""

import logging
import threading
from pathlib import Path
from typing import Any

from eventbroker.broker import Broker
from eventbroker.errors import NotInitializedError
from eventbroker.factory import create_broker
from eventbroker.metrics import MetricsSink
from eventbroker.settings import get_setting

logger = logging.getLogger(__name__)


class BrokerRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._broker: Broker | None = None

    def set(self, broker: Broker) -> None:
        with self._lock:
            self._broker = broker

    def get(self) -> Broker:
        with self._lock:
            broker = self._broker
        if broker is None:
            raise NotInitializedError("event broker not initialized")
        return broker

    @property
    def is_initialized(self) -> bool:
        with self._lock:
            return self._broker is not None

    def reset(self) -> Broker | None:
        """Forget the registered broker and return it. Does not stop it."""
        with self._lock:
            broker, self._broker = self._broker, None
        return broker


default_registry = BrokerRegistry()


async def initialize(
    settings: dict[str, Any],
    *,
    registry: BrokerRegistry | None = None,
    metrics: MetricsSink | None = None,
    project_root: Path | None = None,
) -> Broker | None:
    """Build, start and register a broker from settings["event_broker"].

    Returns None without registering when event_broker.enabled is false.
    """
    registry = registry or default_registry
    cfg = get_setting(settings, "event_broker", {}) or {}
    if not cfg.get("enabled", True):
        logger.info("Event broker is disabled")
        return None

    broker = create_broker(cfg, metrics=metrics, project_root=project_root)
    await broker.start()
    registry.set(broker)
    logger.info(
        "Event broker initialized successfully (provider: %s, mode: %s, instance: %s)",
        broker.provider.provider_type,
        broker.mode.value,
        broker.instance_id,
    )
    return broker


async def shutdown(
    timeout: float | None = 30.0, *, registry: BrokerRegistry | None = None
) -> None:
    """Stop and unregister the registered broker, if any."""
    registry = registry or default_registry
    broker = registry.reset()
    if broker is None:
        return
    logger.info("Shutting down event broker...")
    await broker.stop(timeout)
