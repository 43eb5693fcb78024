"""Turn CRUD side effects into broker events.

The CRUD layer owns a hook registry; `register_crud_hooks` installs one
after-operation hook per enabled operation. Hooks publish asynchronously
and never fail the CRUD operation. The broker does not call back into
this module.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol, runtime_checkable

from eventbroker.errors import BrokerError, ConfigurationError
from eventbroker.models import Event, EventSource, event_type

logger = logging.getLogger(__name__)

AFTER_CREATE = "after_create"
AFTER_READ = "after_read"
AFTER_UPDATE = "after_update"
AFTER_DELETE = "after_delete"


@dataclass
class HookContext:
    """What the CRUD layer knows after an operation, plus the acting user."""

    schema: str
    entity: str
    table_name: str = ""
    id: Any = None
    data: Any = None
    result: Any = None
    user_id: int | None = None
    session_id: str = ""
    user_name: str = ""
    email: str = ""
    roles: list[str] = field(default_factory=list)


@dataclass
class CRUDHookConfig:
    enable_create: bool = True
    enable_read: bool = False
    enable_update: bool = True
    enable_delete: bool = True


HookFunc = Callable[[HookContext], Awaitable[None]]


@runtime_checkable
class HookRegistry(Protocol):
    def register(self, hook_type: str, fn: HookFunc) -> None: ...


class _Publisher(Protocol):
    @property
    def instance_id(self) -> str: ...

    async def publish_async(self, event: Event) -> None: ...


def _payload_for(operation: str, ctx: HookContext) -> Any:
    if operation in ("create", "read"):
        return ctx.result
    if operation == "update":
        return {"id": ctx.id, "data": ctx.data}
    if operation == "delete":
        return {"id": ctx.id}
    return None


def build_crud_event(operation: str, ctx: HookContext, instance_id: str) -> Event:
    """Database-sourced event `schema.entity.operation` carrying user metadata."""
    event = Event.new(
        EventSource.DATABASE,
        event_type(ctx.schema, ctx.entity, operation),
        instance_id=instance_id,
        user_id=ctx.user_id,
        session_id=ctx.session_id,
        schema=ctx.schema,
        entity=ctx.entity,
        operation=operation,
    )
    payload = _payload_for(operation, ctx)
    if payload is not None:
        try:
            event.set_payload(payload)
        except BrokerError as e:
            logger.error("Failed to set event payload: %s", e)
            event.set_payload({"error": "failed to serialize payload"})
    if ctx.user_name:
        event.metadata["user_name"] = ctx.user_name
    if ctx.email:
        event.metadata["user_email"] = ctx.email
    if ctx.roles:
        event.metadata["user_roles"] = list(ctx.roles)
    event.metadata["table_name"] = ctx.table_name
    return event


def _make_hook(broker: _Publisher, operation: str) -> HookFunc:
    async def hook(ctx: HookContext) -> None:
        event = build_crud_event(operation, ctx, broker.instance_id)
        try:
            await broker.publish_async(event)
        except Exception as e:
            logger.error(
                "Failed to publish %s event for %s.%s: %s",
                operation,
                ctx.schema,
                ctx.entity,
                e,
            )
            return
        logger.debug(
            "Published %s event for %s.%s (ID: %s)",
            operation,
            ctx.schema,
            ctx.entity,
            event.id,
        )

    hook.__name__ = f"eventbroker_{operation}_hook"
    return hook


def register_crud_hooks(
    broker: _Publisher,
    registry: HookRegistry,
    config: CRUDHookConfig | None = None,
) -> None:
    if broker is None:
        raise ConfigurationError("broker cannot be nil")
    if registry is None:
        raise ConfigurationError("hook registry cannot be nil")
    config = config or CRUDHookConfig()

    for enabled, hook_type, operation in (
        (config.enable_create, AFTER_CREATE, "create"),
        (config.enable_read, AFTER_READ, "read"),
        (config.enable_update, AFTER_UPDATE, "update"),
        (config.enable_delete, AFTER_DELETE, "delete"),
    ):
        if enabled:
            registry.register(hook_type, _make_hook(broker, operation))
            logger.info("Registered event hook for %s operations", operation.upper())
