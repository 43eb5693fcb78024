"""Handler capability: anything with `async handle(event)`, or a plain function."""

import inspect
from typing import Any, Awaitable, Callable, Protocol, runtime_checkable

from eventbroker.models import Event

HandlerCallable = Callable[[Event], Awaitable[None] | None]


@runtime_checkable
class EventHandler(Protocol):
    """Processes one event. Raise to signal failure; the broker retries."""

    async def handle(self, event: Event) -> None: ...


class HandlerFunc:
    """Adapts a sync or async function to EventHandler."""

    def __init__(self, fn: HandlerCallable) -> None:
        self._fn = fn
        self.__name__ = getattr(fn, "__name__", type(fn).__name__)

    async def handle(self, event: Event) -> None:
        result = self._fn(event)
        if inspect.isawaitable(result):
            await result

    def __repr__(self) -> str:
        return f"HandlerFunc({self.__name__})"


def as_handler(handler: Any) -> EventHandler:
    """Normalize a handler object or callable to the EventHandler capability."""
    if inspect.iscoroutinefunction(handler) or inspect.isroutine(handler):
        return HandlerFunc(handler)
    if isinstance(handler, EventHandler):
        return handler
    if callable(handler):
        return HandlerFunc(handler)
    raise TypeError(f"not an event handler: {handler!r}")
