"""Publish/subscribe registry scoped to one owner (store, table or stream)."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable


class EventBus:
    """Named events with explicit subscription and unsubscription.

    Handlers run synchronously in subscription order; an exception raised by
    a handler propagates to the emitter.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Callable[..., object]]] = {}

    def on(self, event: str, handler: Callable[..., object]) -> Callable[[], None]:
        """Subscribe *handler* to *event*; returns a callable that unsubscribes."""
        self._handlers.setdefault(event, []).append(handler)

        def unsubscribe() -> None:
            self.off(event, handler)

        return unsubscribe

    def off(self, event: str, handler: Callable[..., object]) -> None:
        handlers = self._handlers.get(event)
        if not handlers or handler not in handlers:
            return
        handlers.remove(handler)
        if not handlers:
            del self._handlers[event]

    def emit(self, event: str, *args: Any) -> int:
        """Call every handler of *event*. Returns the number of handlers called."""
        handlers = list(self._handlers.get(event, ()))
        for handler in handlers:
            handler(*args)
        return len(handlers)

    def listener_count(self, event: str) -> int:
        return len(self._handlers.get(event, ()))

    def clear(self) -> None:
        self._handlers.clear()
