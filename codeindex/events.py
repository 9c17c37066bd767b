"""Minimal in-process event bus used for progress reporting."""

import logging
from collections import defaultdict
from typing import Any, Callable

logger = logging.getLogger(__name__)

Handler = Callable[[Any], None]


class EventBus:
    """Named-event publish/subscribe.

    Handlers are called synchronously in subscription order. A handler that
    raises is logged and the remaining handlers still receive the event.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def on(self, event: str, handler: Handler) -> Callable[[], None]:
        """Subscribe *handler* to *event*. Returns an unsubscribe function."""
        self._handlers[event].append(handler)
        return lambda: self.off(event, handler)

    def off(self, event: str, handler: Handler) -> None:
        handlers = self._handlers.get(event)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def once(self, event: str, handler: Handler) -> Callable[[], None]:
        """Subscribe *handler* for a single delivery of *event*."""

        def wrapper(payload: Any) -> None:
            self.off(event, wrapper)
            handler(payload)

        return self.on(event, wrapper)

    def emit(self, event: str, payload: Any = None) -> None:
        for handler in list(self._handlers.get(event, ())):
            try:
                handler(payload)
            except Exception:
                logger.exception("Event handler for %r failed", event)

    def listener_count(self, event: str) -> int:
        return len(self._handlers.get(event, ()))

    def clear(self) -> None:
        self._handlers.clear()
