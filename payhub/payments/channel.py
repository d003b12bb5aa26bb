"""In-process publish/subscribe channel for normalized payment events.

The channel is created by the application, owned by the reconciler (the only
publisher) and handed to consumers, which register handlers explicitly.
"""

from collections.abc import Awaitable, Callable

import structlog

from payhub.payments.schemas import StatusChangedEvent

logger = structlog.get_logger(__name__)

EventHandler = Callable[[StatusChangedEvent], Awaitable[None] | None]


class EventChannel:
    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        """Register a handler; returns a callable that removes it."""
        self._handlers.append(handler)

        def _unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return _unsubscribe

    @property
    def handler_count(self) -> int:
        return len(self._handlers)

    async def publish(self, event: StatusChangedEvent) -> int:
        """Deliver to every handler in registration order.

        A failing handler is logged and does not stop delivery to the others.
        Returns the number of handlers that accepted the event.
        """
        delivered = 0
        for handler in list(self._handlers):
            try:
                result = handler(event)
                if result is not None:
                    await result
                delivered += 1
            except Exception:
                logger.exception("channel_handler_failed", request_id=event.request_id, type=event.type)
        return delivered
