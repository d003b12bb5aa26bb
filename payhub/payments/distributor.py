"""Live status distribution to waiting clients (server-sent events).

The registry of subscribers is process-local: only clients connected to the
process that performed the reconciliation receive the push.
"""

import asyncio
import json
import time
from collections.abc import AsyncIterator, Awaitable, Callable

import structlog

from payhub.payments.channel import EventChannel
from payhub.payments.schemas import StatusChangedEvent

logger = structlog.get_logger(__name__)

_QUEUE_SIZE = 32
_DISCONNECT_POLL_SECONDS = 1.0
KEEPALIVE_COMMENT = ": keep-alive\n\n"


def sse_message(payload: dict) -> str:
    return f"data: {json.dumps(payload, default=str)}\n\n"


class Subscription:
    """Bounded mailbox for one stream. Use as an async context manager."""

    def __init__(self, distributor: "LiveStatusDistributor", request_id: int, maxsize: int = _QUEUE_SIZE):
        self.request_id = request_id
        self.queue: asyncio.Queue[StatusChangedEvent] = asyncio.Queue(maxsize=maxsize)
        self._distributor = distributor
        self.dropped = 0

    def offer(self, event: StatusChangedEvent) -> None:
        """Enqueue without blocking; a full mailbox drops its oldest message."""
        if self.queue.full():
            self.queue.get_nowait()
            self.dropped += 1
        self.queue.put_nowait(event)

    async def get(self, timeout: float | None = None) -> StatusChangedEvent | None:
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def close(self) -> None:
        self._distributor.unsubscribe(self)

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc) -> None:
        self.close()


class LiveStatusDistributor:
    """Fans ``payments:status-changed`` events out to subscribers keyed by order id."""

    def __init__(self, channel: EventChannel):
        self._subscribers: dict[int, set[Subscription]] = {}
        self._unregister = channel.subscribe(self.dispatch)

    def subscribe(self, request_id: int) -> Subscription:
        subscription = Subscription(self, request_id)
        self._subscribers.setdefault(request_id, set()).add(subscription)
        logger.debug("stream_subscribed", request_id=request_id, subscribers=self.subscriber_count(request_id))
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.request_id)
        if not subscribers:
            return
        subscribers.discard(subscription)
        if not subscribers:
            del self._subscribers[subscription.request_id]
        logger.debug("stream_unsubscribed", request_id=subscription.request_id)

    def subscriber_count(self, request_id: int | None = None) -> int:
        if request_id is None:
            return sum(len(subs) for subs in self._subscribers.values())
        return len(self._subscribers.get(request_id, ()))

    def dispatch(self, event: StatusChangedEvent) -> None:
        for subscription in list(self._subscribers.get(event.request_id, ())):
            subscription.offer(event)

    def close(self) -> None:
        self._unregister()
        self._subscribers.clear()


def snapshot_message(snapshot) -> dict:
    """Initial stream message built from a PaymentRequest row."""
    return {
        "type": "snapshot",
        "request_id": snapshot.request_id,
        "status": snapshot.status,
        "status_detail": snapshot.status_detail,
        "updated_at": snapshot.updated_at.isoformat() if snapshot.updated_at else None,
    }


async def status_event_stream(
    distributor: LiveStatusDistributor,
    request_id: int,
    is_disconnected: Callable[[], Awaitable[bool]],
    load_initial: Callable[[], Awaitable[dict | None]] | None = None,
    keepalive_seconds: float = 25.0,
    poll_seconds: float = _DISCONNECT_POLL_SECONDS,
) -> AsyncIterator[str]:
    """SSE generator: initial snapshot, every matching event, periodic keep-alives.

    Stops when ``is_disconnected`` reports the client gone. The subscription
    is registered before the initial snapshot is loaded so no change can slip
    between them, and is always removed on exit.
    """
    async with distributor.subscribe(request_id) as subscription:
        if load_initial is not None:
            initial = await load_initial()
            if initial is not None:
                yield sse_message(initial)

        last_sent = time.monotonic()
        while True:
            if await is_disconnected():
                logger.debug("stream_client_disconnected", request_id=request_id)
                return

            event = await subscription.get(timeout=min(poll_seconds, keepalive_seconds))
            if event is not None:
                yield sse_message(event.model_dump(mode="json"))
                last_sent = time.monotonic()
                continue

            if time.monotonic() - last_sent >= keepalive_seconds:
                yield KEEPALIVE_COMMENT
                last_sent = time.monotonic()
