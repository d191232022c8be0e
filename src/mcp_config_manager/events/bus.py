"""Publish/subscribe channel for server events and repository watches."""

import asyncio
import inspect
from typing import Any, Callable, Generic, List, Optional, Set, TypeVar

from ..config.logging import get_logger
from ..domain.events import EventType, ServerEvent

logger = get_logger(__name__)

T = TypeVar("T")

_CLOSED = object()


class Subscription:
    """Cancellation handle for a subscription."""

    def __init__(self, on_close: Optional[Callable[["Subscription"], None]] = None):
        self._on_close = on_close
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        if self._on_close:
            self._on_close(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.unsubscribe()


class StreamSubscription(Subscription, Generic[T]):
    """Queue-backed subscription consumed with ``async for`` or :meth:`get`.

    Items pushed after :meth:`unsubscribe` are dropped; iteration ends once
    the queue is drained after closing.
    """

    def __init__(self, on_close: Optional[Callable[[Subscription], None]] = None):
        super().__init__(on_close)
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()

    def push(self, item: T) -> None:
        if self.active:
            self._queue.put_nowait(item)

    def unsubscribe(self) -> None:
        if self.active:
            super().unsubscribe()
            self._queue.put_nowait(_CLOSED)

    async def get(self, timeout: Optional[float] = None) -> T:
        """Wait for the next item.

        Raises:
            asyncio.TimeoutError: if ``timeout`` elapses first
            StopAsyncIteration: if the subscription was closed
        """
        if timeout is None:
            item = await self._queue.get()
        else:
            item = await asyncio.wait_for(self._queue.get(), timeout)
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    def drain(self) -> List[T]:
        """Return every item already queued without waiting."""
        items = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is _CLOSED:
                break
            items.append(item)
        return items

    def __aiter__(self):
        return self

    async def __anext__(self) -> T:
        return await self.get()


class _Handler:
    def __init__(
        self,
        callback: Callable[[ServerEvent], Any],
        server_id: Optional[str],
        event_types: Optional[Set[EventType]],
    ):
        self.callback = callback
        self.server_id = server_id
        self.event_types = event_types

    def matches(self, event: ServerEvent) -> bool:
        if self.server_id is not None and event.server_id != self.server_id:
            return False
        if self.event_types is not None and event.type not in self.event_types:
            return False
        return True


class EventBus:
    """In-process event fan-out.

    Handlers run in subscription order for each event, and events are
    delivered in the order :meth:`publish` is called. A failing handler is
    logged and does not stop delivery to the others.
    """

    def __init__(self):
        self._subscribers: "dict[Subscription, _Handler]" = {}

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(
        self,
        handler: Callable[[ServerEvent], Any],
        server_id: Optional[str] = None,
        event_types: Optional[Set[EventType]] = None,
    ) -> Subscription:
        """Register a sync or async callback; returns its cancellation handle."""
        subscription = Subscription(self._remove)
        self._subscribers[subscription] = _Handler(handler, server_id, event_types)
        return subscription

    def stream(
        self,
        server_id: Optional[str] = None,
        event_types: Optional[Set[EventType]] = None,
    ) -> StreamSubscription[ServerEvent]:
        """Subscribe with a queue that the caller iterates."""
        subscription: StreamSubscription[ServerEvent] = StreamSubscription(self._remove)
        self._subscribers[subscription] = _Handler(subscription.push, server_id, event_types)
        return subscription

    async def publish(self, event: ServerEvent) -> None:
        for subscription, handler in list(self._subscribers.items()):
            if not subscription.active or not handler.matches(event):
                continue
            try:
                result = handler.callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(
                    "Event handler failed",
                    event_type=event.type.value,
                    server_id=str(event.server_id),
                    error=str(e),
                )

    def _remove(self, subscription: Subscription) -> None:
        self._subscribers.pop(subscription, None)
