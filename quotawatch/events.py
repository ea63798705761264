"""Typed publish/subscribe channel between the scheduler and its consumers.

The scheduler publishes immutable event values; each consumer owns a
subscription and closes it when done.  Queues are bounded and drop the
oldest event when full, so a slow consumer may miss intermediate states
but always sees the latest one.

Two ways to consume:

- :meth:`EventBus.subscribe` returns an async :class:`Subscription` (used by
  the WebSocket bridge)
- :meth:`EventBus.add_listener` registers a synchronous callback (used by
  the tray state, tests)

``publish`` is safe to call from any thread or event loop.

>>> bus = EventBus()
>>> seen = []
>>> remove = bus.add_listener(lambda e: seen.append(e.topic), [USAGE_UPDATE])
>>> _ = bus.publish(USAGE_UPDATE, {"accountId": "a1"})
>>> _ = bus.publish(SESSION_STATUS, {"accountId": "a1"})
>>> seen
['usage-update']
>>> remove()
"""

import asyncio
import logging
import threading
import time
from typing import Any, Callable, Iterable, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

USAGE_UPDATE = "usage-update"
SESSION_STATUS = "session-status"
SCHEDULER_STATUS = "scheduler-status"
USAGE_RESET = "usage-reset"
SYSTEM_WAKE = "system-wake"

TOPICS = (USAGE_UPDATE, SESSION_STATUS, SCHEDULER_STATUS, USAGE_RESET, SYSTEM_WAKE)

DEFAULT_QUEUE_SIZE = 100


class Event(BaseModel):
    """One published event.  ``payload`` is the JSON-ready camelCase dict."""

    model_config = ConfigDict(frozen=True)

    topic: str
    payload: dict[str, Any]
    timestamp: float = Field(default_factory=time.time)


def _to_payload(payload: Union[BaseModel, dict, None]) -> dict:
    if payload is None:
        return {}
    if isinstance(payload, BaseModel):
        return payload.model_dump(by_alias=True, mode="json")
    return dict(payload)


def _matches(topics: frozenset, topic: str) -> bool:
    return "*" in topics or topic in topics


class Subscription:
    """Bounded async queue of events for one consumer.

    Use as an async iterator, or call :meth:`get`.  Closing removes it
    from the bus.
    """

    def __init__(self, bus: "EventBus", topics: frozenset, maxsize: int):
        self._bus = bus
        self.topics = topics
        self.dropped = 0
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        try:
            self._loop: Optional[asyncio.AbstractEventLoop] = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None

    def _put(self, event: Event) -> None:
        if self.closed:
            return
        if self._queue.full():
            try:
                self._queue.get_nowait()
                self.dropped += 1
            except asyncio.QueueEmpty:
                pass
        self._queue.put_nowait(event)

    def deliver(self, event: Event) -> None:
        """Hand *event* to this subscription from any thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            self._put(event)
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._put(event)
        else:
            loop.call_soon_threadsafe(self._put, event)

    async def get(self) -> Event:
        return await self._queue.get()

    def get_nowait(self) -> Optional[Event]:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._bus._unsubscribe(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Event:
        if self.closed:
            raise StopAsyncIteration
        return await self.get()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


class EventBus:
    """Fan-out of published events to subscriptions and listeners."""

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE):
        self.queue_size = queue_size
        self._subscriptions: list[Subscription] = []
        self._listeners: list[tuple[frozenset, Callable[[Event], None]]] = []
        self._lock = threading.Lock()

    def subscribe(
        self, topics: Optional[Iterable[str]] = None, maxsize: Optional[int] = None
    ) -> Subscription:
        """Open an async subscription for *topics* (default: all, ``*``)."""
        sub = Subscription(self, frozenset(topics or ["*"]), maxsize or self.queue_size)
        with self._lock:
            self._subscriptions.append(sub)
        return sub

    def _unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)

    def add_listener(
        self, callback: Callable[[Event], None], topics: Optional[Iterable[str]] = None
    ) -> Callable[[], None]:
        """Register a synchronous callback.  Returns a function that removes it."""
        entry = (frozenset(topics or ["*"]), callback)
        with self._lock:
            self._listeners.append(entry)

        def remove() -> None:
            with self._lock:
                if entry in self._listeners:
                    self._listeners.remove(entry)

        return remove

    def publish(self, topic: str, payload: Union[BaseModel, dict, None] = None) -> Event:
        """Publish an event to every matching subscription and listener.

        Listener exceptions are logged and never reach the publisher.
        """
        event = Event(topic=topic, payload=_to_payload(payload))
        with self._lock:
            subs = [s for s in self._subscriptions if _matches(s.topics, topic)]
            listeners = [cb for t, cb in self._listeners if _matches(t, topic)]
        for sub in subs:
            try:
                sub.deliver(event)
            except RuntimeError as e:
                logger.debug("Dropping event for closed subscriber loop: %s", e)
        for callback in listeners:
            try:
                callback(event)
            except Exception as e:
                logger.warning("Event listener failed on %s: %s", topic, e)
        return event

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions) + len(self._listeners)

    def close(self) -> None:
        """Close every subscription and drop all listeners."""
        with self._lock:
            subs = list(self._subscriptions)
            self._listeners.clear()
        for sub in subs:
            sub.close()
