"""Event channel — typed lifecycle events from a proxy handle to callers.

Each ``ProxyHandle`` owns one channel. Callers can attach callbacks
(``on``/``once``), consume a queue (``subscribe``), or await the next
event of a type (``next``). Closing the channel detaches everything, so
a handle that has exited holds no references to caller code.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

logger = logging.getLogger(__name__)

Listener = Callable[..., Any]


class EventType(enum.Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    LISTENING = "listening"
    EXIT = "exit"


@dataclass
class ProxyEvent:
    """An event emitted by a proxy handle."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def args(self) -> tuple[Any, ...]:
        """Positional arguments passed to callback listeners."""
        if self.type == EventType.CONNECTED:
            return (self.data["ip"],)
        if self.type == EventType.LISTENING:
            return (self.data["port"],)
        return ()


class EventChannelClosed(Exception):
    """The channel was closed before the awaited event arrived."""


class EventChannel:
    """Per-handle broadcast of ``ProxyEvent``s.

    Delivery is synchronous and in emission order: callbacks run inside
    ``emit()``, queue subscribers get the event via ``put_nowait``, and
    ``next()`` futures are resolved before ``emit()`` returns.
    """

    def __init__(self) -> None:
        self._listeners: dict[EventType, list[tuple[Listener, bool]]] = {}
        self._subscribers: list[asyncio.Queue[ProxyEvent | None]] = []
        self._waiters: dict[EventType, list[asyncio.Future[ProxyEvent]]] = {}
        self._targets: list[EventChannel] = []
        self._closed: bool = False

    def pipe(self, target: EventChannel) -> None:
        """Re-emit every event on ``target`` too, until this channel closes.

        Closing this channel does not close ``target``.
        """
        if not self._closed and target is not self:
            self._targets.append(target)

    # ------------------------------------------------------------------
    # Callback listeners
    # ------------------------------------------------------------------

    def on(self, event_type: EventType | str, listener: Listener) -> None:
        """Call ``listener(*event.args)`` for every event of this type."""
        self._add(EventType(event_type), listener, once=False)

    def once(self, event_type: EventType | str, listener: Listener) -> None:
        """Like ``on()``, but the listener is removed after its first call."""
        self._add(EventType(event_type), listener, once=True)

    def off(self, event_type: EventType | str, listener: Listener) -> None:
        """Remove a listener. Unknown listeners are ignored."""
        entries = self._listeners.get(EventType(event_type), [])
        self._listeners[EventType(event_type)] = [
            entry for entry in entries if entry[0] is not listener
        ]

    def listener_count(self, event_type: EventType | str | None = None) -> int:
        if event_type is None:
            return sum(len(entries) for entries in self._listeners.values())
        return len(self._listeners.get(EventType(event_type), []))

    def _add(self, event_type: EventType, listener: Listener, once: bool) -> None:
        if self._closed:
            return
        self._listeners.setdefault(event_type, []).append((listener, once))

    # ------------------------------------------------------------------
    # Emission
    # ------------------------------------------------------------------

    def emit(self, event: ProxyEvent) -> None:
        """Deliver an event to all listeners, subscribers and waiters.

        Silently drops events after ``close()`` has been called.
        """
        if self._closed:
            return

        entries = self._listeners.get(event.type, [])
        if any(once for _, once in entries):
            self._listeners[event.type] = [e for e in entries if not e[1]]
        for listener, _ in entries:
            try:
                listener(*event.args)
            except Exception:
                logger.exception("Error in %s listener", event.type.value)

        for q in self._subscribers:
            q.put_nowait(event)

        for fut in self._waiters.pop(event.type, []):
            if not fut.done():
                fut.set_result(event)

        for target in self._targets:
            target.emit(event)

    # ------------------------------------------------------------------
    # Awaiting
    # ------------------------------------------------------------------

    def next(self, event_type: EventType | str) -> asyncio.Future[ProxyEvent]:
        """Return a future resolved by the next event of ``event_type``.

        The future fails with ``EventChannelClosed`` if the channel closes
        first. Cancelling it abandons the wait and unregisters the future.
        """
        fut: asyncio.Future[ProxyEvent] = asyncio.get_running_loop().create_future()
        if self._closed:
            fut.set_exception(EventChannelClosed())
            return fut
        key = EventType(event_type)
        self._waiters.setdefault(key, []).append(fut)
        fut.add_done_callback(lambda f: self._discard_waiter(key, f))
        return fut

    def _discard_waiter(self, event_type: EventType, fut: asyncio.Future[ProxyEvent]) -> None:
        futures = self._waiters.get(event_type)
        if futures is None or fut not in futures:
            return
        futures.remove(fut)
        if not futures:
            del self._waiters[event_type]

    def waiter_count(self, event_type: EventType | str | None = None) -> int:
        if event_type is None:
            return sum(len(futures) for futures in self._waiters.values())
        return len(self._waiters.get(EventType(event_type), []))

    def subscribe(self) -> asyncio.Queue[ProxyEvent | None]:
        """Subscribe to all events. ``None`` is queued when the channel closes."""
        q: asyncio.Queue[ProxyEvent | None] = asyncio.Queue()
        if self._closed:
            q.put_nowait(None)
        else:
            self._subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        if q in self._subscribers:
            self._subscribers.remove(q)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Detach all listeners, end subscriptions and fail pending waits."""
        if self._closed:
            return
        self._closed = True
        self._listeners.clear()
        self._targets.clear()
        for q in self._subscribers:
            q.put_nowait(None)
        self._subscribers.clear()
        waiters, self._waiters = self._waiters, {}
        for futures in waiters.values():
            for fut in futures:
                if not fut.done():
                    fut.set_exception(EventChannelClosed())

    @property
    def closed(self) -> bool:
        return self._closed
