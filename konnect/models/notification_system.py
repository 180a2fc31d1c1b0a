from __future__ import annotations
import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, List, Optional, Set, Tuple, Union

from .connection_record import ConnectionRecord, utc_now

logger = logging.getLogger(__name__)


class ConnectionEventKind(Enum):
    ADDED = "added"
    UPDATED = "updated"
    REMOVED = "removed"


@dataclass(frozen=True, slots=True)
class ConnectionEvent:
    """A registry change together with the record as it was at that moment."""
    kind: ConnectionEventKind
    record: ConnectionRecord
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": self.kind.value,
            "timestamp": self.timestamp.isoformat(),
            "connection": self.record.to_dict(),
        }


EventCallback = Callable[[ConnectionEvent], Union[None, Awaitable[None]]]


class NotificationHub:
    """Fans connection events out to callbacks and asyncio queues.

    Delivery is fire-and-forget: a failing subscriber is logged and the
    remaining subscribers still receive the event. ``publish`` may be
    called from any thread.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._callbacks: List[Tuple[EventCallback, Optional[FrozenSet[ConnectionEventKind]]]] = []
        self._queues: List[Tuple[asyncio.Queue, asyncio.AbstractEventLoop]] = []
        self._pending: Set["asyncio.Task[Any]"] = set()

    def subscribe(
        self,
        callback: EventCallback,
        kinds: Optional[Iterable[ConnectionEventKind]] = None,
    ) -> Callable[[], None]:
        entry = (callback, frozenset(kinds) if kinds is not None else None)
        with self._lock:
            self._callbacks.append(entry)

        def _unsubscribe() -> None:
            with self._lock:
                if entry in self._callbacks:
                    self._callbacks.remove(entry)

        return _unsubscribe

    def on_add(self, callback: EventCallback) -> Callable[[], None]:
        return self.subscribe(callback, (ConnectionEventKind.ADDED,))

    def on_update(self, callback: EventCallback) -> Callable[[], None]:
        return self.subscribe(callback, (ConnectionEventKind.UPDATED,))

    def on_remove(self, callback: EventCallback) -> Callable[[], None]:
        return self.subscribe(callback, (ConnectionEventKind.REMOVED,))

    def subscribe_queue(self, maxsize: int = 0) -> "asyncio.Queue[ConnectionEvent]":
        """Return a queue bound to the running loop that receives every event."""
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        with self._lock:
            self._queues.append((queue, loop))
        return queue

    def unsubscribe_queue(self, queue: asyncio.Queue) -> None:
        with self._lock:
            self._queues = [item for item in self._queues if item[0] is not queue]

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._callbacks) + len(self._queues)

    def publish(self, event: ConnectionEvent) -> None:
        with self._lock:
            callbacks = list(self._callbacks)
            queues = list(self._queues)

        for callback, kinds in callbacks:
            if kinds is not None and event.kind not in kinds:
                continue
            self._dispatch_callback(callback, event)

        for queue, loop in queues:
            self._dispatch_queue(queue, loop, event)

    def _dispatch_callback(self, callback: EventCallback, event: ConnectionEvent) -> None:
        try:
            outcome = callback(event)
        except Exception:
            logger.exception("connection event subscriber raised for %s", event.kind.value)
            return
        if asyncio.iscoroutine(outcome):
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                outcome.close()
                logger.warning("dropping coroutine subscriber for %s: no running event loop", event.kind.value)
                return
            task = loop.create_task(outcome)
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
            task.add_done_callback(_log_task_failure)

    def _dispatch_queue(self, queue: asyncio.Queue, loop: asyncio.AbstractEventLoop, event: ConnectionEvent) -> None:
        if loop.is_closed():
            self.unsubscribe_queue(queue)
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            _put_event(queue, event)
        else:
            loop.call_soon_threadsafe(_put_event, queue, event)


def _put_event(queue: asyncio.Queue, event: ConnectionEvent) -> None:
    try:
        queue.put_nowait(event)
    except asyncio.QueueFull:
        logger.warning("event queue full; dropping %s for %s", event.kind.value, event.record.address)


def _log_task_failure(task: "asyncio.Task[Any]") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("async connection event subscriber failed", exc_info=exc)


class ConsoleNotifier:
    """Logs human-readable presence lines for connection events."""

    def attach(self, hub: NotificationHub) -> Callable[[], None]:
        return hub.subscribe(self.notify)

    def notify(self, event: ConnectionEvent) -> None:
        record = event.record
        if event.kind is ConnectionEventKind.ADDED:
            self.notify_presence(record)
        elif event.kind is ConnectionEventKind.REMOVED:
            logger.info("[x] Console Removed: %s (%s)", record.name or "Unknown", record.address)
        elif record.online:
            self.notify_presence(record)
        else:
            self.notify_disconnection(record)

    def notify_presence(self, record: ConnectionRecord) -> None:
        logger.info("[+] Console Connected: %s (%s)", record.name or "Unknown", record.address)

    def notify_disconnection(self, record: ConnectionRecord) -> None:
        logger.info("[-] Console Disconnected: %s (%s)", record.name or "Unknown", record.address)
