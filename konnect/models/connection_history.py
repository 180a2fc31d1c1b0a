from __future__ import annotations
from collections import deque
from typing import Callable, Deque, List, Optional
import logging
import threading

from .notification_system import ConnectionEvent, NotificationHub

logger = logging.getLogger(__name__)


class ConnectionHistory:
    """Keeps the most recent connection events in memory."""

    def __init__(self, maxlen: int = 500) -> None:
        if maxlen <= 0:
            raise ValueError("maxlen must be positive")
        self._events: Deque[ConnectionEvent] = deque(maxlen=maxlen)
        self._lock = threading.Lock()

    def attach(self, hub: NotificationHub) -> Callable[[], None]:
        return hub.subscribe(self.record)

    def record(self, event: ConnectionEvent) -> None:
        with self._lock:
            self._events.append(event)
        logger.debug("history: %s %s", event.kind.value, event.record.address)

    def recent(self, limit: Optional[int] = None) -> List[ConnectionEvent]:
        with self._lock:
            events = list(self._events)
        if limit is not None:
            if limit <= 0:
                return []
            events = events[-limit:]
        return events

    def for_address(self, address: str) -> List[ConnectionEvent]:
        return [event for event in self.recent() if event.record.address == address]

    def last(self) -> ConnectionEvent | None:
        with self._lock:
            return self._events[-1] if self._events else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)
