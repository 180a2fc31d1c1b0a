"""Thread-safe roster of discovered consoles."""
from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Dict, Iterator, List, Optional

from konnect.models import (
    ConnectionEvent,
    ConnectionEventKind,
    ConnectionRecord,
    ConnectionState,
    NotificationHub,
)

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """Maps console address to its :class:`ConnectionRecord`.

    Every mutation holds the lock only for the map change itself; events
    are published after the lock is released, so subscribers may call back
    into the registry freely. Operations on unknown or duplicate addresses
    are no-ops rather than errors since the scanner calls them
    speculatively.
    """

    def __init__(self, hub: Optional[NotificationHub] = None) -> None:
        self.hub = hub or NotificationHub()
        self._records: Dict[str, ConnectionRecord] = {}
        self._lock = threading.Lock()

    def add(self, record: ConnectionRecord) -> bool:
        try:
            with self._lock:
                if record.address in self._records:
                    logger.debug("add ignored: %s already registered", record.address)
                    return False
                self._records[record.address] = record
        except Exception:
            logger.exception("failed to add connection %s", record.address)
            return False
        self._publish(ConnectionEventKind.ADDED, record)
        return True

    def remove(
        self,
        address: str,
        *,
        expected_state: Optional[ConnectionState] = None,
    ) -> Optional[ConnectionRecord]:
        with self._lock:
            record = self._records.get(address)
            if record is None:
                return None
            if expected_state is not None and record.state is not expected_state:
                return None
            del self._records[address]
        self._publish(ConnectionEventKind.REMOVED, record)
        return record

    def update_state(
        self,
        address: str,
        state: ConnectionState,
        *,
        expected_state: Optional[ConnectionState] = None,
    ) -> Optional[ConnectionRecord]:
        with self._lock:
            record = self._records.get(address)
            if record is None:
                return None
            if expected_state is not None and record.state is not expected_state:
                return None
            record = record.with_state(state)
            self._records[address] = record
        self._publish(ConnectionEventKind.UPDATED, record)
        return record

    def refresh(
        self,
        address: str,
        timestamp: datetime,
        *,
        port: Optional[int] = None,
    ) -> Optional[ConnectionRecord]:
        with self._lock:
            record = self._records.get(address)
            if record is None:
                return None
            record = record.seen(timestamp, port)
            self._records[address] = record
        return record

    def get(self, address: str) -> Optional[ConnectionRecord]:
        with self._lock:
            return self._records.get(address)

    def snapshot(self) -> List[ConnectionRecord]:
        with self._lock:
            return list(self._records.values())

    def addresses(self) -> List[str]:
        with self._lock:
            return list(self._records)

    def clear(self) -> int:
        with self._lock:
            removed = list(self._records.values())
            self._records.clear()
        for record in removed:
            self._publish(ConnectionEventKind.REMOVED, record)
        return len(removed)

    def __contains__(self, address: object) -> bool:
        with self._lock:
            return address in self._records

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __iter__(self) -> Iterator[ConnectionRecord]:
        return iter(self.snapshot())

    def _publish(self, kind: ConnectionEventKind, record: ConnectionRecord) -> None:
        try:
            self.hub.publish(ConnectionEvent(kind, record))
        except Exception:  # pragma: no cover - hub already isolates subscribers
            logger.exception("publishing %s for %s failed", kind.value, record.address)


__all__ = ["ConnectionRegistry"]
