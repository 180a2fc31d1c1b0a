"""CSV trail of connection events."""
from __future__ import annotations

import asyncio
import csv
import json
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Sequence

from konnect.models import ConnectionEvent, NotificationHub


DEFAULT_FIELDS: Sequence[str] = (
    "timestamp",
    "event",
    "address",
    "name",
    "console_type",
    "connection_type",
    "state",
    "last_seen",
    "extra",
)


def _iso(moment: datetime) -> str:
    # Naive datetimes come from test clocks; treat them as UTC.
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds")


def _encode_extra(extra: Mapping[str, Any]) -> str:
    if not extra:
        return ""
    try:
        return json.dumps(dict(extra), sort_keys=True, separators=(",", ":"), ensure_ascii=True)
    except (TypeError, ValueError):
        return repr(dict(extra))


@dataclass(slots=True)
class EventRow:
    """One CSV row describing a connection event."""

    timestamp: str
    event: str
    address: str
    name: str
    console_type: str
    connection_type: str
    state: str
    last_seen: str
    extra: str = ""

    @classmethod
    def from_event(cls, event: ConnectionEvent, extra: Mapping[str, Any]) -> "EventRow":
        record = event.record
        return cls(
            timestamp=_iso(event.timestamp),
            event=event.kind.value,
            address=record.address,
            name=record.name,
            console_type=record.console_type.value,
            connection_type=record.connection_type.name.lower(),
            state=record.state.value,
            last_seen=_iso(record.last_seen),
            extra=_encode_extra(extra),
        )

    def select(self, fields: Sequence[str]) -> Dict[str, str]:
        return {name: getattr(self, name) for name in fields}


class EventLogger:
    """Appends one CSV row per connection event.

    Rows are written and flushed immediately so ``tail -f`` sees them as
    they happen. Nothing here is read back on startup; the file is an
    audit trail, not a saved roster.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        fields: Sequence[str] | None = None,
        static_extra: Mapping[str, Any] | None = None,
    ) -> None:
        self.path = Path(path)
        self.fields: Sequence[str] = tuple(fields or DEFAULT_FIELDS)
        unknown = [name for name in self.fields if name not in DEFAULT_FIELDS]
        if unknown:
            raise ValueError(f"unknown fields: {', '.join(sorted(unknown))}")

        self._static_extra: Dict[str, Any] = dict(static_extra or {})
        self._lock = threading.Lock()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            if not self.path.exists() or self.path.stat().st_size == 0:
                self._append(None)

    def attach(self, hub: NotificationHub) -> Callable[[], None]:
        return hub.subscribe(self._on_event)

    def _on_event(self, event: ConnectionEvent) -> Optional[Awaitable[None]]:
        # Inside a running loop the write moves to a worker thread; the hub schedules the coroutine.
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            self.log(event)
            return None
        return self.log_async(event)

    def log(self, event: ConnectionEvent, extra: Optional[Mapping[str, Any]] = None) -> None:
        merged = {**self._static_extra, **(extra or {})}
        row = EventRow.from_event(event, merged).select(self.fields)
        with self._lock:
            self._append(row)

    async def log_async(self, event: ConnectionEvent, extra: Optional[Mapping[str, Any]] = None) -> None:
        await asyncio.to_thread(self.log, event, extra)

    def _append(self, row: Optional[Mapping[str, str]]) -> None:
        # A ``None`` row writes the header.
        with self.path.open("a", newline="", encoding="utf-8") as handle:
            writer = csv.DictWriter(handle, fieldnames=self.fields)
            if row is None:
                writer.writeheader()
            else:
                writer.writerow(row)
            handle.flush()


__all__ = [
    "EventLogger",
    "EventRow",
    "DEFAULT_FIELDS",
]
