from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ConnectionState(Enum):
    """Liveness of a console as seen by the monitor."""
    NONE = "none"
    ONLINE = "online"
    OFFLINE = "offline"


class ConnectionType(IntEnum):
    """How the console is reachable from this host."""
    NONE = 0
    LAN = 1
    WIRELESS = 2  # reserved, never assigned
    BRIDGED = 3


class ConsoleType(Enum):
    """Console variant, told apart by its reply signature."""
    NONE = "none"
    JTAG = "jtag"
    DEVKIT = "devkit"


@dataclass(frozen=True, slots=True)
class ConnectionRecord:
    """A discovered console and its last known liveness.

    Records are immutable; the registry swaps in a new instance whenever
    the state or last-seen time changes.
    """
    address: str
    name: str = ""
    port: Optional[int] = None
    console_type: ConsoleType = ConsoleType.NONE
    connection_type: ConnectionType = ConnectionType.NONE
    state: ConnectionState = ConnectionState.NONE
    last_seen: datetime = field(default_factory=utc_now)
    first_seen: datetime = field(default_factory=utc_now)

    @classmethod
    def discovered(
        cls,
        address: str,
        name: str,
        *,
        port: Optional[int] = None,
        console_type: ConsoleType = ConsoleType.JTAG,
        connection_type: ConnectionType = ConnectionType.LAN,
        seen_at: Optional[datetime] = None,
    ) -> "ConnectionRecord":
        seen = seen_at or utc_now()
        return cls(
            address=address,
            name=name,
            port=port,
            console_type=console_type,
            connection_type=connection_type,
            state=ConnectionState.ONLINE,
            last_seen=seen,
            first_seen=seen,
        )

    def with_state(self, state: ConnectionState) -> "ConnectionRecord":
        return replace(self, state=state)

    def seen(self, timestamp: datetime, port: Optional[int] = None) -> "ConnectionRecord":
        last_seen = max(self.last_seen, timestamp)
        return replace(self, last_seen=last_seen, port=self.port if port is None else port)

    def is_stale(self, now: datetime, timeout: float) -> bool:
        return (now - self.last_seen).total_seconds() > timeout

    @property
    def online(self) -> bool:
        return self.state is ConnectionState.ONLINE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "port": self.port,
            "name": self.name,
            "console_type": self.console_type.value,
            "connection_type": self.connection_type.name.lower(),
            "state": self.state.value,
            "last_seen": self.last_seen.isoformat(),
            "first_seen": self.first_seen.isoformat(),
        }
