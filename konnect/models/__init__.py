"""Data model for Konnect.

Connection records and their enums, the notification hub that carries
registry changes to subscribers, and an in-memory event history.
"""
from .connection_record import (
    ConnectionRecord,
    ConnectionState,
    ConnectionType,
    ConsoleType,
    utc_now,
)
from .notification_system import (
    ConnectionEvent,
    ConnectionEventKind,
    ConsoleNotifier,
    NotificationHub,
)
from .connection_history import ConnectionHistory

__all__ = [
    "ConnectionRecord",
    "ConnectionState",
    "ConnectionType",
    "ConsoleType",
    "utc_now",
    "ConnectionEvent",
    "ConnectionEventKind",
    "ConsoleNotifier",
    "NotificationHub",
    "ConnectionHistory",
]
