"""Single-channel WebSocket broadcast relay."""

from .broadcaster import Broadcaster
from .config import OverflowPolicy, Settings, settings
from .connection import Connection, ConnectionState, Transport
from .errors import Backpressure, ClosedConnection, DuplicateIdentity, RelayError
from .registry import Registry
from .server import Relay

__all__ = [
    "Backpressure",
    "Broadcaster",
    "ClosedConnection",
    "Connection",
    "ConnectionState",
    "DuplicateIdentity",
    "OverflowPolicy",
    "Registry",
    "Relay",
    "RelayError",
    "Settings",
    "Transport",
    "settings",
]
