"""The set of live connections."""

from __future__ import annotations

import asyncio
from typing import Dict, List, Optional

from .connection import Connection
from .errors import DuplicateIdentity


class Registry:
    """Connections keyed by identity.

    Every structural change and every snapshot happens under one lock, so a
    snapshot never sees a half-added or half-removed connection. Snapshots
    are copies: iterating one never holds the lock.
    """

    def __init__(self) -> None:
        self._connections: Dict[int, Connection] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, identity: object) -> bool:
        return identity in self._connections

    def get(self, identity: int) -> Optional[Connection]:
        return self._connections.get(identity)

    async def add(self, connection: Connection) -> None:
        async with self._lock:
            if connection.identity in self._connections:
                raise DuplicateIdentity(f"connection {connection.identity} is already registered")
            self._connections[connection.identity] = connection

    async def remove(self, identity: int) -> Optional[Connection]:
        """Unregister ``identity``; a no-op returning None if it is absent."""
        async with self._lock:
            return self._connections.pop(identity, None)

    def discard(self, connection: Connection) -> None:
        """Drop ``connection`` if it is the one registered under its identity.

        Synchronous, so it can run from a close callback; on a single event
        loop it cannot interleave with a locked add, remove or snapshot.
        """
        if self._connections.get(connection.identity) is connection:
            del self._connections[connection.identity]

    async def snapshot(self) -> List[Connection]:
        async with self._lock:
            return list(self._connections.values())
