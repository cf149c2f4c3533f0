"""Fan-out of inbound messages to every other connection."""

from __future__ import annotations

import logging

from .connection import ConnectionState, Message
from .errors import Backpressure
from .registry import Registry

logger = logging.getLogger(__name__)


class Broadcaster:
    def __init__(self, registry: Registry) -> None:
        self._registry = registry

    async def fanout(self, message: Message, origin: int) -> int:
        """Queue ``message`` on every active connection except ``origin``.

        Only the registry snapshot is awaited; recipients are fed through
        their non-blocking ``enqueue``, so a full queue on one recipient
        never delays the others. Snapshots are taken in call order (the
        registry lock is FIFO), which keeps each recipient's queue in the
        order messages reached the broadcaster.

        Returns the number of connections that accepted the message.
        """
        accepted = 0
        for connection in await self._registry.snapshot():
            if connection.identity == origin or connection.state is not ConnectionState.ACTIVE:
                continue
            try:
                connection.enqueue(message)
            except Backpressure:
                logger.debug("Connection %s refused message from %s", connection.identity, origin)
            else:
                accepted += 1
        return accepted
