"""
WebSocket relay: accepts clients and broadcasts any message from any client
to all the others.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from contextlib import asynccontextmanager
from http import HTTPStatus
from typing import AsyncIterator, Optional, Set
from urllib.parse import urlsplit

import websockets

from .broadcaster import Broadcaster
from .config import Settings, settings as default_settings
from .connection import (
    CLOSE_GOING_AWAY,
    CLOSE_INTERNAL_ERROR,
    CLOSE_TRY_AGAIN_LATER,
    Connection,
    ConnectionState,
    Transport,
)
from .errors import DuplicateIdentity
from .registry import Registry

logger = logging.getLogger(__name__)


class Relay:
    """One broadcast domain: a registry, a broadcaster and the accept path.

    Create one per process and call :meth:`shutdown` (or leave
    :meth:`serve`) to release every connection and the listening socket.
    """

    def __init__(self, settings: Settings = default_settings) -> None:
        self.settings = settings
        self.registry = Registry()
        self.broadcaster = Broadcaster(self.registry)
        self._ids = itertools.count(1)
        self._handlers: Set[asyncio.Task] = set()
        self._server: Optional[websockets.Server] = None
        self._closing = False

    @property
    def connection_count(self) -> int:
        return len(self.registry)

    def new_connection(self, transport: Transport) -> Connection:
        return Connection(
            next(self._ids),
            transport,
            max_queue=self.settings.queue_size,
            policy=self.settings.overflow_policy,
            drain_timeout=self.settings.drain_timeout,
            on_closed=self.registry.discard,
        )

    async def handler(self, ws: Transport) -> None:
        if self._closing:
            await ws.close(CLOSE_GOING_AWAY, "server shutting down")
            return
        if len(self.registry) >= self.settings.max_connections:
            logger.warning("Rejecting connection: %d connected (max)", len(self.registry))
            await ws.close(CLOSE_TRY_AGAIN_LATER, "max connections reached")
            return

        connection = self.new_connection(ws)
        try:
            await self.registry.add(connection)
        except DuplicateIdentity as exc:
            logger.error("Rejecting connection: %s", exc)
            await connection.close(CLOSE_INTERNAL_ERROR, "identity collision")
            return
        if self._closing:
            # shutdown() may already have taken its snapshot
            await connection.close(CLOSE_GOING_AWAY, "server shutting down")
            return

        task = asyncio.current_task()
        if task is not None:
            self._handlers.add(task)
        addr = getattr(ws, "remote_address", None)
        logger.info("[+] %s %s  (%d connected)", connection.identity, addr, len(self.registry))
        try:
            connection.start()
            async for message in ws:
                if connection.state is ConnectionState.CLOSED:
                    break
                await self.broadcaster.fanout(message, connection.identity)
        except websockets.ConnectionClosed:
            pass
        except Exception:
            logger.exception("Connection %s: read failed", connection.identity)
        finally:
            try:
                await connection.close()
            finally:
                self.registry.discard(connection)
                self._handlers.discard(task)
                logger.info("[-] %s %s  (%d connected)", connection.identity, addr, len(self.registry))

    def _check_path(self, connection, request):
        if urlsplit(request.path).path != self.settings.path:
            return connection.respond(HTTPStatus.NOT_FOUND, "Not Found\n")
        return None

    @asynccontextmanager
    async def serve(self) -> AsyncIterator[websockets.Server]:
        """Listen on the configured address until the block exits."""
        process_request = self._check_path if self.settings.path else None
        async with websockets.serve(
            self.handler,
            self.settings.host,
            self.settings.port,
            process_request=process_request,
        ) as server:
            self._server = server
            self._closing = False
            try:
                yield server
            finally:
                await self.shutdown()

    async def shutdown(self) -> None:
        """Stop accepting, drain every connection, and wait for their handlers."""
        self._closing = True
        server, self._server = self._server, None
        if server is not None:
            server.close(close_connections=False)

        connections = await self.registry.snapshot()
        if connections:
            logger.info("Draining %d connection(s)", len(connections))
            await asyncio.gather(
                *(
                    c.drain(self.settings.drain_timeout, CLOSE_GOING_AWAY, "server shutting down")
                    for c in connections
                )
            )
        handlers = list(self._handlers)
        if handlers:
            await asyncio.wait(handlers)
        if server is not None:
            await server.wait_closed()
