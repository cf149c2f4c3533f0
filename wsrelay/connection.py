"""One attached client: its transport and its bounded outbound queue.

The connection owns the transport exclusively. Producers (the broadcaster)
only ever call :meth:`Connection.enqueue`, which never blocks; a single write
task started with :meth:`Connection.start` pops messages in FIFO order and
awaits the transport. A slow consumer therefore only stalls its own writer.

State machine::

    ACTIVE ──(queue full, disconnect policy / drain())──> DRAINING ──> CLOSED
       └──────────────(transport error / close())───────────────────────^
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections import deque
from typing import AsyncIterator, Callable, Deque, List, Optional, Protocol, Union

import websockets

from .config import OverflowPolicy
from .errors import Backpressure, ClosedConnection

logger = logging.getLogger(__name__)

Message = Union[str, bytes]

# WebSocket close codes (RFC 6455, section 7.4.1)
CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_POLICY_VIOLATION = 1008
CLOSE_INTERNAL_ERROR = 1011
CLOSE_TRY_AGAIN_LATER = 1013


class ConnectionState(enum.Enum):
    ACTIVE = "active"
    DRAINING = "draining"
    CLOSED = "closed"


class Transport(Protocol):
    """The part of a websockets server connection the relay relies on."""

    async def send(self, message: Message) -> None: ...

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None: ...

    def __aiter__(self) -> AsyncIterator[Message]: ...


class Connection:
    """A client of the relay.

    ``on_closed`` is called synchronously the moment the state becomes
    ``CLOSED``, before the transport close handshake is awaited.
    """

    def __init__(
        self,
        identity: int,
        transport: Transport,
        max_queue: int = 256,
        policy: OverflowPolicy = OverflowPolicy.DISCONNECT,
        drain_timeout: float = 5.0,
        on_closed: Optional[Callable[["Connection"], None]] = None,
    ) -> None:
        if max_queue < 1:
            raise ValueError("max_queue must be at least 1")
        self.identity = identity
        self.state = ConnectionState.ACTIVE
        self.dropped = 0
        self._transport = transport
        self._max_queue = max_queue
        self._policy = policy
        self._drain_timeout = drain_timeout
        self._queue: Deque[Message] = deque()
        self._wakeup = asyncio.Event()
        self._closed = asyncio.Event()
        self._writer: Optional[asyncio.Task] = None
        self._drainer: Optional[asyncio.Task] = None
        self._close_code = CLOSE_NORMAL
        self._close_reason = ""
        self._on_closed = on_closed

    def __repr__(self) -> str:
        return f"<Connection {self.identity} {self.state.value} queued={len(self._queue)}>"

    @property
    def transport(self) -> Transport:
        return self._transport

    def pending(self) -> List[Message]:
        """Messages waiting to be written, oldest first."""
        return list(self._queue)

    def enqueue(self, message: Message) -> None:
        """Queue ``message`` for delivery without waiting on the transport.

        Raises :class:`ClosedConnection` once closed and :class:`Backpressure`
        while draining or when a full queue makes the connection start draining.
        """
        if self.state is ConnectionState.CLOSED:
            raise ClosedConnection(f"connection {self.identity} is closed")
        if self.state is ConnectionState.DRAINING:
            raise Backpressure(f"connection {self.identity} is draining")
        if len(self._queue) >= self._max_queue:
            if self._policy is OverflowPolicy.DROP_OLDEST:
                self._queue.popleft()
                self.dropped += 1
                logger.debug("Connection %s: queue full, dropped oldest message", self.identity)
            else:
                logger.warning(
                    "Connection %s: outbound queue full (%d), disconnecting slow consumer",
                    self.identity,
                    self._max_queue,
                )
                self._begin_draining(self._drain_timeout, CLOSE_POLICY_VIOLATION, "slow consumer")
                raise Backpressure(f"connection {self.identity} outbound queue is full")
        self._queue.append(message)
        self._wakeup.set()

    def start(self) -> None:
        """Start the task that flushes the outbound queue to the transport."""
        if self.state is ConnectionState.CLOSED:
            raise ClosedConnection(f"connection {self.identity} is closed")
        if self._writer is None:
            self._writer = asyncio.create_task(self._write_loop(), name=f"wsrelay-writer-{self.identity}")

    async def drain(
        self,
        timeout: Optional[float] = None,
        code: int = CLOSE_NORMAL,
        reason: str = "",
    ) -> None:
        """Refuse new messages, flush the queued ones, then close.

        Whatever is still queued when ``timeout`` elapses is abandoned.
        """
        if self.state is ConnectionState.ACTIVE:
            self._begin_draining(timeout, code, reason)
        await self.wait_closed()

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        """Close immediately, discarding queued messages. Safe to call repeatedly."""
        if self.state is not ConnectionState.CLOSED:
            self._close_code, self._close_reason = code, reason
            current = asyncio.current_task()
            for task in (self._drainer, self._writer):
                # The writer finalizes itself once cancelled.
                if self.state is ConnectionState.CLOSED:
                    break
                if task is not None and task is not current and not task.done():
                    task.cancel()
                    await asyncio.wait({task})
            await self._finalize()
        await self._closed.wait()

    async def wait_closed(self) -> None:
        await self._closed.wait()

    def _begin_draining(self, timeout: Optional[float], code: int, reason: str) -> None:
        self.state = ConnectionState.DRAINING
        self._close_code, self._close_reason = code, reason
        self._wakeup.set()
        self._drainer = asyncio.create_task(
            self._drain_then_close(timeout), name=f"wsrelay-drain-{self.identity}"
        )

    async def _drain_then_close(self, timeout: Optional[float]) -> None:
        if self._writer is not None:
            try:
                await asyncio.wait_for(self._closed.wait(), timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "Connection %s: drain timed out, abandoning %d queued message(s)",
                    self.identity,
                    len(self._queue),
                )
        await self.close(self._close_code, self._close_reason)

    async def _write_loop(self) -> None:
        try:
            while True:
                if not self._queue:
                    if self.state is not ConnectionState.ACTIVE:
                        break
                    self._wakeup.clear()
                    await self._wakeup.wait()
                    continue
                await self._transport.send(self._queue.popleft())
        except websockets.ConnectionClosed:
            logger.debug("Connection %s: transport closed while writing", self.identity)
        except Exception as exc:
            logger.warning("Connection %s: write failed: %s", self.identity, exc)
            self._close_code, self._close_reason = CLOSE_INTERNAL_ERROR, "write failed"
        finally:
            await self._finalize()

    async def _finalize(self) -> None:
        if self.state is ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSED
        self._queue.clear()
        self._wakeup.set()
        if self._on_closed is not None:
            self._on_closed(self)
        try:
            await self._transport.close(self._close_code, self._close_reason)
        except Exception as exc:
            logger.debug("Connection %s: error closing transport: %s", self.identity, exc)
        finally:
            self._closed.set()
