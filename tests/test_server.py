"""Tests for the Relay accept path, lifecycle and shutdown using fake transports."""

import asyncio
from dataclasses import replace

import pytest
from wsrelay.broadcaster import Broadcaster
from wsrelay.config import OverflowPolicy, Settings
from wsrelay.connection import ConnectionState
from wsrelay.registry import Registry
from wsrelay.server import Relay

from fakes import FakeTransport, wait_until


def _relay(**overrides):
    return Relay(replace(Settings(), **overrides))


async def _join(relay, *transports):
    tasks = []
    for transport in transports:
        expected = relay.connection_count + 1
        tasks.append(asyncio.create_task(relay.handler(transport)))
        await wait_until(lambda: relay.connection_count == expected)
    return tasks


def _assert_registry_consistent(relay, *transports):
    registered = {c.transport for c in relay.registry._connections.values()}
    for connection in relay.registry._connections.values():
        assert connection.state in (ConnectionState.ACTIVE, ConnectionState.DRAINING)
    for transport in transports:
        assert (transport in registered) == (transport.closed is None)


@pytest.mark.asyncio
async def test_hello_reaches_every_other_client_once():
    relay = _relay()
    a, b, c = FakeTransport("a"), FakeTransport("b"), FakeTransport("c")
    await _join(relay, a, b, c)

    a.feed("hello")
    await wait_until(lambda: b.sent and c.sent)
    await asyncio.sleep(0.02)

    assert b.sent == ["hello"]
    assert c.sent == ["hello"]
    assert a.sent == []
    await relay.shutdown()


@pytest.mark.asyncio
async def test_identities_are_unique_and_increasing():
    relay = _relay()
    transports = [FakeTransport(str(i)) for i in range(3)]
    await _join(relay, *transports)

    identities = [c.identity for c in await relay.registry.snapshot()]
    assert sorted(identities) == identities
    assert len(set(identities)) == 3
    await relay.shutdown()


@pytest.mark.asyncio
async def test_disconnect_removes_connection():
    relay = _relay()
    a, b = FakeTransport("a"), FakeTransport("b")
    tasks = await _join(relay, a, b)

    a.hang_up()
    await asyncio.wait_for(tasks[0], 1)

    assert relay.connection_count == 1
    assert a.closed == (1000, "")
    _assert_registry_consistent(relay, a, b)

    b.feed("anyone?")
    await asyncio.sleep(0.02)
    assert a.sent == []
    await relay.shutdown()


@pytest.mark.asyncio
async def test_slow_consumer_is_disconnected_without_delaying_others():
    relay = _relay(queue_size=2, overflow_policy=OverflowPolicy.DISCONNECT, drain_timeout=0.05)
    a, b, c = FakeTransport("a"), FakeTransport("b", blocked=True), FakeTransport("c")
    tasks = await _join(relay, a, b, c)

    # b's writer holds m1 in flight, m2 and m3 fill its queue, m4 overflows it.
    for i, message in enumerate(("m1", "m2", "m3", "m4"), 1):
        a.feed(message)
        await wait_until(lambda: len(c.sent) == i)

    assert c.sent == ["m1", "m2", "m3", "m4"]
    await asyncio.wait_for(tasks[1], 1)
    assert b.closed == (1008, "slow consumer")
    assert relay.connection_count == 2
    _assert_registry_consistent(relay, a, b, c)
    await relay.shutdown()


@pytest.mark.asyncio
async def test_drop_oldest_keeps_slow_consumer_connected():
    relay = _relay(queue_size=1, overflow_policy=OverflowPolicy.DROP_OLDEST)
    a, b, c = FakeTransport("a"), FakeTransport("b", blocked=True), FakeTransport("c")
    await _join(relay, a, b, c)

    for i, message in enumerate(("m1", "m2", "m3"), 1):
        a.feed(message)
        await wait_until(lambda: len(c.sent) == i)
    b.unblock()
    await wait_until(lambda: len(b.sent) == 2)

    assert b.sent == ["m1", "m3"]
    assert b.closed is None
    assert relay.connection_count == 3
    await relay.shutdown()


@pytest.mark.asyncio
async def test_write_failure_is_contained():
    relay = _relay()
    a, b, c = FakeTransport("a"), FakeTransport("b"), FakeTransport("c")
    b.send_error = RuntimeError("connection reset")
    tasks = await _join(relay, a, b, c)

    a.feed("m1")
    await asyncio.wait_for(tasks[1], 1)
    a.feed("m2")
    await wait_until(lambda: len(c.sent) == 2)

    assert c.sent == ["m1", "m2"]
    assert b.closed == (1011, "write failed")
    assert relay.connection_count == 2
    await relay.shutdown()


@pytest.mark.asyncio
async def test_rejects_connections_over_capacity():
    relay = _relay(max_connections=1)
    a, b = FakeTransport("a"), FakeTransport("b")
    await _join(relay, a)

    await asyncio.wait_for(relay.handler(b), 1)

    assert b.closed == (1013, "max connections reached")
    assert relay.connection_count == 1
    await relay.shutdown()


@pytest.mark.asyncio
async def test_duplicate_identity_is_rejected():
    relay = _relay()
    relay._ids = iter([7, 7])
    a, b = FakeTransport("a"), FakeTransport("b")
    await _join(relay, a)

    await asyncio.wait_for(relay.handler(b), 1)

    assert b.closed == (1011, "identity collision")
    assert relay.connection_count == 1
    assert relay.registry.get(7).transport is a
    await relay.shutdown()


@pytest.mark.asyncio
async def test_shutdown_flushes_closes_and_joins_everything():
    relay = _relay(drain_timeout=1.0)
    a, b, c = FakeTransport("a"), FakeTransport("b", blocked=True), FakeTransport("c")
    tasks = await _join(relay, a, b, c)
    a.feed("last words")
    await wait_until(lambda: c.sent == ["last words"])

    shutdown = asyncio.create_task(relay.shutdown())
    await asyncio.sleep(0.02)
    b.unblock()
    await asyncio.wait_for(shutdown, 2)

    assert all(task.done() for task in tasks)
    assert relay.connection_count == 0
    assert b.sent == ["last words"]
    for transport in (a, b, c):
        assert transport.closed == (1001, "server shutting down")


@pytest.mark.asyncio
async def test_shutdown_abandons_writes_after_drain_timeout():
    relay = _relay(drain_timeout=0.05)
    a, b = FakeTransport("a"), FakeTransport("b", blocked=True)
    tasks = await _join(relay, a, b)
    a.feed("never delivered")
    await asyncio.sleep(0.01)

    await asyncio.wait_for(relay.shutdown(), 1)

    assert all(task.done() for task in tasks)
    assert b.sent == []
    assert relay.connection_count == 0


@pytest.mark.asyncio
async def test_handler_after_shutdown_rejects():
    relay = _relay()
    await relay.shutdown()
    await relay.shutdown()

    late = FakeTransport("late")
    await asyncio.wait_for(relay.handler(late), 1)
    assert late.closed == (1001, "server shutting down")
    assert relay.connection_count == 0


@pytest.mark.asyncio
async def test_closed_connection_leaves_registry_while_close_handshake_runs():
    relay = _relay()
    a, c = FakeTransport("a"), FakeTransport("c")
    b = FakeTransport("b", close_delay=0.5)
    b.send_error = RuntimeError("connection reset")
    tasks = await _join(relay, a, b, c)

    a.feed("m1")
    await wait_until(lambda: relay.connection_count == 2, timeout=0.3)

    assert b.closed is None
    states = [conn.state for conn in await relay.registry.snapshot()]
    assert states == [ConnectionState.ACTIVE, ConnectionState.ACTIVE]

    await asyncio.wait_for(tasks[1], 2)
    assert b.closed == (1011, "write failed")
    assert relay.connection_count == 2
    await relay.shutdown()


@pytest.mark.asyncio
async def test_closed_connection_stops_fanning_out():
    relay = _relay()
    a, c = FakeTransport("a"), FakeTransport("c")
    b = FakeTransport("b", close_delay=0.3)
    b.send_error = RuntimeError("connection reset")
    tasks = await _join(relay, a, b, c)

    a.feed("m1")
    await wait_until(lambda: relay.connection_count == 2, timeout=0.2)
    b.feed("sent after close")
    await asyncio.sleep(0.05)

    assert a.sent == []
    assert c.sent == ["m1"]
    await asyncio.wait_for(tasks[1], 2)
    await relay.shutdown()


@pytest.mark.asyncio
async def test_connection_registered_during_shutdown_is_closed():
    class SlowAddRegistry(Registry):
        async def add(self, connection):
            await asyncio.sleep(0.05)
            await super().add(connection)

    relay = _relay()
    relay.registry = SlowAddRegistry()
    relay.broadcaster = Broadcaster(relay.registry)
    late = FakeTransport("late")

    handler = asyncio.create_task(relay.handler(late))
    await asyncio.sleep(0)  # handler is past the shutdown check, waiting in add()
    await asyncio.wait_for(relay.shutdown(), 1)
    await asyncio.wait_for(handler, 1)

    assert late.closed == (1001, "server shutting down")
    assert relay.connection_count == 0
