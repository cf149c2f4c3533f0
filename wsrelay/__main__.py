"""
Run the relay.

Usage:
  python3 -m wsrelay [--host HOST] [--port PORT] [--path /ws]
                     [--queue-size N] [--policy {disconnect,drop-oldest}]
                     [--drain-timeout SECONDS] [--max-connections N]

Defaults come from the RELAY_* environment variables. Exits 0 after a clean
shutdown (SIGINT/SIGTERM) and 1 when the listening socket cannot be bound.
"""

import argparse
import asyncio
import dataclasses
import logging
import signal
import socket
import sys
from contextlib import suppress

from .config import OverflowPolicy, Settings, settings
from .server import Relay

logger = logging.getLogger("wsrelay")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog="wsrelay", description="Broadcast every WebSocket message to all other clients."
    )
    parser.add_argument("--host", help=f"listen address (default: {settings.host})")
    parser.add_argument("--port", type=int, help=f"listen port (default: {settings.port})")
    parser.add_argument("--path", help="only accept connections on this request path, e.g. /ws")
    parser.add_argument("--queue-size", type=int, help=f"outbound messages buffered per client (default: {settings.queue_size})")
    parser.add_argument(
        "--policy",
        choices=[p.value for p in OverflowPolicy],
        help=f"what a full client queue does (default: {settings.overflow_policy.value})",
    )
    parser.add_argument("--drain-timeout", type=float, help=f"seconds to flush a closing client (default: {settings.drain_timeout})")
    parser.add_argument("--max-connections", type=int, help=f"default: {settings.max_connections}")
    parser.add_argument("--log-level", help=f"default: {settings.log_level}")
    return parser.parse_args(argv)


def build_settings(args, base: Settings = settings) -> Settings:
    overrides = {
        "host": args.host,
        "port": args.port,
        "path": args.path,
        "queue_size": args.queue_size,
        "overflow_policy": OverflowPolicy(args.policy) if args.policy else None,
        "drain_timeout": args.drain_timeout,
        "max_connections": args.max_connections,
        "log_level": args.log_level,
    }
    return dataclasses.replace(base, **{k: v for k, v in overrides.items() if v is not None})


def lan_address():
    try:
        return socket.gethostbyname(socket.gethostname())
    except OSError:
        return "?.?.?.?"


async def run(relay: Relay) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    async with relay.serve() as server:
        port = server.sockets[0].getsockname()[1] if server.sockets else relay.settings.port
        path = relay.settings.path or "/"
        print(f"Relay listening on ws://localhost:{port}{path}  (this machine)")
        print(f"                   ws://{lan_address()}:{port}{path}  (LAN)")
        await stop.wait()
        logger.info("Shutting down")


def main(argv=None) -> int:
    args = parse_args(argv)
    cfg = build_settings(args)
    logging.basicConfig(
        level=cfg.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    try:
        asyncio.run(run(Relay(cfg)))
    except OSError as exc:
        logger.error("Could not listen on %s:%d: %s", cfg.host, cfg.port, exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
