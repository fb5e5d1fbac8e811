#!/usr/bin/env python3
"""signaling_server.py - room relay for live tutoring calls.

Runs the presence and relay protocol over WebSockets:

- Participants connect to ``ws://host:port/ws`` and join a room by id.
- Offers, answers, ICE candidates and renegotiation requests are
  forwarded to the addressed participant; chat is broadcast to the rest
  of the room.
- ``GET /healthz`` answers ``200 OK`` for load balancers.
- Prometheus metrics are exported on ``--metrics-port`` (0 disables).

Room state lives in memory and is lost on restart.
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

from livecall.config import Settings
from livecall.logging import setup_logging
from livecall_comms.registry import RoomRegistry
from livecall_comms.relay import RelayProtocol
from livecall_comms.server import SignalingServer
from metrics import RelayMetrics, start_metrics_server


def build_parser(settings: Settings) -> argparse.ArgumentParser:
    p = argparse.ArgumentParser("livecall-signaling", description="Live call signaling relay")
    p.add_argument("--host", default=settings.host, help="Interface to bind")
    p.add_argument("--port", type=int, default=settings.port, help="TCP port")
    p.add_argument("--path", default="/ws", help="WebSocket upgrade path")
    p.add_argument("--capacity", type=int, default=settings.room_capacity,
                   help="Participants per room, 0 for unlimited")
    p.add_argument("--metrics-port", type=int, help="Prometheus metrics port")
    p.add_argument("--loglevel", default=None, help="Logging level")
    p.add_argument("--healthcheck", action="store_true", help="Validate configuration and exit")
    return p


async def serve(host: str, port: int, path: str, capacity: int,
                logger: logging.Logger, stop: Optional[asyncio.Event] = None) -> None:
    """Run the relay until ``stop`` is set or SIGINT/SIGTERM arrives."""
    stop = stop or asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            pass

    relay = RelayProtocol(RoomRegistry(capacity=capacity), stats=RelayMetrics())
    async with SignalingServer(relay, host=host, port=port, path=path):
        logger.info("Room capacity: %s", capacity or "unlimited")
        await stop.wait()
    logger.info("Signaling relay stopped with %d connection(s) open", len(relay.peers))


async def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point for the signaling server."""
    settings = Settings.from_env()
    args = build_parser(settings).parse_args(argv)

    if args.healthcheck:
        settings.host, settings.port, settings.room_capacity = args.host, args.port, args.capacity
        errors = settings.validate()
        if errors:
            print("Configuration validation failed:", file=sys.stderr)
            for error in errors:
                print(f"  - {error}", file=sys.stderr)
            sys.exit(1)
        print("ok")
        sys.exit(0)

    logger = setup_logging(
        args.loglevel or settings.log_level, settings.log_format, settings.log_file, name="livecall.signaling")

    metrics_port = args.metrics_port if args.metrics_port is not None else settings.metrics_port
    metrics_server = None
    if metrics_port:
        metrics_server, _ = start_metrics_server(metrics_port, logger)

    try:
        await serve(args.host, args.port, args.path, args.capacity, logger)
    finally:
        if metrics_server and hasattr(metrics_server, "shutdown"):
            metrics_server.shutdown()
            logger.info("Metrics server shut down")


def cli() -> None:
    """Synchronous console entrypoint wrapper for packaging."""
    asyncio.run(main())


if __name__ == "__main__":
    cli()
