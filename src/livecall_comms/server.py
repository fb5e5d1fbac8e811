"""WebSocket transport for the signaling relay.

Each accepted connection becomes a :class:`~livecall_comms.relay.Peer`
with a fresh handle.  Frames are JSON ``{"event": ..., "payload": ...}``
objects; a reader feeds them to the relay and a per-connection writer
task drains the peer's outbox.  Closing the socket, for any reason, is
reported to the relay as a disconnect.
"""

import asyncio
import contextlib
import json
import logging
from http import HTTPStatus
from typing import Any, Optional, Set
from urllib.parse import urlsplit

from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from .relay import Peer, RelayProtocol
from .types import CONNECTED

logger = logging.getLogger(__name__)


class SignalingServer:
    """Serve :class:`RelayProtocol` over WebSockets.

    :param relay: The relay that owns room state
    :type relay: RelayProtocol
    :param host: Interface to bind
    :param port: TCP port, ``0`` picks a free one
    :param path: Only upgrade requests on this path; ``None`` accepts any
    :param wsopts: Extra options for :func:`websockets.asyncio.server.serve`
    """

    def __init__(self, relay: RelayProtocol, host: str = "0.0.0.0", port: int = 5000,
                 path: Optional[str] = "/ws", **wsopts: Any):
        self.relay = relay
        self.host = host
        self.port = port
        self.path = path
        self.wsopts = dict(
            ping_interval=20,
            ping_timeout=20,
            max_size=1_000_000,
            **wsopts,
        )
        self._server: Optional[Server] = None
        self._writers: Set[asyncio.Task] = set()

    async def start(self) -> "SignalingServer":
        self._server = await serve(
            self._handle_connection,
            self.host,
            self.port,
            process_request=self._process_request,
            **self.wsopts,
        )
        sock = next(iter(self._server.sockets), None)
        if sock is not None:
            self.port = sock.getsockname()[1]
        logger.info("Signaling server listening on %s:%d%s", self.host, self.port, self.path or "")
        return self

    async def serve_forever(self) -> None:
        if self._server is None:
            await self.start()
        await self._server.serve_forever()

    async def close(self) -> None:
        if self._server is None:
            return
        self._server.close()
        with contextlib.suppress(Exception):
            await self._server.wait_closed()
        self._server = None
        logger.info("Signaling server stopped")

    async def __aenter__(self) -> "SignalingServer":
        return await self.start()

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _process_request(self, connection: ServerConnection, request: Any):
        path = urlsplit(request.path).path
        if path == "/healthz":
            return connection.respond(HTTPStatus.OK, "OK\n")
        if self.path and path != self.path:
            return connection.respond(HTTPStatus.NOT_FOUND, "Not Found\n")
        return None

    async def _handle_connection(self, ws: ServerConnection) -> None:
        peer = Peer()
        self.relay.connect(peer)
        peer.send(CONNECTED, {"socketId": peer.id})
        writer = asyncio.create_task(self._write_loop(ws, peer), name=f"ws-write-{peer.id[:8]}")
        self._writers.add(writer)
        writer.add_done_callback(self._writers.discard)
        try:
            async for raw in ws:
                try:
                    msg = json.loads(raw)
                except (TypeError, ValueError):
                    logger.debug("Received non-JSON from %s: %r", peer.id, raw)
                    continue
                if not isinstance(msg, dict):
                    continue
                self.relay.dispatch(peer, msg.get("event", ""), msg.get("payload"))
        except ConnectionClosed as e:
            logger.debug("Connection %s closed: %s", peer.id, e)
        finally:
            self.relay.disconnect(peer)
            writer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await writer

    async def _write_loop(self, ws: ServerConnection, peer: Peer) -> None:
        while True:
            msg = await peer.outbox.get()
            try:
                await ws.send(json.dumps(msg, ensure_ascii=False))
            except ConnectionClosed:
                logger.debug("Send to %s failed: connection closed", peer.id)
                return


__all__ = ["SignalingServer"]
