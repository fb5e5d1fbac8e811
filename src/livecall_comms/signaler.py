"""WebSocket client for the signaling channel.

This module provides the Signaler class that manages a WebSocket
connection with reconnect backoff, routes incoming events through a
:class:`~livecall_comms.broker.Broker` and sends queued frames from a
background loop.  When the connection drops a synthetic
``transport/closed`` event is published on the ``signal`` topic so the
call client tears down in order with the events that preceded it.
"""

import asyncio
import json
import logging
import random
from typing import Any, Dict, Optional, Set

import websockets
from websockets.asyncio.client import ClientConnection, connect
from websockets.protocol import State

from .broker import Broker
from .errors import TransportError
from .types import TRANSPORT_CLOSED, envelope

logger = logging.getLogger(__name__)


class Signaler:
    """WebSocket client with reconnect and message fan-out."""

    def __init__(self, url: str, max_attempts: Optional[int] = None, **wsopts: Any):
        """Initialize the WebSocket signaler.

        :param url: WebSocket URL to connect to
        :type url: str
        :param max_attempts: Give up after this many failed connects;
            ``None`` retries until :meth:`close` is called
        :type max_attempts: Optional[int]
        :param wsopts: Additional WebSocket connection options
        :type wsopts: Any
        """
        self.url = url
        self.max_attempts = max_attempts
        self.wsopts = dict(
            ping_interval=20,
            ping_timeout=20,
            max_queue=1024,
            max_size=1_000_000,
            **wsopts,
        )
        self.ws: Optional[ClientConnection] = None
        self.broker = Broker()
        self._sendq: asyncio.Queue = asyncio.Queue(maxsize=256)
        self._tasks: Set[asyncio.Task] = set()
        self._closing = False
        self._closed = asyncio.Event()

    async def _cleanup_tasks(self) -> None:
        for task in list(self._tasks):
            if not task.done():
                task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    async def connect_with_backoff(self) -> "Signaler":
        """Connect, retrying with exponential backoff and jitter.

        :return: Self for method chaining.
        :rtype: Signaler
        :raises TransportError: If ``max_attempts`` connects all failed.
        """
        backoff = 1
        attempts = 0
        self._closing = False
        while not self._closing:
            try:
                await self._cleanup_tasks()
                self.ws = await connect(self.url, **self.wsopts)
                logger.info("WebSocket connected to %s", self.url)
                self._closed.clear()
                self._drain_sendq()
                self._tasks.add(asyncio.create_task(self._read_loop(), name="ws-read"))
                self._tasks.add(asyncio.create_task(self._send_loop(), name="ws-send"))
                return self
            except (OSError, websockets.InvalidHandshake, asyncio.TimeoutError) as e:
                attempts += 1
                if self.max_attempts is not None and attempts >= self.max_attempts:
                    raise TransportError(f"could not connect to {self.url}: {e}") from e
                jitter = random.uniform(0, max(0.25, backoff * 0.25))
                delay = min(backoff + jitter, 30)
                logger.error("WS connect error: %s - retrying in %.2fs", e, delay)
                await asyncio.sleep(delay)
                backoff = min(backoff * 2, 30)
        raise TransportError("signaler closed while connecting")

    async def close(self) -> None:
        """Close the connection and stop the background loops."""
        self._closing = True
        await self._cleanup_tasks()
        if self.ws:
            try:
                await self.ws.close()
            except websockets.ConnectionClosed:
                pass
            finally:
                self.ws = None
        self._closed.set()

    async def send(self, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        """Queue an event for the send loop.

        Frames queued while disconnected are discarded on reconnect; the
        protocol has no delivery guarantees to preserve.
        """
        try:
            self._sendq.put_nowait(envelope(event, payload))
        except asyncio.QueueFull:
            logger.warning("Send queue full, dropping %s", event)

    def is_connected(self) -> bool:
        """Check if the WebSocket connection is active."""
        return self.ws is not None and self.ws.state == State.OPEN and not self._closed.is_set()

    def _drain_sendq(self) -> None:
        while not self._sendq.empty():
            self._sendq.get_nowait()

    async def _read_loop(self) -> None:
        try:
            async for raw in self.ws:
                try:
                    msg = json.loads(raw)
                except ValueError:
                    logger.debug("Received non-JSON: %r", raw)
                    continue
                if isinstance(msg, dict):
                    self.broker.publish(msg)
        except websockets.ConnectionClosed as e:
            logger.warning("WS closed: %s", e)
        finally:
            self._mark_closed()

    async def _send_loop(self) -> None:
        try:
            while not self._closed.is_set():
                msg = await self._sendq.get()
                await self.ws.send(json.dumps(msg, ensure_ascii=False))
        except websockets.ConnectionClosed:
            logger.warning("Send failed: WS closed")
        finally:
            self._mark_closed()

    def _mark_closed(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        if not self._closing:
            self.broker.publish(envelope(TRANSPORT_CLOSED))


__all__ = ["Signaler"]
