"""Presence and relay protocol for the signaling server.

:class:`RelayProtocol` turns events received from connected peers into
room membership changes and forwarded messages.  Every handler is plain
synchronous code: membership is mutated and outgoing frames are queued
on the recipients' outboxes before the handler returns, so handlers
never interleave on the event loop and the registry needs no locking.

Delivery is fire-and-forget.  A relay addressed to a handle that is no
longer connected is dropped without telling either side, and there are
no acknowledgements or retries.
"""

import asyncio
import logging
import uuid
from typing import Any, Callable, Dict, Optional, Protocol

from livecall.utils import epoch_ms

from .errors import RoomFull
from .registry import RoomRegistry
from .types import (
    ANSWER,
    CHAT_MESSAGE,
    DEFAULT_DISPLAY_NAME,
    EXISTING_PARTICIPANTS,
    ICE_CANDIDATE,
    JOIN_ROOM,
    LEAVE_ROOM,
    OFFER,
    RENEGOTIATE,
    ROOM_FULL,
    USER_JOINED,
    USER_LEFT,
    envelope,
)

logger = logging.getLogger(__name__)


class RelayStats(Protocol):
    """Hooks the relay reports to; implemented by ``metrics.RelayMetrics``."""

    def connection_opened(self) -> None: ...
    def connection_closed(self) -> None: ...
    def relayed(self, event: str) -> None: ...
    def dropped(self, event: str, reason: str) -> None: ...
    def chat(self) -> None: ...
    def rooms_changed(self, registry: RoomRegistry) -> None: ...


class Peer:
    """One connected signaling client.

    The handle is per connection, not per user account: reconnecting
    yields a new handle.  Outgoing frames go to a bounded ``outbox`` that
    the transport drains; ``send`` never blocks.
    """

    def __init__(self, handle: Optional[str] = None, maxsize: int = 256):
        self.id = handle or uuid.uuid4().hex
        self.name = DEFAULT_DISPLAY_NAME
        self.room: Optional[str] = None
        self.outbox: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    def send(self, event: str, payload: Dict[str, Any]) -> bool:
        try:
            self.outbox.put_nowait(envelope(event, payload))
            return True
        except asyncio.QueueFull:
            logger.warning("Outbox full for %s, dropping %s", self.id, event)
            return False

    def __repr__(self) -> str:
        return f"Peer(id={self.id!r}, name={self.name!r}, room={self.room!r})"


class RelayProtocol:
    """Routes join/leave/offer/answer/ice-candidate/renegotiate/chat events."""

    def __init__(self, registry: RoomRegistry, stats: Optional[RelayStats] = None):
        self.registry = registry
        self.stats = stats
        self.peers: Dict[str, Peer] = {}
        self._handlers: Dict[str, Callable[[Peer, Dict[str, Any]], None]] = {
            JOIN_ROOM: self._on_join_room,
            LEAVE_ROOM: self._on_leave_room,
            OFFER: lambda peer, payload: self._relay(peer, OFFER, "sdp", payload),
            ANSWER: lambda peer, payload: self._relay(peer, ANSWER, "sdp", payload),
            ICE_CANDIDATE: lambda peer, payload: self._relay(peer, ICE_CANDIDATE, "candidate", payload),
            RENEGOTIATE: lambda peer, payload: self._relay(peer, RENEGOTIATE, None, payload),
            CHAT_MESSAGE: self._on_chat_message,
        }

    # ----------------------
    # Connection lifecycle
    # ----------------------

    def connect(self, peer: Peer) -> None:
        self.peers[peer.id] = peer
        if self.stats:
            self.stats.connection_opened()
        logger.info("Peer connected: %s", peer.id, extra={"handle": peer.id})

    def disconnect(self, peer: Peer) -> None:
        """Drop ``peer``; remaining room members get one ``user-left`` each."""
        if self.peers.pop(peer.id, None) is None:
            return
        for room in self.registry.rooms_of(peer.id):
            self._leave(peer, room)
        peer.room = None
        if self.stats:
            self.stats.connection_closed()
            self.stats.rooms_changed(self.registry)
        logger.info("Peer disconnected: %s", peer.id, extra={"handle": peer.id})

    def dispatch(self, peer: Peer, event: str, payload: Any) -> None:
        """Handle one event from ``peer``; unknown events are ignored."""
        handler = self._handlers.get(event)
        if handler is None:
            logger.debug("Ignoring unknown event %r from %s", event, peer.id)
            return
        if not isinstance(payload, dict):
            payload = {}
        handler(peer, payload)

    # ----------------------
    # Handlers
    # ----------------------

    def _on_join_room(self, peer: Peer, payload: Dict[str, Any]) -> None:
        room = payload.get("roomId")
        if not isinstance(room, str) or not room.strip():
            return
        room = room.strip()
        user_name = payload.get("userName")
        if not isinstance(user_name, str) or not user_name.strip():
            user_name = DEFAULT_DISPLAY_NAME

        # a refused join leaves the peer where it was
        previous = peer.room
        try:
            added = self.registry.join(room, peer.id)
        except RoomFull as exc:
            logger.info("Refusing %s: %s", peer.id, exc, extra={"room": room, "handle": peer.id})
            peer.send(ROOM_FULL, {"roomId": room, "capacity": exc.capacity})
            return
        if previous is not None and previous != room:
            self._announce_left(peer, previous)

        peer.name = user_name.strip()
        peer.room = room
        others = [handle for handle in self.registry.members_of(room) if handle != peer.id]
        peer.send(EXISTING_PARTICIPANTS, {"participants": others})
        if added:
            self._broadcast(room, USER_JOINED, {"socketId": peer.id, "userName": peer.name}, exclude=peer.id)
            logger.info("%s (%s) joined room %s with %d other(s)", peer.id, peer.name, room, len(others),
                        extra={"room": room, "handle": peer.id})
        if self.stats:
            self.stats.rooms_changed(self.registry)

    def _on_leave_room(self, peer: Peer, payload: Dict[str, Any]) -> None:
        if peer.room is None:
            return
        self._leave(peer, peer.room)
        peer.room = None
        if self.stats:
            self.stats.rooms_changed(self.registry)

    def _relay(self, peer: Peer, event: str, field: Optional[str], payload: Dict[str, Any]) -> None:
        """Forward ``payload[field]`` to ``targetId``; ``field=None`` forwards only the sender."""
        target_id = payload.get("targetId")
        data = payload.get(field) if field else None
        if not target_id or (field and not data):
            self._drop(event, "missing-field")
            return
        target = self.peers.get(target_id)
        if target is None:
            logger.debug("Dropping %s from %s: target %s is gone", event, peer.id, target_id,
                         extra={"handle": peer.id, "event": event})
            self._drop(event, "unknown-target")
            return
        target.send(event, {"from": peer.id, field: data} if field else {"from": peer.id})
        if self.stats:
            self.stats.relayed(event)

    def _on_chat_message(self, peer: Peer, payload: Dict[str, Any]) -> None:
        room = payload.get("roomId")
        message = payload.get("message")
        if not room or not isinstance(message, str) or not message.strip():
            self._drop(CHAT_MESSAGE, "empty")
            return
        sender = payload.get("sender") or DEFAULT_DISPLAY_NAME
        self._broadcast(
            room,
            CHAT_MESSAGE,
            {"sender": sender, "message": message.strip(), "timestamp": epoch_ms()},
            exclude=peer.id,
        )
        if self.stats:
            self.stats.chat()

    # ----------------------
    # Helpers
    # ----------------------

    def _leave(self, peer: Peer, room: str) -> None:
        self.registry.leave(room, peer.id)
        self._announce_left(peer, room)

    def _announce_left(self, peer: Peer, room: str) -> None:
        self._broadcast(room, USER_LEFT, {"socketId": peer.id}, exclude=peer.id)
        logger.info("%s left room %s", peer.id, room, extra={"room": room, "handle": peer.id})

    def _broadcast(self, room: str, event: str, payload: Dict[str, Any], exclude: Optional[str] = None) -> int:
        delivered = 0
        for handle in self.registry.members_of(room):
            if handle == exclude:
                continue
            target = self.peers.get(handle)
            if target is not None and target.send(event, payload):
                delivered += 1
        return delivered

    def _drop(self, event: str, reason: str) -> None:
        if self.stats:
            self.stats.dropped(event, reason)


__all__ = ["Peer", "RelayProtocol", "RelayStats"]
