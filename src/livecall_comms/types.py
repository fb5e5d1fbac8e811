"""Shared types and constants for the live call protocol.

This module defines the signaling event names, the wire envelope and
the small data structures exchanged between the relay, the call client
and the hosting application.
"""

import base64
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional


# ----------------------
# Protocol constants
# ----------------------

# client -> server
JOIN_ROOM = "join-room"
LEAVE_ROOM = "leave-room"
# client -> server -> target
OFFER = "offer"
ANSWER = "answer"
ICE_CANDIDATE = "ice-candidate"
RENEGOTIATE = "renegotiate"
# client -> server -> room
CHAT_MESSAGE = "chat-message"
# server -> client
CONNECTED = "connected"
EXISTING_PARTICIPANTS = "existing-participants"
USER_JOINED = "user-joined"
USER_LEFT = "user-left"
ROOM_FULL = "room-full"
# synthetic, published locally by the Signaler when the socket drops
TRANSPORT_CLOSED = "transport/closed"

RELAYED_EVENTS = {OFFER, ANSWER, ICE_CANDIDATE, RENEGOTIATE}
PRESENCE_EVENTS = {CONNECTED, EXISTING_PARTICIPANTS, USER_JOINED, USER_LEFT, ROOM_FULL}

DEFAULT_DISPLAY_NAME = "Participant"


def envelope(event: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Build the ``{"event", "payload"}`` frame sent over the socket."""
    return {"event": event, "payload": payload if payload is not None else {}}


# ----------------------
# Data types
# ----------------------

@dataclass
class ChatMessage:
    """A chat line as shown in the call sidebar.

    :param sender: Display name of the author
    :type sender: str
    :param message: Message text, already stripped
    :type message: str
    :param timestamp: Server stamp in epoch milliseconds
    :type timestamp: int
    """
    sender: str
    message: str
    timestamp: int

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ChatMessage":
        return cls(
            sender=payload.get("sender") or DEFAULT_DISPLAY_NAME,
            message=payload.get("message", ""),
            timestamp=int(payload.get("timestamp") or 0),
        )

    @property
    def sent_at(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp / 1000, tz=timezone.utc)


@dataclass
class RecordingArtifact:
    """A finished session recording handed to the hosting application.

    :param id: Identifier derived from the creation time
    :param data: Encoded container bytes
    :param filename: Suggested file name
    :param duration: Length in whole seconds
    :param created_at: When the recording stopped
    :param mime_type: Container and codecs of ``data``
    """
    id: str
    data: bytes
    filename: str
    duration: int
    created_at: datetime
    mime_type: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def size(self) -> int:
        return len(self.data)

    def to_data_url(self) -> str:
        """Encode the artifact as a ``data:`` URL."""
        mime = self.mime_type.split(";", 1)[0]
        return f"data:{mime};base64,{base64.b64encode(self.data).decode('ascii')}"

    def save(self, directory: "str | Path") -> Path:
        """Write the artifact into ``directory`` and return the file path."""
        target = Path(directory)
        target.mkdir(parents=True, exist_ok=True)
        path = target / self.filename
        path.write_bytes(self.data)
        return path
