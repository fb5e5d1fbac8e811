"""Live Call Communication Library

Signaling, negotiation and media for two-party live tutoring sessions.

Main exports:
    RoomRegistry: Room membership bookkeeping
    RelayProtocol: Presence and relay rules of the signaling server
    SignalingServer: WebSocket transport for the relay
    Signaler: WebSocket client with auto-reconnect
    LiveCallClient: Participant that negotiates and runs a call
    LocalMediaController: Camera, microphone and screen capture
    RecordingCapturer: Session recording
    BookingClient: Booking service boundary
"""

from .booking import BookingClient
from .broker import Broker
from .client import LiveCallClient
from .errors import (
    BookingError,
    LiveCallError,
    MediaAccessError,
    NegotiationError,
    RecordingUnavailable,
    RecordingUnsupported,
    RoomFull,
    TransportError,
)
from .media import DeviceOpener, LocalMediaController, MediaStream, ToggleableTrack
from .negotiation import CallState, NegotiationMachine, NegotiationSession, transition
from .recorder import RecordingCapturer
from .registry import RoomRegistry
from .relay import Peer, RelayProtocol
from .server import SignalingServer
from .signaler import Signaler
from .types import ChatMessage, RecordingArtifact

__all__ = [
    "BookingClient",
    "Broker",
    "LiveCallClient",
    "BookingError",
    "LiveCallError",
    "MediaAccessError",
    "NegotiationError",
    "RecordingUnavailable",
    "RecordingUnsupported",
    "RoomFull",
    "TransportError",
    "DeviceOpener",
    "LocalMediaController",
    "MediaStream",
    "ToggleableTrack",
    "CallState",
    "NegotiationMachine",
    "NegotiationSession",
    "transition",
    "RecordingCapturer",
    "RoomRegistry",
    "Peer",
    "RelayProtocol",
    "SignalingServer",
    "Signaler",
    "ChatMessage",
    "RecordingArtifact",
]
