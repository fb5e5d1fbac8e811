"""Exception taxonomy for the live call stack."""

from typing import Optional


class LiveCallError(Exception):
    """Base class for every error raised by :mod:`livecall_comms`."""


class TransportError(LiveCallError):
    """The signaling connection failed or dropped."""


class NegotiationError(LiveCallError):
    """Creating or applying an offer/answer failed."""


class RoomFull(LiveCallError):
    """A join was refused because the room reached its capacity."""

    def __init__(self, room: str, capacity: int):
        super().__init__(f"room {room!r} is full ({capacity} participants)")
        self.room = room
        self.capacity = capacity


_REMEDIATION = {
    "permission-denied": "Allow access to your {device} in the system or browser settings and try again.",
    "device-not-found": "No {device} was found. Connect one or pick another device.",
    "device-in-use": "Your {device} is being used by another application. Close it and try again.",
    "cancelled": "Sharing your {device} was cancelled.",
    "unavailable": "Your {device} could not be opened.",
}


class MediaAccessError(LiveCallError):
    """Camera, microphone or display capture could not be acquired.

    :param kind: ``"video"``, ``"audio"`` or ``"screen"``
    :param reason: one of ``permission-denied``, ``device-not-found``,
        ``device-in-use``, ``cancelled`` or ``unavailable``
    """

    def __init__(self, kind: str, reason: str = "unavailable", detail: Optional[str] = None):
        self.kind = kind
        self.reason = reason if reason in _REMEDIATION else "unavailable"
        self.detail = detail
        super().__init__(detail or f"{kind} access failed: {self.reason}")

    @property
    def user_message(self) -> str:
        """A message telling the user what to fix."""
        device = {"video": "camera", "audio": "microphone", "screen": "screen"}.get(self.kind, "device")
        return _REMEDIATION[self.reason].format(device=device)


class RecordingUnavailable(LiveCallError):
    """Recording was requested before a remote stream exists."""


class RecordingUnsupported(LiveCallError):
    """The runtime cannot encode the recording container or codecs."""


class BookingError(LiveCallError):
    """The booking service rejected a request or could not be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


__all__ = [
    "LiveCallError",
    "TransportError",
    "NegotiationError",
    "RoomFull",
    "MediaAccessError",
    "RecordingUnavailable",
    "RecordingUnsupported",
    "BookingError",
]
