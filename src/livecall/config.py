"""Environment driven configuration helpers.

The goal of this module is to centralize environment variable parsing
for the signaling server and the call client.  Both entrypoints build a
:class:`Settings` instance once at startup and pass the relevant fields
down to the objects they construct.
"""
from __future__ import annotations

from dataclasses import dataclass
import os
import sys
from typing import List, Optional

from .utils import env_bool


def _default_devices() -> dict:
    """Return PyAV capture devices for the current platform."""
    if sys.platform == "darwin":
        return {
            "camera": "default:none",
            "camera_format": "avfoundation",
            "microphone": "none:default",
            "microphone_format": "avfoundation",
            "screen": "1:none",
            "screen_format": "avfoundation",
        }
    if sys.platform.startswith("win"):
        return {
            "camera": "video=Integrated Camera",
            "camera_format": "dshow",
            "microphone": "audio=Microphone",
            "microphone_format": "dshow",
            "screen": "desktop",
            "screen_format": "gdigrab",
        }
    return {
        "camera": "/dev/video0",
        "camera_format": "v4l2",
        "microphone": "default",
        "microphone_format": "pulse",
        "screen": os.getenv("DISPLAY", ":0"),
        "screen_format": "x11grab",
    }


@dataclass
class Settings:
    """Runtime settings for the livecall tools."""

    # Signaling server
    host: str = "0.0.0.0"
    port: int = 5000
    room_capacity: int = 0

    # Call client
    signaling_url: str = "ws://localhost:5000/ws"
    api_url: str = "http://localhost:5000"
    auto_reconnect: bool = True

    # ICE
    stun_url: str = "stun:stun.l.google.com:19302"
    turn_url: Optional[str] = None
    turn_user: Optional[str] = None
    turn_pass: Optional[str] = None

    # Media devices
    camera: Optional[str] = None
    camera_format: Optional[str] = None
    microphone: Optional[str] = None
    microphone_format: Optional[str] = None
    screen: Optional[str] = None
    screen_format: Optional[str] = None

    # Recording
    recording_dir: str = "./recordings"
    recording_timeslice: float = 1.0

    # Observability
    metrics_port: int = 9000
    log_level: str = "INFO"
    log_format: str = "text"
    log_file: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        """Construct settings from ``LIVECALL_*`` environment variables.

        Device settings fall back to the platform defaults PyAV expects
        (v4l2/pulse/x11grab on Linux, avfoundation on macOS, dshow/gdigrab
        on Windows).
        """

        devices = _default_devices()
        return cls(
            host=os.getenv("LIVECALL_HOST", "0.0.0.0"),
            port=int(os.getenv("LIVECALL_PORT", "5000")),
            room_capacity=int(os.getenv("LIVECALL_ROOM_CAPACITY", "0")),
            signaling_url=os.getenv("LIVECALL_SIGNALING_URL", "ws://localhost:5000/ws"),
            api_url=os.getenv("LIVECALL_API_URL", "http://localhost:5000"),
            auto_reconnect=env_bool("LIVECALL_AUTO_RECONNECT", True),
            stun_url=os.getenv("LIVECALL_STUN_URL", "stun:stun.l.google.com:19302"),
            turn_url=os.getenv("LIVECALL_TURN_URL"),
            turn_user=os.getenv("LIVECALL_TURN_USER"),
            turn_pass=os.getenv("LIVECALL_TURN_PASS"),
            camera=os.getenv("LIVECALL_CAMERA", devices["camera"]),
            camera_format=os.getenv("LIVECALL_CAMERA_FORMAT", devices["camera_format"]),
            microphone=os.getenv("LIVECALL_MICROPHONE", devices["microphone"]),
            microphone_format=os.getenv("LIVECALL_MICROPHONE_FORMAT", devices["microphone_format"]),
            screen=os.getenv("LIVECALL_SCREEN", devices["screen"]),
            screen_format=os.getenv("LIVECALL_SCREEN_FORMAT", devices["screen_format"]),
            recording_dir=os.getenv("LIVECALL_RECORDING_DIR", "./recordings"),
            recording_timeslice=float(os.getenv("LIVECALL_RECORDING_TIMESLICE", "1.0")),
            metrics_port=int(os.getenv("LIVECALL_METRICS_PORT", "9000")),
            log_level=os.getenv("LIVECALL_LOGLEVEL", "INFO"),
            log_format=os.getenv("LIVECALL_LOG_FORMAT", "text").lower(),
            log_file=os.getenv("LIVECALL_LOGFILE"),
        )

    @property
    def turn_enabled(self) -> bool:
        """TURN is only used when url, user and password are all present."""
        return bool(self.turn_url and self.turn_user and self.turn_pass)

    def validate(self) -> List[str]:
        """Return a list of configuration problems; empty when valid."""
        errors: List[str] = []

        if not 0 < self.port < 65536:
            errors.append(f"LIVECALL_PORT must be within 1-65535, got {self.port}")
        if self.room_capacity < 0:
            errors.append("LIVECALL_ROOM_CAPACITY must be >= 0 (0 means unlimited)")
        if self.recording_timeslice <= 0:
            errors.append("LIVECALL_RECORDING_TIMESLICE must be > 0")
        if self.metrics_port < 0:
            errors.append("LIVECALL_METRICS_PORT must be >= 0 (0 disables metrics)")
        if not self.signaling_url.startswith(("ws://", "wss://")):
            errors.append("LIVECALL_SIGNALING_URL must start with ws:// or wss://")
        if not self.api_url.startswith(("http://", "https://")):
            errors.append("LIVECALL_API_URL must start with http:// or https://")
        turn_parts = [self.turn_url, self.turn_user, self.turn_pass]
        if any(turn_parts) and not all(turn_parts):
            errors.append("LIVECALL_TURN_URL, LIVECALL_TURN_USER and LIVECALL_TURN_PASS must be set together")
        if self.log_format not in ("text", "json"):
            errors.append("LIVECALL_LOG_FORMAT must be 'text' or 'json'")

        return errors


__all__ = ["Settings"]
