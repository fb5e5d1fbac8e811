"""Local media capture for a call.

Devices are opened through PyAV via :class:`aiortc.contrib.media.MediaPlayer`
(v4l2/pulse/x11grab on Linux, avfoundation on macOS, dshow/gdigrab on
Windows).  Every captured track is wrapped in a :class:`ToggleableTrack`
so mute and camera-off are a flag flip: a disabled track keeps producing
frames of the same shape, black video or silent audio, and the peer
connection never needs renegotiating.

Tracks are fanned out with :class:`aiortc.contrib.media.MediaRelay`;
the peer connection and the recorder each receive their own clone and
never compete for frames.
"""

import asyncio
import errno
import logging
from typing import Any, Callable, Dict, List, Optional

import av
import numpy as np
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer, MediaRelay
from aiortc.mediastreams import MediaStreamError

from .errors import MediaAccessError

logger = logging.getLogger(__name__)

VIDEO = "video"
AUDIO = "audio"
SCREEN = "screen"


def blank_frame_like(frame: Any) -> Any:
    """Return a black video frame or a silent audio frame shaped like ``frame``."""
    if isinstance(frame, av.AudioFrame):
        channels = len(frame.layout.channels)
        pcm = np.zeros((1, frame.samples * channels), dtype=np.int16)
        blank = av.AudioFrame.from_ndarray(pcm, format="s16", layout=frame.layout.name)
        blank.sample_rate = frame.sample_rate
    else:
        pixels = np.zeros((frame.height, frame.width, 3), dtype=np.uint8)
        blank = av.VideoFrame.from_ndarray(pixels, format="rgb24")
    blank.pts = frame.pts
    if frame.time_base is not None:
        blank.time_base = frame.time_base
    return blank


class ToggleableTrack(MediaStreamTrack):
    """Track that forwards a source track and can be muted in place."""

    def __init__(self, source: MediaStreamTrack):
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.enabled = True
        source.on("ended", self._on_source_ended)

    async def recv(self) -> Any:
        if self.readyState != "live":
            raise MediaStreamError
        frame = await self.source.recv()
        if self.enabled:
            return frame
        return blank_frame_like(frame)

    def _on_source_ended(self) -> None:
        self.stop()

    def stop(self) -> None:
        super().stop()
        self.source.stop()


class MediaStream:
    """Tracks that belong together, keyed by kind, with relayed clones."""

    def __init__(self, relay: Optional[MediaRelay] = None):
        self._tracks: Dict[str, MediaStreamTrack] = {}
        self._relay = relay or MediaRelay()

    def add_track(self, track: MediaStreamTrack) -> None:
        self._tracks[track.kind] = track

    def get(self, kind: str) -> Optional[MediaStreamTrack]:
        return self._tracks.get(kind)

    @property
    def tracks(self) -> List[MediaStreamTrack]:
        return list(self._tracks.values())

    @property
    def video(self) -> Optional[MediaStreamTrack]:
        return self._tracks.get(VIDEO)

    @property
    def audio(self) -> Optional[MediaStreamTrack]:
        return self._tracks.get(AUDIO)

    def clone(self, kind: str) -> Optional[MediaStreamTrack]:
        """Independent consumer of the ``kind`` track, ``None`` if absent."""
        track = self._tracks.get(kind)
        if track is None:
            return None
        return self._relay.subscribe(track)

    def stop(self) -> None:
        for track in self.tracks:
            track.stop()

    def __bool__(self) -> bool:
        return bool(self._tracks)


class DeviceOpener:
    """Open capture devices with PyAV.

    ``options`` holds per-kind demuxer options, for example
    ``{"video": {"video_size": "640x480"}}``.
    """

    DEFAULT_OPTIONS = {
        VIDEO: {"video_size": "640x480", "framerate": "30"},
        AUDIO: {},
        SCREEN: {"framerate": "15"},
    }

    def __init__(self, camera: Optional[str] = None, camera_format: Optional[str] = None,
                 microphone: Optional[str] = None, microphone_format: Optional[str] = None,
                 screen: Optional[str] = None, screen_format: Optional[str] = None,
                 options: Optional[Dict[str, Dict[str, str]]] = None):
        self.devices = {
            VIDEO: (camera, camera_format),
            AUDIO: (microphone, microphone_format),
            SCREEN: (screen, screen_format),
        }
        self.options = dict(self.DEFAULT_OPTIONS)
        self.options.update(options or {})

    @classmethod
    def from_settings(cls, settings: Any) -> "DeviceOpener":
        return cls(
            camera=settings.camera,
            camera_format=settings.camera_format,
            microphone=settings.microphone,
            microphone_format=settings.microphone_format,
            screen=settings.screen,
            screen_format=settings.screen_format,
        )

    def __call__(self, kind: str) -> MediaStreamTrack:
        device, fmt = self.devices[kind]
        if not device:
            raise MediaAccessError(kind, "device-not-found", f"no {kind} device configured")
        try:
            player = MediaPlayer(device, format=fmt, options=self.options.get(kind) or None)
        except (av.error.FFmpegError, OSError, ValueError) as e:
            raise _classify(kind, e) from e
        track = player.audio if kind == AUDIO else player.video
        if track is None:
            raise MediaAccessError(kind, "device-not-found", f"{device} has no {kind} stream")
        return track


def _classify(kind: str, exc: BaseException) -> MediaAccessError:
    if isinstance(exc, PermissionError):
        reason = "permission-denied"
    elif isinstance(exc, FileNotFoundError):
        reason = "device-not-found"
    elif getattr(exc, "errno", None) == errno.EBUSY:
        reason = "device-in-use"
    else:
        reason = "unavailable"
    return MediaAccessError(kind, reason, f"{kind} access failed: {exc}")


class LocalMediaController:
    """Acquire, toggle and release the local camera, microphone and screen.

    :param opener: Callable taking ``"video"``, ``"audio"`` or ``"screen"``
        and returning a live track or raising :class:`MediaAccessError`.
        Opening may block on a permission prompt, so it runs in the default
        executor.
    """

    def __init__(self, opener: Optional[Callable[[str], MediaStreamTrack]] = None):
        self.opener = opener or DeviceOpener()
        self.stream: Optional[MediaStream] = None
        self.screen_track: Optional[MediaStreamTrack] = None

    async def _open(self, kind: str) -> MediaStreamTrack:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.opener, kind)

    async def acquire(self, video: bool = True, audio: bool = True) -> MediaStream:
        """Open the requested devices and make them the current stream.

        On failure every device opened by this call is closed again and
        the previous stream, if any, stays current.

        :raises MediaAccessError: If any requested device cannot be opened.
        """
        opened: List[MediaStreamTrack] = []
        try:
            if video:
                opened.append(await self._open(VIDEO))
            if audio:
                opened.append(await self._open(AUDIO))
        except MediaAccessError:
            for track in opened:
                track.stop()
            raise

        stream = MediaStream()
        for track in opened:
            stream.add_track(ToggleableTrack(track))

        previous, self.stream = self.stream, stream
        if previous is not None:
            previous.stop()
        logger.info("Local media acquired: %s", ", ".join(t.kind for t in stream.tracks) or "none")
        return stream

    def set_track_enabled(self, kind: str, enabled: bool) -> bool:
        """Enable or disable the ``kind`` track without renegotiation.

        :return: ``True`` if a track of that kind exists.
        """
        track = self.stream.get(kind) if self.stream else None
        if track is None:
            return False
        track.enabled = enabled
        return True

    def is_enabled(self, kind: str) -> bool:
        track = self.stream.get(kind) if self.stream else None
        return bool(track is not None and track.enabled)

    async def acquire_screen_share(self) -> MediaStreamTrack:
        """Start display capture.

        The returned track emits ``ended`` when capture stops on its own.

        :raises MediaAccessError: If capture is denied or unavailable.
        """
        track = await self._open(SCREEN)
        self.stop_screen_share()
        self.screen_track = track
        return track

    def stop_screen_share(self) -> None:
        track, self.screen_track = self.screen_track, None
        if track is not None:
            track.stop()

    def release(self) -> None:
        """Stop every local track; safe to call repeatedly."""
        self.stop_screen_share()
        stream, self.stream = self.stream, None
        if stream is not None:
            stream.stop()
            logger.info("Local media released")


__all__ = [
    "blank_frame_like",
    "ToggleableTrack",
    "MediaStream",
    "DeviceOpener",
    "LocalMediaController",
]
