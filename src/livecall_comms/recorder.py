"""Session recording.

The remote participant's audio and video plus the local microphone are
muxed into Matroska (H.264 + AAC) with
:class:`aiortc.contrib.media.MediaRecorder`.  The recorder consumes
relayed clones of the tracks, so the call keeps playing while recording
and stopping the recording never ends a track the call still uses.

Encoded output lands in a :class:`ChunkSink`; a slicing task cuts a chunk
every ``timeslice`` seconds and the chunks are joined into one
:class:`~livecall_comms.types.RecordingArtifact` when recording stops.
"""

import asyncio
import contextlib
import inspect
import logging
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

import av
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaRecorder

from livecall.utils import SecondCounter, epoch_ms

from .errors import RecordingUnavailable, RecordingUnsupported
from .media import AUDIO, VIDEO
from .types import RecordingArtifact

logger = logging.getLogger(__name__)

CONTAINER_FORMAT = "matroska"
MIME_TYPE = "video/x-matroska;codecs=avc1,mp4a.40.2"
FILE_EXTENSION = "mkv"
REQUIRED_CODECS = {"libx264", "aac"}


class ChunkSink:
    """Write-only file object that collects encoder output in chunks.

    It deliberately has no ``seek``; the muxer then writes a streamable
    file instead of patching headers after the fact.
    """

    def __init__(self) -> None:
        self.chunks: List[bytes] = []
        self._current = bytearray()
        self.closed = False

    def write(self, data: bytes) -> int:
        self._current.extend(data)
        return len(data)

    def flush(self) -> None:
        pass

    def cut(self) -> None:
        """Close the current chunk if it holds any data."""
        if self._current:
            self.chunks.append(bytes(self._current))
            self._current = bytearray()

    def getvalue(self) -> bytes:
        self.cut()
        return b"".join(self.chunks)


def recording_supported() -> bool:
    """Whether this PyAV build can mux Matroska with H.264 and AAC."""
    return CONTAINER_FORMAT in av.formats_available and REQUIRED_CODECS <= set(av.codecs_available)


def recording_filename(created_at: datetime) -> str:
    stamp = created_at.astimezone(timezone.utc).isoformat(timespec="milliseconds")
    stamp = stamp.replace("+00:00", "Z").replace(":", "-").replace(".", "-")
    return f"session-{stamp}.{FILE_EXTENSION}"


def _default_encoder(sink: ChunkSink) -> MediaRecorder:
    return MediaRecorder(sink, format=CONTAINER_FORMAT)


class RecordingCapturer:
    """Record the live session into a single artifact.

    :param on_complete: Called with the :class:`RecordingArtifact` after
        :meth:`stop`; may be a coroutine function
    :param timeslice: Seconds between chunk cuts
    :param encoder_factory: Builds the encoder for a sink; it must offer
        ``addTrack``, ``start`` and ``stop`` like ``MediaRecorder``
    """

    def __init__(self, on_complete: Optional[Callable[[RecordingArtifact], Any]] = None,
                 timeslice: float = 1.0,
                 encoder_factory: Optional[Callable[[ChunkSink], Any]] = None):
        self.on_complete = on_complete
        self.timeslice = timeslice
        self.encoder_factory = encoder_factory
        self.duration = SecondCounter()
        self._encoder: Any = None
        self._sink: Optional[ChunkSink] = None
        self._tracks: List[MediaStreamTrack] = []
        self._slicer: Optional[asyncio.Task] = None
        self._started_at: Optional[int] = None

    @property
    def is_recording(self) -> bool:
        return self._encoder is not None

    async def start(self, remote_stream: Any, local_stream: Any = None) -> None:
        """Begin recording ``remote_stream`` plus the local microphone.

        :raises RecordingUnavailable: Without a remote stream.
        :raises RecordingUnsupported: If the encoder cannot be created.
        """
        if self.is_recording:
            return
        if not remote_stream or not remote_stream.tracks:
            raise RecordingUnavailable("no remote stream to record")

        factory = self.encoder_factory
        if factory is None:
            if not recording_supported():
                raise RecordingUnsupported(
                    f"{CONTAINER_FORMAT} with {', '.join(sorted(REQUIRED_CODECS))} is not available")
            factory = _default_encoder

        sink = ChunkSink()
        tracks = [clone for clone in (remote_stream.clone(VIDEO), remote_stream.clone(AUDIO)) if clone]
        if local_stream:
            local_audio = local_stream.clone(AUDIO)
            if local_audio is not None:
                tracks.append(local_audio)

        try:
            encoder = factory(sink)
            for track in tracks:
                encoder.addTrack(track)
            await encoder.start()
        except (av.error.FFmpegError, OSError, ValueError) as e:
            for track in tracks:
                track.stop()
            raise RecordingUnsupported(f"encoder failed to start: {e}") from e

        self._encoder = encoder
        self._sink = sink
        self._tracks = tracks
        self._started_at = epoch_ms()
        self._slicer = asyncio.create_task(self._slice(sink), name="recording-slicer")
        self.duration.start()
        logger.info("Recording started with %d track(s)", len(tracks))

    async def stop(self) -> Optional[RecordingArtifact]:
        """Finish recording and deliver the artifact.

        :return: The artifact, or ``None`` if nothing was recording.
        """
        if not self.is_recording:
            return None
        encoder, self._encoder = self._encoder, None
        sink, self._sink = self._sink, None
        tracks, self._tracks = self._tracks, []

        if self._slicer is not None:
            self._slicer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._slicer
            self._slicer = None
        self.duration.stop()

        try:
            await encoder.stop()
        except (av.error.FFmpegError, OSError, ValueError) as e:
            logger.error("Recording encoder failed to finalise: %s", e)
        for track in tracks:
            track.stop()

        created_at = datetime.now(timezone.utc)
        artifact = RecordingArtifact(
            id=str(epoch_ms()),
            data=sink.getvalue(),
            filename=recording_filename(created_at),
            duration=self.duration.value,
            created_at=created_at,
            mime_type=MIME_TYPE,
            metadata={"chunks": len(sink.chunks), "started_at": self._started_at},
        )
        self.duration.reset()
        self._started_at = None
        logger.info("Recording stopped: %s (%d bytes, %ds)", artifact.filename, artifact.size, artifact.duration)

        if self.on_complete is not None:
            try:
                result = self.on_complete(artifact)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Recording completion handler failed")
        return artifact

    async def _slice(self, sink: ChunkSink) -> None:
        while True:
            await asyncio.sleep(self.timeslice)
            sink.cut()


__all__ = [
    "ChunkSink",
    "MIME_TYPE",
    "RecordingCapturer",
    "recording_filename",
    "recording_supported",
]
