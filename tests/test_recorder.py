import asyncio
import re
from datetime import datetime, timezone
from unittest import mock

import pytest
from aiortc.mediastreams import AudioStreamTrack, VideoStreamTrack

from livecall_comms.errors import RecordingUnavailable, RecordingUnsupported
from livecall_comms.media import MediaStream
from livecall_comms.recorder import ChunkSink, RecordingCapturer, recording_filename


class FakeEncoder:
    def __init__(self, sink):
        self.sink = sink
        self.tracks = []
        self.started = False
        self.stopped = False

    def addTrack(self, track):
        self.tracks.append(track)

    async def start(self):
        self.sink.write(b"head")
        self.started = True

    async def stop(self):
        self.sink.write(b"tail")
        self.stopped = True


class EncoderFactory:
    def __init__(self):
        self.encoders = []

    def __call__(self, sink):
        encoder = FakeEncoder(sink)
        self.encoders.append(encoder)
        return encoder


def remote_stream():
    stream = MediaStream()
    stream.add_track(VideoStreamTrack())
    stream.add_track(AudioStreamTrack())
    return stream


@pytest.mark.asyncio
async def test_start_without_remote_stream_is_unavailable():
    capturer = RecordingCapturer(encoder_factory=EncoderFactory())
    with pytest.raises(RecordingUnavailable):
        await capturer.start(None)
    with pytest.raises(RecordingUnavailable):
        await capturer.start(MediaStream())
    assert not capturer.is_recording


@pytest.mark.asyncio
async def test_stop_when_idle_is_noop():
    on_complete = mock.Mock()
    capturer = RecordingCapturer(on_complete=on_complete, encoder_factory=EncoderFactory())
    assert await capturer.stop() is None
    on_complete.assert_not_called()


@pytest.mark.asyncio
async def test_recording_produces_artifact():
    delivered = []

    async def on_complete(artifact):
        delivered.append(artifact)

    factory = EncoderFactory()
    capturer = RecordingCapturer(on_complete=on_complete, encoder_factory=factory)
    remote = remote_stream()
    local = MediaStream()
    local.add_track(AudioStreamTrack())

    await capturer.start(remote, local)
    assert capturer.is_recording
    encoder = factory.encoders[0]
    assert encoder.started
    assert sorted(t.kind for t in encoder.tracks) == ["audio", "audio", "video"]

    artifact = await capturer.stop()

    assert encoder.stopped
    assert delivered == [artifact]
    assert artifact.data == b"headtail"
    assert artifact.mime_type == "video/x-matroska;codecs=avc1,mp4a.40.2"
    assert re.fullmatch(r"session-\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2}-\d{3}Z\.mkv", artifact.filename)
    assert artifact.id.isdigit()
    assert artifact.size == 8
    assert not capturer.is_recording
    assert capturer.duration.value == 0

    # only the recording's own clones are stopped
    assert all(t.readyState == "ended" for t in encoder.tracks)
    assert all(t.readyState == "live" for t in remote.tracks)
    assert local.audio.readyState == "live"


@pytest.mark.asyncio
async def test_second_start_is_noop():
    factory = EncoderFactory()
    capturer = RecordingCapturer(encoder_factory=factory)
    remote = remote_stream()
    await capturer.start(remote)
    await capturer.start(remote)
    assert len(factory.encoders) == 1
    await capturer.stop()


@pytest.mark.asyncio
async def test_encoder_failure_is_unsupported():
    def broken(sink):
        raise ValueError("no encoder")

    capturer = RecordingCapturer(encoder_factory=broken)
    with pytest.raises(RecordingUnsupported):
        await capturer.start(remote_stream())
    assert not capturer.is_recording


@pytest.mark.asyncio
async def test_missing_codecs_are_unsupported(monkeypatch):
    monkeypatch.setattr("livecall_comms.recorder.recording_supported", lambda: False)
    capturer = RecordingCapturer()
    with pytest.raises(RecordingUnsupported):
        await capturer.start(remote_stream())


@pytest.mark.asyncio
async def test_chunks_are_cut_every_timeslice():
    factory = EncoderFactory()
    capturer = RecordingCapturer(timeslice=0.01, encoder_factory=factory)
    await capturer.start(remote_stream())
    await asyncio.sleep(0.05)
    assert factory.encoders[0].sink.chunks == [b"head"]
    artifact = await capturer.stop()
    assert artifact.metadata["chunks"] == 2


@pytest.mark.asyncio
async def test_failing_completion_handler_does_not_break_stop():
    def on_complete(artifact):
        raise RuntimeError("consumer bug")

    capturer = RecordingCapturer(on_complete=on_complete, encoder_factory=EncoderFactory())
    await capturer.start(remote_stream())
    artifact = await capturer.stop()
    assert artifact is not None
    assert not capturer.is_recording


def test_chunk_sink():
    sink = ChunkSink()
    sink.cut()
    assert sink.chunks == []
    sink.write(b"ab")
    sink.write(b"c")
    sink.cut()
    sink.write(b"d")
    assert sink.getvalue() == b"abcd"
    assert sink.chunks == [b"abc", b"d"]
    assert not hasattr(sink, "seek")


def test_recording_filename():
    created = datetime(2024, 5, 1, 12, 30, 45, 123000, tzinfo=timezone.utc)
    assert recording_filename(created) == "session-2024-05-01T12-30-45-123Z.mkv"


def test_artifact_data_url_and_save(tmp_path):
    from livecall_comms.types import RecordingArtifact

    artifact = RecordingArtifact(
        id="1",
        data=b"abc",
        filename="session-x.mkv",
        duration=3,
        created_at=datetime.now(timezone.utc),
        mime_type="video/x-matroska;codecs=avc1,mp4a.40.2",
    )
    assert artifact.to_data_url() == "data:video/x-matroska;base64,YWJj"
    path = artifact.save(tmp_path / "out")
    assert path.read_bytes() == b"abc"
