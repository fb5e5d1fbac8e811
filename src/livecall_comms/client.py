"""Call client that drives the negotiation state machine.

:class:`LiveCallClient` owns the signaling connection, one aiortc
:class:`~aiortc.RTCPeerConnection`, the local media controller and the
recording capturer.  Everything that changes call state goes through a
single event queue:

* the signal loop turns incoming frames into state machine events,
* peer connection callbacks enqueue ``PeerConnected``/``PeerFailed``,
* public actions (screen share, end call...) take the same lock the
  event loop holds while it processes an event.

Each event is fed to :class:`~livecall_comms.negotiation.NegotiationMachine`
and the returned effects are executed in order.  Effects that complete
with a follow-up event (``OfferSent``, ``RemoteDescriptionSet``...) have
that event processed before the next effect runs.
"""

import asyncio
import contextlib
import inspect
import logging
from typing import Any, Callable, Dict, List, Optional, Set

from aiortc import MediaStreamTrack, RTCConfiguration, RTCPeerConnection
from aiortc.exceptions import InternalError, InvalidAccessError, InvalidStateError

from livecall.utils import SecondCounter, derive_room_id, epoch_ms
from livecall.webrtc import (
    build_configuration,
    candidate_from_dict,
    candidate_to_dict,
    create_peer_connection,
    description_from_dict,
    description_to_dict,
)

from .errors import MediaAccessError, RecordingUnavailable, RecordingUnsupported
from .media import AUDIO, VIDEO, DeviceOpener, LocalMediaController, MediaStream
from .negotiation import (
    AcceptOffer,
    AddCandidates,
    AnswerReceived,
    AnswerSent,
    ApplyAnswer,
    CallEnded,
    CallState,
    CandidateReceived,
    ClosePeer,
    CreateOffer,
    DisconnectTransport,
    ExistingParticipants,
    JoinRequested,
    NegotiationFailed,
    NegotiationMachine,
    NotifyEnded,
    OfferReceived,
    OfferSent,
    PeerConnected,
    PeerFailed,
    ReleaseMedia,
    RemoteDescriptionSet,
    RenegotiationNeeded,
    RenegotiationRequested,
    RequestRenegotiation,
    RoomFullReceived,
    ScreenShareChanged,
    SendJoin,
    StartCallTimer,
    Status,
    StopRecording,
    StopScreenShare,
    TransportConnected,
    TransportLost,
    UserJoined,
    UserLeft,
)
from .recorder import RecordingCapturer
from .signaler import Signaler
from .types import (
    ANSWER,
    CHAT_MESSAGE,
    CONNECTED,
    DEFAULT_DISPLAY_NAME,
    EXISTING_PARTICIPANTS,
    ICE_CANDIDATE,
    JOIN_ROOM,
    OFFER,
    RENEGOTIATE,
    ROOM_FULL,
    TRANSPORT_CLOSED,
    USER_JOINED,
    USER_LEFT,
    ChatMessage,
    RecordingArtifact,
)

logger = logging.getLogger(__name__)

DEFAULT_STUN_URL = "stun:stun.l.google.com:19302"

STATUS_RECORDING = "Recording in progress..."
STATUS_RECORDING_SAVED = "Recording saved."
STATUS_RECORDING_UNAVAILABLE = "Recording unavailable until the session is live."
STATUS_RECORDING_UNSUPPORTED = "Recording is not supported on this system."

NEGOTIATION_ERRORS = (InternalError, InvalidAccessError, InvalidStateError, ValueError)

Callback = Optional[Callable[..., Any]]


async def _replace_track(sender: Any, track: Optional[MediaStreamTrack]) -> None:
    result = sender.replaceTrack(track)
    if inspect.isawaitable(result):
        await result


class LiveCallClient:
    """One participant in a two-party live session.

    :param signaling_url: ``ws://`` URL of the signaling server
    :param room_id: Explicit room; wins over ``meeting_link``
    :param meeting_link: Booking meeting link the room id is derived from
    :param user_name: Display name, ``Participant`` when blank
    :param media: Local media controller, a device backed one by default
    :param recorder: Recording capturer
    :param rtc_config: ICE configuration for new peer connections
    :param peer_factory: Builds a peer connection from ``rtc_config``
    :param signaler: Signaling client, built from ``signaling_url`` if omitted
    :param auto_reconnect: Reconnect and rejoin after the transport drops
    :param video: Capture the camera when media is first acquired
    :param audio: Capture the microphone when media is first acquired

    Callbacks may be plain functions or coroutine functions:
    ``on_status(text)``, ``on_chat(ChatMessage)``,
    ``on_recording(RecordingArtifact)``, ``on_media_error(MediaAccessError)``
    and ``on_end()``.
    """

    def __init__(self, signaling_url: str, room_id: Optional[str] = None,
                 meeting_link: Optional[str] = None, user_name: Optional[str] = None, *,
                 media: Optional[LocalMediaController] = None,
                 recorder: Optional[RecordingCapturer] = None,
                 rtc_config: Optional[RTCConfiguration] = None,
                 peer_factory: Optional[Callable[[RTCConfiguration], RTCPeerConnection]] = None,
                 signaler: Optional[Signaler] = None,
                 auto_reconnect: bool = True,
                 video: bool = True,
                 audio: bool = True,
                 on_status: Callback = None,
                 on_chat: Callback = None,
                 on_recording: Callback = None,
                 on_media_error: Callback = None,
                 on_end: Callback = None):
        self.room_id = derive_room_id(room_id, meeting_link)
        self.user_name = (user_name or "").strip() or DEFAULT_DISPLAY_NAME
        self.signaler = signaler or Signaler(signaling_url)
        self.media = media or LocalMediaController()
        self.recorder = recorder or RecordingCapturer()
        self.rtc_config = rtc_config or build_configuration(DEFAULT_STUN_URL)
        self.peer_factory = peer_factory or create_peer_connection
        self.auto_reconnect = auto_reconnect

        self.on_status = on_status
        self.on_chat = on_chat
        self.on_recording = on_recording
        self.on_media_error = on_media_error
        self.on_end = on_end

        self.machine = NegotiationMachine()
        self.pc: Optional[RTCPeerConnection] = None
        self.remote_stream = MediaStream()
        self.status = ""
        self.chat_log: List[ChatMessage] = []
        self.call_duration = SecondCounter()
        self.video_on = video
        self.audio_on = audio

        self._events: asyncio.Queue = asyncio.Queue()
        self._lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()
        self._event_task: Optional[asyncio.Task] = None
        self._ended = asyncio.Event()
        self._media_failed = False
        self._local_clones: List[MediaStreamTrack] = []
        self._parked_camera: Optional[MediaStreamTrack] = None

    @classmethod
    def from_settings(cls, settings: Any, **kwargs: Any) -> "LiveCallClient":
        """Build a client from :class:`livecall.config.Settings`."""
        kwargs.setdefault("media", LocalMediaController(DeviceOpener.from_settings(settings)))
        kwargs.setdefault("recorder", RecordingCapturer(timeslice=settings.recording_timeslice))
        kwargs.setdefault("rtc_config", build_configuration(
            settings.stun_url, settings.turn_url, settings.turn_user, settings.turn_pass))
        kwargs.setdefault("auto_reconnect", settings.auto_reconnect)
        return cls(settings.signaling_url, **kwargs)

    # ----------------------
    # Properties
    # ----------------------

    @property
    def state(self) -> CallState:
        return self.machine.state

    @property
    def recording_duration(self) -> SecondCounter:
        return self.recorder.duration

    @property
    def is_recording(self) -> bool:
        return self.recorder.is_recording

    @property
    def is_screen_sharing(self) -> bool:
        return self.machine.session.screen_sharing

    @property
    def ended(self) -> bool:
        return self._ended.is_set()

    # ----------------------
    # Lifecycle
    # ----------------------

    async def start(self) -> "LiveCallClient":
        """Acquire media, connect to signaling and join the room.

        Media failures do not abort the call; it continues receive-only.

        :raises TransportError: If the signaler gives up connecting.
        """
        self._event_task = asyncio.create_task(self._event_loop(), name="call-events")
        await self._ensure_local_stream()
        await self._events.put(JoinRequested(self.room_id, self.user_name))
        await self.signaler.connect_with_backoff()
        self._spawn(self._signal_loop(), "call-signal")
        self._spawn(self._chat_loop(), "call-chat")
        return self

    async def end_call(self) -> None:
        """Hang up and release everything; safe to call more than once."""
        if self._ended.is_set():
            return
        if self._event_task is not None and not self._event_task.done():
            await self._events.put(CallEnded())
            await self._ended.wait()
            with contextlib.suppress(asyncio.CancelledError):
                await self._event_task
        else:
            async with self._lock:
                await self._process(CallEnded())

    async def wait_for_state(self, state: CallState, timeout: Optional[float] = 10.0) -> None:
        """Wait until the machine reaches ``state``.

        :raises asyncio.TimeoutError: If it does not within ``timeout``;
            ``None`` waits indefinitely.
        """
        async def _poll() -> None:
            while self.machine.state is not state:
                await asyncio.sleep(0.02)

        await asyncio.wait_for(_poll(), timeout)

    async def wait_ended(self) -> None:
        await self._ended.wait()

    # ----------------------
    # User actions
    # ----------------------

    async def send_chat(self, text: str) -> Optional[ChatMessage]:
        """Send a chat line to the room; blank text is ignored."""
        message = (text or "").strip()
        if not message or self._ended.is_set():
            return None
        await self.signaler.send(CHAT_MESSAGE, {
            "roomId": self.room_id,
            "message": message,
            "sender": self.user_name,
        })
        entry = ChatMessage(sender=self.user_name, message=message, timestamp=epoch_ms())
        self.chat_log.append(entry)
        return entry

    async def toggle_video(self) -> bool:
        """Turn the camera off or on; returns the new state.

        Turning video off also stops a running screen share.
        """
        async with self._lock:
            if self.video_on:
                if self.media.screen_track is not None:
                    await self._revert_to_camera()
                self.media.set_track_enabled(VIDEO, False)
                self.video_on = False
            else:
                if self.media.stream is None:
                    await self._reacquire(video=True, audio=self.audio_on)
                else:
                    self.media.set_track_enabled(VIDEO, True)
                self.video_on = True
            return self.video_on

    async def toggle_audio(self) -> bool:
        """Mute or unmute the microphone; returns the new state."""
        async with self._lock:
            if self.audio_on:
                self.media.set_track_enabled(AUDIO, False)
                self.audio_on = False
            else:
                if self.media.stream is None:
                    await self._reacquire(video=self.video_on, audio=True)
                else:
                    self.media.set_track_enabled(AUDIO, True)
                self.audio_on = True
            return self.audio_on

    async def toggle_screen_share(self) -> bool:
        """Start or stop sharing the display; returns whether sharing."""
        async with self._lock:
            if self.media.screen_track is not None:
                await self._revert_to_camera()
                return False
            try:
                track = await self.media.acquire_screen_share()
            except MediaAccessError as e:
                await self._report_media_error(e)
                return False
            track.on("ended", lambda: self._spawn(self._on_screen_ended(track), "screen-ended"))

            renegotiate = False
            if self.pc is not None:
                sender = self._sender_for(VIDEO)
                if sender is not None and sender.track is not None:
                    self._parked_camera = sender.track
                    await _replace_track(sender, track)
                else:
                    self.pc.addTrack(track)
                    renegotiate = True
            await self._process(ScreenShareChanged(True))
            if renegotiate:
                await self._process(RenegotiationNeeded())
            logger.info("Screen share started")
            return True

    async def start_recording(self) -> None:
        """Record the session.

        :raises RecordingUnavailable: Before the remote stream arrives.
        :raises RecordingUnsupported: If the encoder is unavailable.
        """
        async with self._lock:
            try:
                await self.recorder.start(self.remote_stream, self.media.stream)
            except RecordingUnavailable:
                await self._set_status(STATUS_RECORDING_UNAVAILABLE)
                raise
            except RecordingUnsupported:
                await self._set_status(STATUS_RECORDING_UNSUPPORTED)
                raise
            await self._set_status(STATUS_RECORDING)

    async def stop_recording(self) -> Optional[RecordingArtifact]:
        async with self._lock:
            return await self._stop_recording()

    # ----------------------
    # Event processing
    # ----------------------

    def _spawn(self, coro: Any, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _event_loop(self) -> None:
        while not self._ended.is_set():
            event = await self._events.get()
            async with self._lock:
                await self._process(event)

    async def _process(self, event: Any) -> None:
        effects = self.machine.feed(event)
        logger.debug("%s -> %s (%d effect(s))", type(event).__name__, self.machine.state.value, len(effects),
                     extra={"room": self.room_id, "event": type(event).__name__, "state": self.machine.state.value})
        for effect in effects:
            for follow_up in await self._run(effect):
                await self._process(follow_up)

    async def _run(self, effect: Any) -> List[Any]:
        if isinstance(effect, Status):
            await self._set_status(effect.text)
        elif isinstance(effect, SendJoin):
            await self.signaler.send(JOIN_ROOM, {"roomId": effect.room_id, "userName": effect.user_name})
        elif isinstance(effect, StartCallTimer):
            if not self.call_duration.running:
                self.call_duration.start()
        elif isinstance(effect, CreateOffer):
            return await self._create_offer(effect)
        elif isinstance(effect, AcceptOffer):
            return await self._accept_offer(effect)
        elif isinstance(effect, ApplyAnswer):
            return await self._apply_answer(effect)
        elif isinstance(effect, RequestRenegotiation):
            await self.signaler.send(RENEGOTIATE, {"targetId": effect.target_id})
        elif isinstance(effect, AddCandidates):
            await self._add_candidates(effect.candidates)
        elif isinstance(effect, ClosePeer):
            await self._close_peer()
        elif isinstance(effect, StopRecording):
            await self._stop_recording()
        elif isinstance(effect, StopScreenShare):
            self.media.stop_screen_share()
            self._parked_camera = None
        elif isinstance(effect, DisconnectTransport):
            await self.signaler.close()
        elif isinstance(effect, ReleaseMedia):
            self.media.release()
        elif isinstance(effect, NotifyEnded):
            await self._notify_ended()
        return []

    # ----------------------
    # Signaling
    # ----------------------

    def _translate(self, msg: Dict[str, Any]) -> Optional[Any]:
        event = msg.get("event")
        payload = msg.get("payload")
        if not isinstance(payload, dict):
            payload = {}
        sender = payload.get("from") or ""

        if event == CONNECTED:
            return TransportConnected(payload.get("socketId") or "")
        if event == TRANSPORT_CLOSED:
            return TransportLost()
        if event == EXISTING_PARTICIPANTS:
            return ExistingParticipants(tuple(payload.get("participants") or ()))
        if event == ROOM_FULL:
            return RoomFullReceived(payload.get("roomId") or "")
        if event == USER_JOINED:
            return UserJoined(payload.get("socketId") or "", payload.get("userName") or DEFAULT_DISPLAY_NAME)
        if event == USER_LEFT:
            return UserLeft(payload.get("socketId") or "")
        if event == OFFER:
            return OfferReceived(sender, payload.get("sdp"))
        if event == ANSWER:
            return AnswerReceived(sender, payload.get("sdp"))
        if event == ICE_CANDIDATE and isinstance(payload.get("candidate"), dict):
            return CandidateReceived(sender, payload["candidate"])
        if event == RENEGOTIATE:
            return RenegotiationRequested(sender)
        return None

    async def _signal_loop(self) -> None:
        queue = self.signaler.broker.topic_queue("signal")
        while True:
            msg = await queue.get()
            event = self._translate(msg)
            if event is None:
                logger.debug("Ignoring signal %r", msg.get("event"))
                continue
            await self._events.put(event)
            if isinstance(event, TransportLost) and self.auto_reconnect:
                self._spawn(self._reconnect(), "call-reconnect")

    async def _chat_loop(self) -> None:
        queue = self.signaler.broker.topic_queue("chat")
        while True:
            msg = await queue.get()
            payload = msg.get("payload")
            if not isinstance(payload, dict):
                continue
            entry = ChatMessage.from_payload(payload)
            if not entry.message:
                continue
            self.chat_log.append(entry)
            await self._notify(self.on_chat, entry)

    async def _reconnect(self) -> None:
        if self._ended.is_set():
            return
        logger.info("Reconnecting to signaling server")
        await self.signaler.connect_with_backoff()

    async def _set_status(self, text: str) -> None:
        self.status = text
        logger.info("Status: %s", text, extra={"room": self.room_id, "state": self.machine.state.value})
        await self._notify(self.on_status, text)

    async def _notify(self, callback: Callback, *args: Any) -> None:
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Callback %r failed", callback)

    # ----------------------
    # Peer connection
    # ----------------------

    async def _open_peer(self) -> RTCPeerConnection:
        await self._close_peer()
        pc = self.peer_factory(self.rtc_config)
        self.pc = pc
        self.remote_stream = MediaStream()

        @pc.on("track")
        def on_track(track: MediaStreamTrack) -> None:
            if pc is self.pc:
                logger.info("Remote %s track received", track.kind)
                self.remote_stream.add_track(track)

        @pc.on("icecandidate")
        def on_icecandidate(candidate: Any) -> None:
            remote = self.machine.session.remote_id
            if candidate is None or pc is not self.pc or not remote:
                return
            self._spawn(
                self.signaler.send(ICE_CANDIDATE, {"targetId": remote, "candidate": candidate_to_dict(candidate)}),
                "ice-send",
            )

        @pc.on("connectionstatechange")
        async def on_connectionstatechange() -> None:
            if pc is not self.pc:
                return
            logger.info("connectionState -> %s", pc.connectionState)
            if pc.connectionState == "connected":
                await self._events.put(PeerConnected())
            elif pc.connectionState == "failed":
                await self._events.put(PeerFailed())

        return pc

    def _attach_local_tracks(self, pc: RTCPeerConnection) -> None:
        """Add outgoing tracks, or receive-only transceivers where none exist."""
        for kind in (VIDEO, AUDIO):
            if kind == VIDEO and self.media.screen_track is not None:
                track = self.media.screen_track
                self._parked_camera = self._clone_local(VIDEO)
            else:
                track = self._clone_local(kind)
            if track is not None:
                pc.addTrack(track)
            elif not any(t.kind == kind for t in pc.getTransceivers()):
                pc.addTransceiver(kind, direction="recvonly")

    def _clone_local(self, kind: str) -> Optional[MediaStreamTrack]:
        if self.media.stream is None:
            return None
        clone = self.media.stream.clone(kind)
        if clone is not None:
            self._local_clones.append(clone)
        return clone

    def _sender_for(self, kind: str) -> Optional[Any]:
        if self.pc is None:
            return None
        for transceiver in self.pc.getTransceivers():
            if transceiver.kind == kind:
                return transceiver.sender
        return None

    async def _close_peer(self) -> None:
        pc, self.pc = self.pc, None
        clones, self._local_clones = self._local_clones, []
        self._parked_camera = None
        if pc is not None:
            await pc.close()
            logger.info("Peer connection closed")
        for clone in clones:
            clone.stop()
        self.remote_stream = MediaStream()

    async def _create_offer(self, effect: CreateOffer) -> List[Any]:
        try:
            if effect.renegotiation and self.pc is not None:
                pc = self.pc
            else:
                await self._ensure_local_stream()
                pc = await self._open_peer()
                self._attach_local_tracks(pc)
            offer = await pc.createOffer()
            await pc.setLocalDescription(offer)
        except NEGOTIATION_ERRORS as e:
            logger.error("Creating offer for %s failed: %s", effect.target_id, e)
            return [NegotiationFailed(str(e))]
        await self.signaler.send(OFFER, {"targetId": effect.target_id, "sdp": description_to_dict(pc.localDescription)})
        logger.info("Offer sent to %s", effect.target_id, extra={"room": self.room_id, "handle": effect.target_id})
        return [OfferSent(effect.target_id)]

    async def _accept_offer(self, effect: AcceptOffer) -> List[Any]:
        fresh = not effect.renegotiation or self.pc is None
        try:
            description = description_from_dict(effect.sdp, "offer")
            if fresh:
                await self._ensure_local_stream()
                pc = await self._open_peer()
            else:
                pc = self.pc
            await pc.setRemoteDescription(description)
        except NEGOTIATION_ERRORS as e:
            logger.error("Applying offer from %s failed: %s", effect.from_id, e)
            return [NegotiationFailed(str(e))]

        await self._process(RemoteDescriptionSet())

        try:
            if fresh:
                self._attach_local_tracks(pc)
            answer = await pc.createAnswer()
            await pc.setLocalDescription(answer)
        except NEGOTIATION_ERRORS as e:
            logger.error("Creating answer for %s failed: %s", effect.from_id, e)
            return [NegotiationFailed(str(e))]
        await self.signaler.send(ANSWER, {"targetId": effect.from_id, "sdp": description_to_dict(pc.localDescription)})
        logger.info("Answer sent to %s", effect.from_id, extra={"room": self.room_id, "handle": effect.from_id})
        return [AnswerSent(effect.from_id)]

    async def _apply_answer(self, effect: ApplyAnswer) -> List[Any]:
        if self.pc is None:
            return [NegotiationFailed("no peer connection for answer")]
        try:
            await self.pc.setRemoteDescription(description_from_dict(effect.sdp, "answer"))
        except NEGOTIATION_ERRORS as e:
            logger.error("Applying answer failed: %s", e)
            return [NegotiationFailed(str(e))]
        return [RemoteDescriptionSet()]

    async def _add_candidates(self, candidates: Any) -> None:
        if self.pc is None:
            return
        for payload in candidates:
            try:
                candidate = candidate_from_dict(payload)
                if candidate is not None:
                    await self.pc.addIceCandidate(candidate)
            except (ValueError, IndexError, InvalidStateError) as e:
                logger.warning("Ignoring ICE candidate %r: %s", payload, e)

    # ----------------------
    # Media
    # ----------------------

    async def _ensure_local_stream(self) -> Optional[MediaStream]:
        if self.media.stream is not None or self._media_failed:
            return self.media.stream
        try:
            return await self.media.acquire(video=self.video_on, audio=self.audio_on)
        except MediaAccessError as e:
            self._media_failed = True
            await self._report_media_error(e)
            return None

    async def _reacquire(self, video: bool, audio: bool) -> None:
        """Acquire media after an earlier failure and publish it on the call."""
        try:
            stream = await self.media.acquire(video=video, audio=audio)
        except MediaAccessError as e:
            await self._report_media_error(e)
            return
        self._media_failed = False
        if self.pc is None:
            return
        renegotiate = False
        for kind in (VIDEO, AUDIO):
            if stream.get(kind) is None:
                continue
            if kind == VIDEO and self.media.screen_track is not None:
                self._parked_camera = self._clone_local(VIDEO)
                continue
            # reuses a receive-only transceiver of the same kind when there is one
            self.pc.addTrack(self._clone_local(kind))
            renegotiate = True
        if renegotiate:
            await self._process(RenegotiationNeeded())

    async def _report_media_error(self, error: MediaAccessError) -> None:
        logger.warning("Media access failed (%s/%s): %s", error.kind, error.reason, error)
        await self._set_status(error.user_message)
        await self._notify(self.on_media_error, error)

    async def _revert_to_camera(self) -> None:
        self.media.stop_screen_share()
        sender = self._sender_for(VIDEO)
        if sender is not None:
            await _replace_track(sender, self._parked_camera)
        self._parked_camera = None
        await self._process(ScreenShareChanged(False))
        logger.info("Screen share stopped")

    async def _on_screen_ended(self, track: MediaStreamTrack) -> None:
        async with self._lock:
            if self.media.screen_track is track:
                await self._revert_to_camera()

    async def _stop_recording(self) -> Optional[RecordingArtifact]:
        if not self.recorder.is_recording:
            return None
        artifact = await self.recorder.stop()
        if artifact is not None:
            await self._set_status(STATUS_RECORDING_SAVED)
            await self._notify(self.on_recording, artifact)
        return artifact

    async def _notify_ended(self) -> None:
        self.call_duration.stop()
        current = asyncio.current_task()
        tasks = [task for task in self._tasks if task is not current]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._ended.set()
        logger.info("Call ended after %ds", self.call_duration.value)
        await self._notify(self.on_end)


__all__ = ["LiveCallClient"]
