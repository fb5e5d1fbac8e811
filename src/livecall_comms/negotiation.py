"""Client-side negotiation state machine.

The call flow is modelled as a pure function::

    transition(session, event) -> (session, effects)

``session`` is an immutable :class:`NegotiationSession`, ``event`` is one
of the event dataclasses below and ``effects`` is a list of effect
dataclasses the driver (:class:`~livecall_comms.client.LiveCallClient`)
executes against the real transport, peer connection and media.  Effects
that finish asynchronously report back with further events
(``OfferSent``, ``RemoteDescriptionSet``, ``NegotiationFailed``...).

Rules that keep two clients in one room from stepping on each other:

* Only the newcomer offers.  A client that receives
  ``existing-participants`` with members offers to the first of them;
  ``user-joined`` never triggers an offer.  Exactly one side offers per
  round.
* If both sides still end up offering to each other (glare) the side
  with the greater handle yields and answers.
* Remote ICE candidates are held until a remote description has been
  applied, then flushed in arrival order.
* Only one remote peer is tracked.  Offers, answers and candidates from
  any other handle are ignored while a peer is tracked.
* Renegotiation has a single initiator: the side that made the original
  offer.  The answerer asks for a new offer with ``renegotiate`` instead
  of offering itself, so renegotiation offers never cross.  Requests made
  before the call is connected, or while a renegotiation is in flight,
  are held and acted on once it settles.
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union


class CallState(Enum):
    """Where a client is in the call lifecycle."""
    IDLE = "idle"
    JOINING_ROOM = "joining-room"
    WAITING_FOR_PEER = "waiting-for-peer"
    OFFERING = "offering"
    WAITING_FOR_ANSWER = "waiting-for-answer"
    ANSWERING = "answering"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    ENDED = "ended"


class Role(Enum):
    OFFERER = "offerer"
    ANSWERER = "answerer"


# Statuses shown to the user.
STATUS_JOINING = "Joining room..."
STATUS_WAITING = "Waiting for another participant..."
STATUS_FOUND = "Participant found. Starting call..."
STATUS_INVITING = "Sending call invitation..."
STATUS_CONNECTING = "Connecting to participant..."
STATUS_CONNECTED = "Participant connected."
STATUS_LEFT = "Participant left. Waiting for reconnection..."
STATUS_LOST = "Connection lost. Reconnecting..."
STATUS_DISCONNECTED = "Disconnected. Retrying..."
STATUS_FAILED = "Unable to start call."
STATUS_ROOM_FULL = "This room is full."
STATUS_ENDED = "Call ended."


@dataclass(frozen=True)
class NegotiationSession:
    """Snapshot of one client's negotiation state."""
    state: CallState = CallState.IDLE
    room_id: Optional[str] = None
    user_name: Optional[str] = None
    local_id: Optional[str] = None
    remote_id: Optional[str] = None
    role: Optional[Role] = None
    transport_up: bool = False
    remote_description_set: bool = False
    # (sender handle, RTCIceCandidateInit dict) in arrival order
    pending_candidates: Tuple[Tuple[str, Dict[str, Any]], ...] = ()
    screen_sharing: bool = False
    renegotiating: bool = False
    renegotiation_pending: bool = False

    @property
    def in_call(self) -> bool:
        return self.state in (
            CallState.OFFERING,
            CallState.WAITING_FOR_ANSWER,
            CallState.ANSWERING,
            CallState.CONNECTING,
            CallState.CONNECTED,
        )


# ----------------------
# Events
# ----------------------

@dataclass(frozen=True)
class JoinRequested:
    room_id: str
    user_name: str


@dataclass(frozen=True)
class TransportConnected:
    local_id: str


@dataclass(frozen=True)
class TransportLost:
    pass


@dataclass(frozen=True)
class ExistingParticipants:
    participants: Tuple[str, ...]


@dataclass(frozen=True)
class RoomFullReceived:
    room_id: str


@dataclass(frozen=True)
class UserJoined:
    handle: str
    user_name: str


@dataclass(frozen=True)
class UserLeft:
    handle: str


@dataclass(frozen=True)
class OfferReceived:
    from_id: str
    sdp: Any


@dataclass(frozen=True)
class AnswerReceived:
    from_id: str
    sdp: Any


@dataclass(frozen=True)
class CandidateReceived:
    from_id: str
    candidate: Dict[str, Any]


@dataclass(frozen=True)
class OfferSent:
    target_id: str


@dataclass(frozen=True)
class AnswerSent:
    target_id: str


@dataclass(frozen=True)
class RemoteDescriptionSet:
    pass


@dataclass(frozen=True)
class NegotiationFailed:
    reason: str


@dataclass(frozen=True)
class PeerConnected:
    pass


@dataclass(frozen=True)
class PeerFailed:
    pass


@dataclass(frozen=True)
class RenegotiationNeeded:
    pass


@dataclass(frozen=True)
class RenegotiationRequested:
    from_id: str


@dataclass(frozen=True)
class ScreenShareChanged:
    active: bool


@dataclass(frozen=True)
class CallEnded:
    pass


Event = Union[
    JoinRequested, TransportConnected, TransportLost, ExistingParticipants,
    RoomFullReceived, UserJoined, UserLeft, OfferReceived, AnswerReceived,
    CandidateReceived, OfferSent, AnswerSent, RemoteDescriptionSet,
    NegotiationFailed, PeerConnected, PeerFailed, RenegotiationNeeded,
    RenegotiationRequested, ScreenShareChanged, CallEnded,
]


# ----------------------
# Effects
# ----------------------

@dataclass(frozen=True)
class SendJoin:
    room_id: str
    user_name: str


@dataclass(frozen=True)
class CreateOffer:
    target_id: str
    renegotiation: bool = False


@dataclass(frozen=True)
class AcceptOffer:
    from_id: str
    sdp: Any
    renegotiation: bool = False


@dataclass(frozen=True)
class ApplyAnswer:
    sdp: Any


@dataclass(frozen=True)
class RequestRenegotiation:
    target_id: str


@dataclass(frozen=True)
class AddCandidates:
    candidates: Tuple[Dict[str, Any], ...]


@dataclass(frozen=True)
class ClosePeer:
    pass


@dataclass(frozen=True)
class StopRecording:
    pass


@dataclass(frozen=True)
class StopScreenShare:
    pass


@dataclass(frozen=True)
class DisconnectTransport:
    pass


@dataclass(frozen=True)
class ReleaseMedia:
    pass


@dataclass(frozen=True)
class NotifyEnded:
    pass


@dataclass(frozen=True)
class StartCallTimer:
    pass


@dataclass(frozen=True)
class Status:
    text: str


Effect = Union[
    SendJoin, CreateOffer, AcceptOffer, ApplyAnswer, RequestRenegotiation,
    AddCandidates, ClosePeer,
    StopRecording, StopScreenShare, DisconnectTransport, ReleaseMedia,
    NotifyEnded, StartCallTimer, Status,
]

Result = Tuple[NegotiationSession, List[Effect]]


def _teardown(session: NegotiationSession, state: CallState, **changes: Any) -> NegotiationSession:
    """Forget the remote peer and everything negotiated with it."""
    return replace(
        session,
        state=state,
        remote_id=None,
        role=None,
        remote_description_set=False,
        pending_candidates=(),
        renegotiating=False,
        renegotiation_pending=False,
        **changes,
    )


def _candidates_from(session: NegotiationSession, handle: str) -> Tuple[Dict[str, Any], ...]:
    return tuple(candidate for sender, candidate in session.pending_candidates if sender == handle)


def _keep_candidates_from(session: NegotiationSession, handle: str) -> Tuple[Tuple[str, Dict[str, Any]], ...]:
    return tuple(item for item in session.pending_candidates if item[0] == handle)


def _answer(session: NegotiationSession, event: OfferReceived, effects: List[Effect]) -> Result:
    session = replace(
        session,
        state=CallState.ANSWERING,
        remote_id=event.from_id,
        role=Role.ANSWERER,
        remote_description_set=False,
        pending_candidates=_keep_candidates_from(session, event.from_id),
        renegotiating=False,
        renegotiation_pending=False,
    )
    effects.append(AcceptOffer(event.from_id, event.sdp))
    return session, effects


def _renegotiate(session: NegotiationSession) -> Result:
    """Start a renegotiation round, or hold it until one can start."""
    state = session.state
    if state is CallState.CONNECTED and session.remote_id and not session.renegotiating:
        session = replace(session, renegotiation_pending=False)
        if session.role is Role.OFFERER:
            return replace(session, renegotiating=True), [CreateOffer(session.remote_id, renegotiation=True)]
        return session, [RequestRenegotiation(session.remote_id)]
    if session.in_call:
        return replace(session, renegotiation_pending=True), []
    return session, []


def transition(session: NegotiationSession, event: Event) -> Result:
    """Apply ``event`` to ``session``.

    Events that make no sense in the current state return the session
    unchanged with no effects.
    """

    state = session.state

    if state is CallState.ENDED:
        return session, []

    if isinstance(event, CallEnded):
        effects: List[Effect] = [StopRecording()]
        if session.screen_sharing:
            effects.append(StopScreenShare())
        effects += [DisconnectTransport(), ClosePeer(), ReleaseMedia(), Status(STATUS_ENDED), NotifyEnded()]
        return _teardown(session, CallState.ENDED, transport_up=False, screen_sharing=False), effects

    if isinstance(event, JoinRequested):
        if not event.room_id or not event.room_id.strip():
            return session, []
        session = replace(session, room_id=event.room_id.strip(), user_name=event.user_name)
        if session.transport_up and state in (CallState.IDLE, CallState.RECONNECTING):
            return replace(session, state=CallState.JOINING_ROOM), [
                SendJoin(session.room_id, event.user_name), Status(STATUS_JOINING)]
        return session, []

    if isinstance(event, TransportConnected):
        session = replace(session, transport_up=True, local_id=event.local_id)
        if session.room_id and state in (CallState.IDLE, CallState.RECONNECTING):
            return replace(session, state=CallState.JOINING_ROOM), [
                SendJoin(session.room_id, session.user_name or ""), Status(STATUS_JOINING)]
        return session, []

    if isinstance(event, TransportLost):
        effects = [StopRecording(), ClosePeer(), Status(STATUS_DISCONNECTED)]
        return _teardown(session, CallState.RECONNECTING, transport_up=False, local_id=None), effects

    if isinstance(event, ScreenShareChanged):
        return replace(session, screen_sharing=event.active), []

    if isinstance(event, ExistingParticipants):
        if state is not CallState.JOINING_ROOM:
            return session, []
        others = [handle for handle in event.participants if handle and handle != session.local_id]
        effects = [StartCallTimer()]
        if not others:
            return replace(session, state=CallState.WAITING_FOR_PEER), effects + [Status(STATUS_WAITING)]
        target = others[0]
        session = replace(
            session,
            state=CallState.OFFERING,
            remote_id=target,
            role=Role.OFFERER,
            remote_description_set=False,
            pending_candidates=_keep_candidates_from(session, target),
        )
        return session, effects + [Status(STATUS_FOUND), CreateOffer(target)]

    if isinstance(event, RoomFullReceived):
        if state is not CallState.JOINING_ROOM:
            return session, []
        return replace(session, state=CallState.IDLE), [Status(STATUS_ROOM_FULL)]

    if isinstance(event, UserJoined):
        if session.remote_id and session.remote_id != event.handle:
            return session, []
        if state is CallState.WAITING_FOR_PEER:
            name = event.user_name or "Participant"
            return session, [Status(f"{name} joined. Establishing call...")]
        return session, []

    if isinstance(event, UserLeft):
        if event.handle != session.remote_id:
            return session, []
        effects = [StopRecording(), ClosePeer(), Status(STATUS_LEFT)]
        return _teardown(session, CallState.WAITING_FOR_PEER), effects

    if isinstance(event, OfferReceived):
        tracked = session.remote_id
        if state in (CallState.JOINING_ROOM, CallState.WAITING_FOR_PEER, CallState.IDLE):
            if tracked and tracked != event.from_id:
                return session, []
            return _answer(session, event, [])
        if event.from_id != tracked:
            return session, []
        if state in (CallState.OFFERING, CallState.WAITING_FOR_ANSWER):
            # glare: the greater handle yields
            if session.local_id is not None and session.local_id > event.from_id:
                return _answer(session, event, [ClosePeer()])
            return session, []
        if state in (CallState.CONNECTING, CallState.CONNECTED):
            if session.renegotiating:
                # only the original offerer renegotiates; our own offer is outstanding
                return session, []
            return session, [AcceptOffer(event.from_id, event.sdp, renegotiation=True)]
        return session, []

    if isinstance(event, AnswerReceived):
        if event.from_id != session.remote_id:
            return session, []
        if state is CallState.WAITING_FOR_ANSWER:
            return replace(session, state=CallState.CONNECTING), [ApplyAnswer(event.sdp)]
        if state is CallState.CONNECTED and session.renegotiating:
            session = replace(session, renegotiating=False)
            if not session.renegotiation_pending:
                return session, [ApplyAnswer(event.sdp)]
            session, effects = _renegotiate(session)
            return session, [ApplyAnswer(event.sdp)] + effects
        return session, []

    if isinstance(event, CandidateReceived):
        if session.remote_id and event.from_id != session.remote_id:
            return session, []
        if session.remote_id and session.remote_description_set:
            return session, [AddCandidates((event.candidate,))]
        pending = session.pending_candidates + ((event.from_id, event.candidate),)
        return replace(session, pending_candidates=pending), []

    if isinstance(event, OfferSent):
        if state is CallState.OFFERING and event.target_id == session.remote_id:
            return replace(session, state=CallState.WAITING_FOR_ANSWER), [Status(STATUS_INVITING)]
        return session, []

    if isinstance(event, AnswerSent):
        if state is CallState.ANSWERING and event.target_id == session.remote_id:
            return replace(session, state=CallState.CONNECTING), [Status(STATUS_CONNECTING)]
        return session, []

    if isinstance(event, RemoteDescriptionSet):
        if not session.remote_id:
            return session, []
        flush = _candidates_from(session, session.remote_id)
        session = replace(session, remote_description_set=True, pending_candidates=())
        return session, [AddCandidates(flush)] if flush else []

    if isinstance(event, PeerConnected):
        if state in (CallState.ANSWERING, CallState.CONNECTING, CallState.WAITING_FOR_ANSWER):
            session = replace(session, state=CallState.CONNECTED)
            if not session.renegotiation_pending:
                return session, [Status(STATUS_CONNECTED)]
            session, effects = _renegotiate(session)
            return session, [Status(STATUS_CONNECTED)] + effects
        return session, []

    if isinstance(event, PeerFailed):
        if not session.in_call:
            return session, []
        remote = session.remote_id
        if session.role is Role.OFFERER and remote:
            session = replace(
                session,
                state=CallState.OFFERING,
                remote_description_set=False,
                pending_candidates=(),
                renegotiating=False,
                renegotiation_pending=False,
            )
            return session, [StopRecording(), ClosePeer(), Status(STATUS_LOST), CreateOffer(remote)]
        # keep the remote handle so its re-offer is accepted
        session = replace(
            session,
            state=CallState.WAITING_FOR_PEER,
            role=None,
            remote_description_set=False,
            pending_candidates=(),
            renegotiating=False,
            renegotiation_pending=False,
        )
        return session, [StopRecording(), ClosePeer(), Status(STATUS_LOST)]

    if isinstance(event, NegotiationFailed):
        if not session.in_call:
            return session, []
        return _teardown(session, CallState.WAITING_FOR_PEER), [ClosePeer(), Status(STATUS_FAILED)]

    if isinstance(event, RenegotiationNeeded):
        return _renegotiate(session)

    if isinstance(event, RenegotiationRequested):
        if event.from_id != session.remote_id or session.role is not Role.OFFERER:
            return session, []
        return _renegotiate(session)

    return session, []


class NegotiationMachine:
    """Mutable holder around :func:`transition` with a transition log."""

    def __init__(self, session: Optional[NegotiationSession] = None, history: int = 64):
        self.session = session or NegotiationSession()
        self.history: List[Tuple[str, str, str]] = []
        self._history_size = history

    @property
    def state(self) -> CallState:
        return self.session.state

    def feed(self, event: Event) -> List[Effect]:
        before = self.session.state
        self.session, effects = transition(self.session, event)
        self.history.append((before.value, type(event).__name__, self.session.state.value))
        if len(self.history) > self._history_size:
            del self.history[0]
        return effects


__all__ = [
    "CallState",
    "Role",
    "NegotiationSession",
    "NegotiationMachine",
    "transition",
]
