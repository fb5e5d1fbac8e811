from livecall_comms.negotiation import (
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
    NegotiationSession,
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
    Role,
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
    transition,
)

OFFER_SDP = {"type": "offer", "sdp": "v=0"}
ANSWER_SDP = {"type": "answer", "sdp": "v=0"}
CAND_1 = {"candidate": "candidate:1", "sdpMid": "0", "sdpMLineIndex": 0}
CAND_2 = {"candidate": "candidate:2", "sdpMid": "0", "sdpMLineIndex": 0}


def of_type(effects, kind):
    return [effect for effect in effects if isinstance(effect, kind)]


def joined(local_id="m", room="room-1"):
    """Machine that has connected and sent its join."""
    machine = NegotiationMachine()
    machine.feed(JoinRequested(room, "Ada"))
    machine.feed(TransportConnected(local_id))
    return machine


def offering(local_id="m", remote="r"):
    machine = joined(local_id)
    machine.feed(ExistingParticipants((remote,)))
    machine.feed(OfferSent(remote))
    return machine


def answering(local_id="m", remote="r"):
    machine = joined(local_id)
    machine.feed(ExistingParticipants(()))
    machine.feed(OfferReceived(remote, OFFER_SDP))
    return machine


def test_join_waits_for_transport():
    machine = NegotiationMachine()
    assert machine.feed(JoinRequested("room-1", "Ada")) == []
    assert machine.state is CallState.IDLE
    effects = machine.feed(TransportConnected("m"))
    assert SendJoin("room-1", "Ada") in effects
    assert machine.state is CallState.JOINING_ROOM


def test_join_after_transport_is_immediate():
    machine = NegotiationMachine()
    machine.feed(TransportConnected("m"))
    effects = machine.feed(JoinRequested(" room-1 ", "Ada"))
    assert effects[0] == SendJoin("room-1", "Ada")
    assert machine.session.room_id == "room-1"


def test_blank_room_is_not_joined():
    machine = NegotiationMachine()
    machine.feed(TransportConnected("m"))
    assert machine.feed(JoinRequested("  ", "Ada")) == []
    assert machine.state is CallState.IDLE


def test_empty_room_waits_for_peer():
    machine = joined()
    effects = machine.feed(ExistingParticipants(()))
    assert machine.state is CallState.WAITING_FOR_PEER
    assert StartCallTimer() in effects
    assert not of_type(effects, CreateOffer)


def test_newcomer_offers_to_first_participant():
    machine = joined()
    effects = machine.feed(ExistingParticipants(("first", "second")))
    assert machine.state is CallState.OFFERING
    assert of_type(effects, CreateOffer) == [CreateOffer("first")]
    assert machine.session.role is Role.OFFERER
    machine.feed(OfferSent("first"))
    assert machine.state is CallState.WAITING_FOR_ANSWER


def test_user_joined_never_offers():
    machine = joined()
    machine.feed(ExistingParticipants(()))
    effects = machine.feed(UserJoined("newcomer", "Bob"))
    assert not of_type(effects, CreateOffer)
    assert machine.state is CallState.WAITING_FOR_PEER
    assert of_type(effects, Status)


def test_exactly_one_offerer_per_round():
    first = joined("a")
    first.feed(ExistingParticipants(()))
    second = joined("b")
    offers_by_second = of_type(second.feed(ExistingParticipants(("a",))), CreateOffer)
    offers_by_first = of_type(first.feed(UserJoined("b", "B")), CreateOffer)
    assert len(offers_by_first) + len(offers_by_second) == 1


def test_answerer_flow():
    machine = joined()
    machine.feed(ExistingParticipants(()))
    effects = machine.feed(OfferReceived("r", OFFER_SDP))
    assert effects == [AcceptOffer("r", OFFER_SDP)]
    assert machine.state is CallState.ANSWERING
    machine.feed(RemoteDescriptionSet())
    machine.feed(AnswerSent("r"))
    assert machine.state is CallState.CONNECTING
    machine.feed(PeerConnected())
    assert machine.state is CallState.CONNECTED


def test_offerer_flow():
    machine = offering()
    effects = machine.feed(AnswerReceived("r", ANSWER_SDP))
    assert effects == [ApplyAnswer(ANSWER_SDP)]
    assert machine.state is CallState.CONNECTING
    machine.feed(RemoteDescriptionSet())
    machine.feed(PeerConnected())
    assert machine.state is CallState.CONNECTED


def test_answer_from_untracked_peer_is_ignored():
    machine = offering()
    assert machine.feed(AnswerReceived("stranger", ANSWER_SDP)) == []
    assert machine.state is CallState.WAITING_FOR_ANSWER


def test_offer_from_untracked_peer_is_ignored_while_in_call():
    machine = offering()
    assert machine.feed(OfferReceived("third", OFFER_SDP)) == []
    assert machine.session.remote_id == "r"


def test_glare_greater_handle_yields():
    machine = offering(local_id="z", remote="a")
    effects = machine.feed(OfferReceived("a", OFFER_SDP))
    assert effects == [ClosePeer(), AcceptOffer("a", OFFER_SDP)]
    assert machine.state is CallState.ANSWERING
    assert machine.session.role is Role.ANSWERER


def test_glare_smaller_handle_keeps_offering():
    machine = offering(local_id="a", remote="z")
    assert machine.feed(OfferReceived("z", OFFER_SDP)) == []
    assert machine.state is CallState.WAITING_FOR_ANSWER


def test_candidates_buffered_until_remote_description():
    machine = offering()
    assert machine.feed(CandidateReceived("r", CAND_1)) == []
    assert machine.feed(CandidateReceived("r", CAND_2)) == []
    machine.feed(AnswerReceived("r", ANSWER_SDP))
    effects = machine.feed(RemoteDescriptionSet())
    assert effects == [AddCandidates((CAND_1, CAND_2))]
    assert machine.session.pending_candidates == ()
    assert machine.feed(CandidateReceived("r", CAND_1)) == [AddCandidates((CAND_1,))]


def test_candidates_arriving_before_offer_are_kept():
    machine = joined()
    machine.feed(ExistingParticipants(()))
    machine.feed(CandidateReceived("r", CAND_1))
    machine.feed(OfferReceived("r", OFFER_SDP))
    assert machine.feed(RemoteDescriptionSet()) == [AddCandidates((CAND_1,))]


def test_candidates_from_other_handles_are_ignored():
    machine = offering()
    machine.feed(CandidateReceived("stranger", CAND_1))
    assert machine.session.pending_candidates == ()


def test_user_left_tears_down_to_waiting():
    machine = answering()
    machine.feed(AnswerSent("r"))
    machine.feed(PeerConnected())
    effects = machine.feed(UserLeft("r"))
    assert StopRecording() in effects
    assert ClosePeer() in effects
    assert machine.state is CallState.WAITING_FOR_PEER
    assert machine.session.remote_id is None


def test_user_left_of_someone_else_is_ignored():
    machine = answering()
    assert machine.feed(UserLeft("other")) == []
    assert machine.state is CallState.ANSWERING


def test_transport_lost_and_rejoin():
    machine = offering()
    effects = machine.feed(TransportLost())
    assert ClosePeer() in effects
    assert machine.state is CallState.RECONNECTING
    assert machine.session.transport_up is False
    effects = machine.feed(TransportConnected("m2"))
    assert SendJoin("room-1", "Ada") in effects
    assert machine.session.local_id == "m2"
    assert machine.state is CallState.JOINING_ROOM


def test_peer_failure_offerer_reoffers():
    machine = offering()
    machine.feed(AnswerReceived("r", ANSWER_SDP))
    machine.feed(PeerConnected())
    effects = machine.feed(PeerFailed())
    assert of_type(effects, CreateOffer) == [CreateOffer("r")]
    assert effects.index(ClosePeer()) < effects.index(CreateOffer("r"))
    assert machine.state is CallState.OFFERING


def test_peer_failure_answerer_waits_for_reoffer():
    machine = answering()
    machine.feed(AnswerSent("r"))
    machine.feed(PeerConnected())
    machine.feed(PeerFailed())
    assert machine.state is CallState.WAITING_FOR_PEER
    assert machine.session.remote_id == "r"
    assert machine.feed(OfferReceived("r", OFFER_SDP)) == [AcceptOffer("r", OFFER_SDP)]


def test_negotiation_failure_clears_remote():
    machine = offering()
    effects = machine.feed(NegotiationFailed("boom"))
    assert ClosePeer() in effects
    assert machine.state is CallState.WAITING_FOR_PEER
    assert machine.session.remote_id is None


def test_negotiation_failure_outside_call_is_ignored():
    machine = joined()
    assert machine.feed(NegotiationFailed("boom")) == []


def test_renegotiation_while_connected():
    machine = offering()
    machine.feed(AnswerReceived("r", ANSWER_SDP))
    machine.feed(PeerConnected())
    assert machine.feed(RenegotiationNeeded()) == [CreateOffer("r", renegotiation=True)]
    assert machine.feed(AnswerReceived("r", ANSWER_SDP)) == [ApplyAnswer(ANSWER_SDP)]
    assert machine.state is CallState.CONNECTED
    assert machine.session.renegotiating is False


def test_renegotiation_during_a_round_runs_after_its_answer():
    machine = offering()
    machine.feed(AnswerReceived("r", ANSWER_SDP))
    machine.feed(PeerConnected())
    machine.feed(RenegotiationNeeded())
    assert machine.feed(RenegotiationNeeded()) == []
    assert machine.session.renegotiation_pending is True

    effects = machine.feed(AnswerReceived("r", ANSWER_SDP))
    assert effects == [ApplyAnswer(ANSWER_SDP), CreateOffer("r", renegotiation=True)]
    assert machine.session.renegotiating is True
    assert machine.session.renegotiation_pending is False


def test_renegotiation_before_connected_is_held_until_connected():
    machine = offering()
    machine.feed(AnswerReceived("r", ANSWER_SDP))
    assert machine.state is CallState.CONNECTING
    assert machine.feed(RenegotiationNeeded()) == []

    effects = machine.feed(PeerConnected())
    assert effects == [Status("Participant connected."), CreateOffer("r", renegotiation=True)]
    assert machine.state is CallState.CONNECTED
    assert machine.session.renegotiating is True


def test_answerer_requests_renegotiation_instead_of_offering():
    machine = answering()
    machine.feed(AnswerSent("r"))
    machine.feed(PeerConnected())
    assert machine.feed(RenegotiationNeeded()) == [RequestRenegotiation("r")]
    assert machine.session.renegotiating is False


def test_answerer_request_before_connected_is_sent_on_connect():
    machine = answering()
    machine.feed(AnswerSent("r"))
    assert machine.feed(RenegotiationNeeded()) == []
    effects = machine.feed(PeerConnected())
    assert effects[-1] == RequestRenegotiation("r")


def test_offerer_honours_renegotiation_request():
    machine = offering()
    machine.feed(AnswerReceived("r", ANSWER_SDP))
    machine.feed(PeerConnected())
    assert machine.feed(RenegotiationRequested("other")) == []
    assert machine.feed(RenegotiationRequested("r")) == [CreateOffer("r", renegotiation=True)]


def test_answerer_ignores_renegotiation_request():
    machine = answering()
    machine.feed(AnswerSent("r"))
    machine.feed(PeerConnected())
    assert machine.feed(RenegotiationRequested("r")) == []


def test_simultaneous_renegotiation_has_one_offer():
    offerer = offering(local_id="b", remote="a")
    offerer.feed(AnswerReceived("a", ANSWER_SDP))
    offerer.feed(PeerConnected())
    answerer = answering(local_id="a", remote="b")
    answerer.feed(AnswerSent("b"))
    answerer.feed(PeerConnected())

    from_offerer = offerer.feed(RenegotiationNeeded())
    from_answerer = answerer.feed(RenegotiationNeeded())
    assert of_type(from_offerer, CreateOffer) == [CreateOffer("a", renegotiation=True)]
    assert of_type(from_answerer, CreateOffer) == []

    # the request crosses the offer; the offerer latches it for after the answer
    assert offerer.feed(RenegotiationRequested("a")) == []
    accepted = answerer.feed(OfferReceived("b", OFFER_SDP))
    assert accepted == [AcceptOffer("b", OFFER_SDP, renegotiation=True)]
    # an offer from the answerer while ours is outstanding is not accepted
    assert offerer.feed(OfferReceived("a", OFFER_SDP)) == []

    effects = offerer.feed(AnswerReceived("a", ANSWER_SDP))
    assert effects == [ApplyAnswer(ANSWER_SDP), CreateOffer("a", renegotiation=True)]
    assert offerer.state is CallState.CONNECTED
    assert answerer.state is CallState.CONNECTED


def test_remote_renegotiation_is_answered_in_place():
    machine = answering()
    machine.feed(AnswerSent("r"))
    machine.feed(PeerConnected())
    effects = machine.feed(OfferReceived("r", OFFER_SDP))
    assert effects == [AcceptOffer("r", OFFER_SDP, renegotiation=True)]
    assert machine.state is CallState.CONNECTED


def test_room_full():
    machine = joined()
    effects = machine.feed(RoomFullReceived("room-1"))
    assert machine.state is CallState.IDLE
    assert Status("This room is full.") in effects


def test_end_call_effects_and_absorbing_state():
    machine = offering()
    machine.feed(ScreenShareChanged(True))
    effects = machine.feed(CallEnded())
    assert effects[0] == StopRecording()
    assert StopScreenShare() in effects
    assert DisconnectTransport() in effects
    assert ReleaseMedia() in effects
    assert effects[-1] == NotifyEnded()
    assert machine.state is CallState.ENDED

    for event in (TransportConnected("x"), OfferReceived("r", OFFER_SDP), CallEnded()):
        assert machine.feed(event) == []
    assert machine.state is CallState.ENDED


def test_transition_is_pure():
    session = NegotiationSession()
    new_session, _ = transition(session, TransportConnected("m"))
    assert session.transport_up is False
    assert new_session.transport_up is True


def test_history_is_bounded():
    machine = NegotiationMachine(history=2)
    machine.feed(TransportConnected("m"))
    machine.feed(JoinRequested("room-1", "Ada"))
    machine.feed(ExistingParticipants(()))
    assert machine.history == [
        ("idle", "JoinRequested", "joining-room"),
        ("joining-room", "ExistingParticipants", "waiting-for-peer"),
    ]
