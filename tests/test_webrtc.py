import pytest
from aiortc import RTCIceCandidate

from livecall.webrtc import (
    build_configuration,
    candidate_from_dict,
    candidate_to_dict,
    create_peer_connection,
    description_from_dict,
    description_to_dict,
)


def test_build_configuration_turn_requires_all_parts():
    config = build_configuration("stun:stun.example.org", "turn:turn.example.org", "user", None)
    assert len(config.iceServers) == 1

    config = build_configuration("stun:stun.example.org", "turn:turn.example.org", "user", "secret")
    assert len(config.iceServers) == 2
    assert config.iceServers[1].username == "user"


def test_description_from_dict_accepts_plain_sdp():
    desc = description_from_dict("v=0\r\n", "offer")
    assert desc.type == "offer"
    assert description_to_dict(desc) == {"type": "offer", "sdp": "v=0\r\n"}


def test_description_from_dict_rejects_missing_sdp():
    with pytest.raises(ValueError):
        description_from_dict({"type": "offer"}, "offer")


def test_candidate_round_trip_keeps_mid_and_index():
    candidate = RTCIceCandidate(
        component=1,
        foundation="1",
        ip="192.0.2.10",
        port=50000,
        priority=2130706431,
        protocol="udp",
        type="host",
        sdpMid="0",
        sdpMLineIndex=0,
    )
    payload = candidate_to_dict(candidate)
    assert payload["candidate"].startswith("candidate:")
    parsed = candidate_from_dict(payload)
    assert parsed.ip == "192.0.2.10"
    assert parsed.port == 50000
    assert parsed.sdpMid == "0"
    assert parsed.sdpMLineIndex == 0


def test_candidate_from_dict_end_of_candidates():
    assert candidate_from_dict({"candidate": "", "sdpMid": "0"}) is None


@pytest.mark.asyncio
async def test_webrtc_offer_answer():
    config = build_configuration("stun:stun.example.org")
    pc1 = create_peer_connection(config)
    pc2 = create_peer_connection(config)
    pc1.createDataChannel("chat")

    try:
        offer = await pc1.createOffer()
        await pc1.setLocalDescription(offer)
        await pc2.setRemoteDescription(description_from_dict(description_to_dict(pc1.localDescription), "offer"))
        answer = await pc2.createAnswer()
        await pc2.setLocalDescription(answer)
        await pc1.setRemoteDescription(pc2.localDescription)

        assert pc1.remoteDescription is not None
        assert pc2.remoteDescription is not None
    finally:
        await pc1.close()
        await pc2.close()
