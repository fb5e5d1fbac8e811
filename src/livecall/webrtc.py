"""Helpers for aiortc based WebRTC connections.

Covers the small amount of glue every call client needs: building the
ICE configuration, creating a peer connection, and converting session
descriptions and ICE candidates to and from the browser-compatible JSON
shapes carried by the signaling channel.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from aiortc import RTCConfiguration, RTCIceCandidate, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp


def build_configuration(stun_url: str, turn_url: Optional[str] = None,
                        turn_user: Optional[str] = None,
                        turn_pass: Optional[str] = None) -> RTCConfiguration:
    """Create an :class:`RTCConfiguration` with optional TURN support.

    The TURN server is only added when url, username and credential are
    all supplied.
    """
    ice_servers: List[RTCIceServer] = [RTCIceServer(stun_url)]
    if turn_url and turn_user and turn_pass:
        ice_servers.append(RTCIceServer(turn_url, turn_user, turn_pass))
    return RTCConfiguration(iceServers=ice_servers)


def create_peer_connection(config: RTCConfiguration) -> RTCPeerConnection:
    """Return a new :class:`RTCPeerConnection` using ``config``."""
    return RTCPeerConnection(configuration=config)


def description_to_dict(description: RTCSessionDescription) -> Dict[str, str]:
    """Serialize a session description as ``{"type", "sdp"}``."""
    return {"type": description.type, "sdp": description.sdp}


def description_from_dict(payload: Any, expected_type: str) -> RTCSessionDescription:
    """Parse a session description received over signaling.

    Browsers send ``{"type": ..., "sdp": ...}``; a bare SDP string is
    accepted too and typed with ``expected_type``.
    """
    if isinstance(payload, str):
        return RTCSessionDescription(sdp=payload, type=expected_type)
    if not isinstance(payload, dict) or not payload.get("sdp"):
        raise ValueError("session description is missing its sdp")
    return RTCSessionDescription(sdp=payload["sdp"], type=payload.get("type") or expected_type)


def candidate_to_dict(candidate: RTCIceCandidate) -> Dict[str, Any]:
    """Serialize a local candidate as an ``RTCIceCandidateInit`` dict."""
    return {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


def candidate_from_dict(payload: Dict[str, Any]) -> Optional[RTCIceCandidate]:
    """Parse an ``RTCIceCandidateInit`` dict.

    Returns ``None`` for the empty end-of-candidates marker.
    """
    candidate_str = payload.get("candidate")
    if not candidate_str:
        return None
    if candidate_str.startswith("candidate:"):
        candidate_str = candidate_str[len("candidate:"):]
    candidate = candidate_from_sdp(candidate_str)
    candidate.sdpMid = payload.get("sdpMid")
    candidate.sdpMLineIndex = payload.get("sdpMLineIndex")
    return candidate


__all__ = [
    "build_configuration",
    "create_peer_connection",
    "description_to_dict",
    "description_from_dict",
    "candidate_to_dict",
    "candidate_from_dict",
]
