from __future__ import annotations

import json

import pytest

from transport.description import DescriptionType, SessionDescription
from transport.errors import NegotiationError

SDP = "v=0\r\no=- 1 1 IN IP4 0.0.0.0\r\ns=-\r\nm=application 9 UDP/DTLS/SCTP webrtc-datachannel\r\n"


def test_wire_format_is_type_and_sdp_object():
    description = SessionDescription(DescriptionType.OFFER, SDP)

    payload = json.loads(description.to_wire())
    assert payload == {"type": "offer", "sdp": SDP}


def test_description_survives_copy_paste_to_peer():
    original = SessionDescription(DescriptionType.ANSWER, SDP)

    # Operators tend to paste with surrounding whitespace.
    received = SessionDescription.from_wire("\n  " + original.to_wire() + "  \n")
    assert received == original
    assert received.type is DescriptionType.ANSWER


def test_rtc_conversion_keeps_type_and_payload():
    description = SessionDescription(DescriptionType.OFFER, SDP)

    rtc = description.to_rtc()
    assert rtc.type == "offer"
    assert SessionDescription.from_rtc(rtc) == description


def test_has_video_detects_video_section():
    assert not SessionDescription(DescriptionType.OFFER, SDP).has_video
    assert SessionDescription(DescriptionType.OFFER, SDP + "m=video 9 UDP/TLS/RTP/SAVPF 96\r\n").has_video


@pytest.mark.parametrize(
    "text",
    [
        "",
        "   ",
        "not json at all",
        "[1, 2, 3]",
        '{"type": "pranswer", "sdp": "v=0"}',
        '{"type": "offer"}',
        '{"type": "offer", "sdp": ""}',
        '{"sdp": "v=0"}',
        '{"type": "offer", "sdp": "garbage not sdp"}',
        '{"type": "offer", "sdp": "v=0\\r\\ns=-\\r\\n"}',
    ],
)
def test_malformed_descriptions_raise_negotiation_error(text: str):
    with pytest.raises(NegotiationError):
        SessionDescription.from_wire(text)
