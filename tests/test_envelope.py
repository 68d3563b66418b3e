from __future__ import annotations

import json

import pytest

from calls.envelope import MessageType, SignalingEnvelope, decode_frame
from transport.description import DescriptionType, SessionDescription

SDP = SessionDescription(DescriptionType.OFFER, "v=0\r\nm=audio 9 UDP/TLS/RTP/SAVPF 111\r\n")


def test_sender_envelopes_use_from_field():
    frame = SignalingEnvelope.call_request("alice").to_frame()

    assert json.loads(frame) == {"type": "call-request", "from": "alice"}
    decoded = decode_frame(frame)
    assert decoded.type is MessageType.CALL_REQUEST
    assert decoded.sender == "alice"
    assert decoded.fallback is False


def test_call_offer_carries_nested_description():
    frame = SignalingEnvelope.call_offer(SDP).to_frame()

    assert json.loads(frame)["sdp"] == {"type": "offer", "sdp": SDP.sdp}
    decoded = decode_frame(frame)
    assert decoded.type is MessageType.CALL_OFFER
    assert decoded.sdp == SDP


def test_chat_envelope_decodes_message():
    decoded = decode_frame(json.dumps({"type": "chat", "message": "hi there"}))

    assert decoded.type is MessageType.CHAT
    assert decoded.message == "hi there"
    assert decoded.fallback is False


def test_bytes_frames_are_decoded_as_utf8():
    decoded = decode_frame('{"type": "call-end", "from": "bob"}'.encode("utf-8"))

    assert decoded.type is MessageType.CALL_END
    assert decoded.sender == "bob"


@pytest.mark.parametrize(
    "raw",
    [
        "hello from an older peer",
        "42",
        '["call-request"]',
        '{"type": "call-hold", "from": "alice"}',
        '{"type": "chat"}',
        '{"type": "call-offer", "sdp": "not-an-object"}',
        '{"type": "call-answer", "sdp": {"type": "bogus", "sdp": "v=0"}}',
        '{"type": "call-request", "from": 7}',
        '{"type": "call-acc',
        "1" * 5000,
        "[" * 100_000,
    ],
)
def test_undecodable_frames_fall_back_to_verbatim_chat(raw: str):
    decoded = decode_frame(raw)

    assert decoded.type is MessageType.CHAT
    assert decoded.message == raw
    assert decoded.fallback is True


def test_sdp_envelope_without_description_cannot_be_framed():
    with pytest.raises(ValueError):
        SignalingEnvelope(MessageType.CALL_ANSWER).to_frame()
