"""Control-channel frame codec.

Frames are JSON objects tagged by ``type``. Anything that does not decode to a
known envelope is handed to the chat surface as raw text, so peers that only
ever send plain strings keep working.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from transport.description import SessionDescription
from transport.errors import NegotiationError


class MessageType(str, Enum):
    CALL_REQUEST = "call-request"
    CALL_ACCEPT = "call-accept"
    CALL_DECLINE = "call-decline"
    CALL_OFFER = "call-offer"
    CALL_ANSWER = "call-answer"
    CALL_END = "call-end"
    CHAT = "chat"


@dataclass(frozen=True, slots=True)
class SignalingEnvelope:
    type: MessageType
    sender: str | None = None
    sdp: SessionDescription | None = None
    message: str | None = None
    # Set when the frame could not be decoded and was reinterpreted as chat.
    fallback: bool = False

    @classmethod
    def call_request(cls, sender: str) -> SignalingEnvelope:
        return cls(MessageType.CALL_REQUEST, sender=sender)

    @classmethod
    def call_accept(cls, sender: str) -> SignalingEnvelope:
        return cls(MessageType.CALL_ACCEPT, sender=sender)

    @classmethod
    def call_decline(cls, sender: str) -> SignalingEnvelope:
        return cls(MessageType.CALL_DECLINE, sender=sender)

    @classmethod
    def call_end(cls, sender: str) -> SignalingEnvelope:
        return cls(MessageType.CALL_END, sender=sender)

    @classmethod
    def call_offer(cls, sdp: SessionDescription) -> SignalingEnvelope:
        return cls(MessageType.CALL_OFFER, sdp=sdp)

    @classmethod
    def call_answer(cls, sdp: SessionDescription) -> SignalingEnvelope:
        return cls(MessageType.CALL_ANSWER, sdp=sdp)

    @classmethod
    def chat(cls, message: str) -> SignalingEnvelope:
        return cls(MessageType.CHAT, message=message)

    def to_frame(self) -> str:
        payload: dict[str, Any] = {"type": self.type.value}
        if self.type in _SENDER_TYPES:
            payload["from"] = self.sender or ""
        elif self.type in _SDP_TYPES:
            if self.sdp is None:
                raise ValueError(f"{self.type.value} envelope requires a session description")
            payload["sdp"] = self.sdp.as_dict()
        else:
            payload["message"] = self.message or ""
        return json.dumps(payload)


_SENDER_TYPES = frozenset(
    {
        MessageType.CALL_REQUEST,
        MessageType.CALL_ACCEPT,
        MessageType.CALL_DECLINE,
        MessageType.CALL_END,
    }
)
_SDP_TYPES = frozenset({MessageType.CALL_OFFER, MessageType.CALL_ANSWER})


def _decode_sender(kind: MessageType, payload: dict[str, Any]) -> SignalingEnvelope | None:
    sender = payload.get("from", "")
    if not isinstance(sender, str):
        return None
    return SignalingEnvelope(kind, sender=sender)


def _decode_sdp(kind: MessageType, payload: dict[str, Any]) -> SignalingEnvelope | None:
    raw = payload.get("sdp")
    if not isinstance(raw, dict):
        return None
    try:
        sdp = SessionDescription.from_mapping(raw)
    except NegotiationError:
        return None
    return SignalingEnvelope(kind, sdp=sdp)


def _decode_chat(kind: MessageType, payload: dict[str, Any]) -> SignalingEnvelope | None:
    message = payload.get("message")
    if not isinstance(message, str):
        return None
    return SignalingEnvelope(kind, message=message)


_DECODERS: dict[MessageType, Callable[[MessageType, dict[str, Any]], SignalingEnvelope | None]] = {
    MessageType.CALL_REQUEST: _decode_sender,
    MessageType.CALL_ACCEPT: _decode_sender,
    MessageType.CALL_DECLINE: _decode_sender,
    MessageType.CALL_END: _decode_sender,
    MessageType.CALL_OFFER: _decode_sdp,
    MessageType.CALL_ANSWER: _decode_sdp,
    MessageType.CHAT: _decode_chat,
}


def _fallback(raw: str) -> SignalingEnvelope:
    return SignalingEnvelope(MessageType.CHAT, message=raw, fallback=True)


def decode_frame(raw: str | bytes) -> SignalingEnvelope:
    """Decode one control-channel frame. Never raises."""

    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")

    try:
        payload = json.loads(raw)
    except (ValueError, RecursionError):
        # Malformed JSON, oversized integers or pathological nesting.
        return _fallback(raw)
    if not isinstance(payload, dict):
        return _fallback(raw)

    try:
        kind = MessageType(payload.get("type"))
    except ValueError:
        return _fallback(raw)

    envelope = _DECODERS[kind](kind, payload)
    return envelope if envelope is not None else _fallback(raw)
