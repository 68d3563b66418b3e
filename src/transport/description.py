"""Session descriptions and their copy/paste wire format."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from aiortc import RTCSessionDescription

from transport.errors import NegotiationError


class DescriptionType(str, Enum):
    OFFER = "offer"
    ANSWER = "answer"


@dataclass(frozen=True, slots=True)
class SessionDescription:
    type: DescriptionType
    sdp: str

    @property
    def has_video(self) -> bool:
        return "m=video" in self.sdp

    def as_dict(self) -> dict[str, str]:
        return {"type": self.type.value, "sdp": self.sdp}

    def to_wire(self) -> str:
        """Serialize as the JSON object pasted between peers."""

        return json.dumps(self.as_dict())

    def to_rtc(self) -> RTCSessionDescription:
        return RTCSessionDescription(sdp=self.sdp, type=self.type.value)

    @classmethod
    def from_rtc(cls, description: RTCSessionDescription) -> SessionDescription:
        return cls.from_mapping({"type": description.type, "sdp": description.sdp})

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> SessionDescription:
        raw_type = payload.get("type")
        sdp = payload.get("sdp")
        try:
            desc_type = DescriptionType(raw_type)
        except ValueError as exc:
            raise NegotiationError(f"Unsupported description type: {raw_type!r}") from exc
        if not isinstance(sdp, str) or not sdp.strip():
            raise NegotiationError("Session description has no SDP payload.")
        lines = sdp.strip().splitlines()
        # Every negotiated description carries at least the data channel section.
        if not lines[0].startswith("v=") or not any(line.startswith("m=") for line in lines):
            raise NegotiationError("Session description is not SDP: expected a v= line and a media section.")
        return cls(type=desc_type, sdp=sdp)

    @classmethod
    def from_wire(cls, text: str) -> SessionDescription:
        """Parse text pasted by the operator.

        Raises:
            NegotiationError: if the text is not a JSON description object.
        """

        text = (text or "").strip()
        if not text:
            raise NegotiationError("Session description is empty.")
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise NegotiationError(f"Session description is not valid JSON: {exc.msg}") from exc
        if not isinstance(payload, dict):
            raise NegotiationError("Session description must be a JSON object.")
        return cls.from_mapping(payload)
