"""API-facing Pydantic models."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from transport.description import SessionDescription


class DescriptionResponse(BaseModel):
    type: Literal["offer", "answer"]
    sdp: str
    wire: str = Field(description="JSON text to hand to the other peer verbatim.")

    @classmethod
    def from_description(cls, description: SessionDescription) -> DescriptionResponse:
        return cls(type=description.type.value, sdp=description.sdp, wire=description.to_wire())


class RemoteDescriptionRequest(BaseModel):
    description: str = Field(description="Description JSON pasted from the other peer.")


class RemoteDescriptionResponse(BaseModel):
    applied: Literal["offer", "answer"]
    answer: DescriptionResponse | None = None


class StatusResponse(BaseModel):
    session_id: str
    role: str | None
    connectivity: str
    usable: bool
    gathering: str | None
    call: str
    incoming_from: str | None
    has_live_media: bool
    audio_muted: bool
    video_muted: bool
    local_tracks: list[str]
    remote_tracks: list[str]
    outstanding_offer: bool


class CallResponse(BaseModel):
    call: str
    changed: bool = True


class MuteResponse(BaseModel):
    kind: Literal["audio", "video"]
    muted: bool | None = Field(description="None when there is no active capture.")


class MediaResponse(BaseModel):
    session_id: str
    tracks: list[str]
    audio_muted: bool
    video_muted: bool


class ChatRequest(BaseModel):
    message: str

    @field_validator("message")
    @classmethod
    def message_not_empty(cls, value: str) -> str:
        text = value.strip()
        if not text:
            raise ValueError("Message may not be empty.")
        return text


class ChatMessageResponse(BaseModel):
    text: str
    own: bool
    raw: bool
    at: datetime


class LifecycleEventResponse(BaseModel):
    at: datetime
    source: str
    event: str
    detail: dict[str, Any]


class SessionRecordResponse(BaseModel):
    session_id: str
    role: str
    display_name: str
    connected_at: datetime
    ended_at: datetime | None
    end_reason: str | None
