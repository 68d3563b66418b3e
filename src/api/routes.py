"""FastAPI routes exposing the peer session to presentation layers."""

from __future__ import annotations

import logging
from typing import Literal

from fastapi import APIRouter, Depends, Query

from api.dependencies import SessionHolder, get_peer_session, get_session_holder
from api.schemas import (
    CallResponse,
    ChatMessageResponse,
    ChatRequest,
    DescriptionResponse,
    LifecycleEventResponse,
    MediaResponse,
    MuteResponse,
    RemoteDescriptionRequest,
    RemoteDescriptionResponse,
    SessionRecordResponse,
    StatusResponse,
)
from db.repository import SessionMetadataRepository
from peer.session import PeerSession

LOGGER = logging.getLogger(__name__)

router = APIRouter()


def get_repository() -> SessionMetadataRepository:
    return SessionMetadataRepository()


@router.get("/status", response_model=StatusResponse)
async def get_status(session: PeerSession = Depends(get_peer_session)) -> StatusResponse:
    return StatusResponse(**session.status())


@router.post("/negotiation/offer", response_model=DescriptionResponse)
async def create_offer(session: PeerSession = Depends(get_peer_session)) -> DescriptionResponse:
    offer = await session.create_offer()
    return DescriptionResponse.from_description(offer)


@router.post("/negotiation/remote", response_model=RemoteDescriptionResponse)
async def apply_remote_description(
    payload: RemoteDescriptionRequest,
    session: PeerSession = Depends(get_peer_session),
) -> RemoteDescriptionResponse:
    answer = await session.apply_remote(payload.description)
    if answer is None:
        return RemoteDescriptionResponse(applied="answer")
    return RemoteDescriptionResponse(applied="offer", answer=DescriptionResponse.from_description(answer))


@router.post("/calls/start", response_model=CallResponse)
async def start_call(session: PeerSession = Depends(get_peer_session)) -> CallResponse:
    started = session.start_call()
    return CallResponse(call=session.calls.state.value, changed=started)


@router.post("/calls/accept", response_model=CallResponse)
async def accept_call(session: PeerSession = Depends(get_peer_session)) -> CallResponse:
    await session.accept_call()
    return CallResponse(call=session.calls.state.value)


@router.post("/calls/decline", response_model=CallResponse)
async def decline_call(session: PeerSession = Depends(get_peer_session)) -> CallResponse:
    session.decline_call()
    return CallResponse(call=session.calls.state.value)


@router.post("/calls/end", response_model=CallResponse)
async def end_call(session: PeerSession = Depends(get_peer_session)) -> CallResponse:
    ended = session.end_call()
    return CallResponse(call=session.calls.state.value, changed=ended)


@router.post("/media/preview", response_model=MediaResponse)
async def preview_media(session: PeerSession = Depends(get_peer_session)) -> MediaResponse:
    media = await session.preview_media()
    return MediaResponse(
        session_id=media.session_id,
        tracks=media.kinds,
        audio_muted=media.audio_muted,
        video_muted=media.video_muted,
    )


@router.post("/media/mute/{kind}", response_model=MuteResponse)
async def toggle_mute(
    kind: Literal["audio", "video"],
    session: PeerSession = Depends(get_peer_session),
) -> MuteResponse:
    muted = session.toggle_audio_mute() if kind == "audio" else session.toggle_video_mute()
    return MuteResponse(kind=kind, muted=muted)


@router.get("/chat", response_model=list[ChatMessageResponse])
async def list_chat(session: PeerSession = Depends(get_peer_session)) -> list[ChatMessageResponse]:
    return [
        ChatMessageResponse(text=m.text, own=m.own, raw=m.raw, at=m.at)
        for m in session.chat
    ]


@router.post("/chat", response_model=ChatMessageResponse)
async def send_chat(
    payload: ChatRequest,
    session: PeerSession = Depends(get_peer_session),
) -> ChatMessageResponse:
    message = session.send_chat(payload.message)
    return ChatMessageResponse(text=message.text, own=message.own, raw=message.raw, at=message.at)


@router.get("/events", response_model=list[LifecycleEventResponse])
async def list_events(
    limit: int = Query(default=100, ge=1, le=1000),
    source: str | None = None,
    session: PeerSession = Depends(get_peer_session),
) -> list[LifecycleEventResponse]:
    return [
        LifecycleEventResponse(at=e.at, source=e.source, event=e.event, detail=e.detail)
        for e in session.log.entries(source=source, limit=limit)
    ]


@router.get("/sessions/history", response_model=list[SessionRecordResponse])
async def session_history(
    limit: int = Query(default=10, ge=1, le=100),
    repo: SessionMetadataRepository = Depends(get_repository),
) -> list[SessionRecordResponse]:
    records = await repo.list_recent(limit=limit)
    return [
        SessionRecordResponse(
            session_id=r.session_id,
            role=r.role,
            display_name=r.display_name,
            connected_at=r.connected_at,
            ended_at=r.ended_at,
            end_reason=r.end_reason,
        )
        for r in records
    ]


@router.post("/session/reset", response_model=StatusResponse)
async def reset_session(holder: SessionHolder = Depends(get_session_holder)) -> StatusResponse:
    session = await holder.reset()
    LOGGER.info("Peer session reset; new session %s", session.session_id)
    return StatusResponse(**session.status())
