"""Local capture lifecycle: acquire, attach to the transport, mute, release."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field

import numpy as np
from aiortc.mediastreams import MediaStreamTrack
from av import AudioFrame, VideoFrame
from av.error import FFmpegError

from calls.capture import CaptureDevice, MediaConstraints, classify_capture_failure
from transport.errors import CaptureFailureReason, MediaAcquisitionError
from transport.events import SessionLog
from transport.session import TransportSession

LOGGER = logging.getLogger(__name__)


def _blank_like(frame: AudioFrame | VideoFrame) -> AudioFrame | VideoFrame:
    if isinstance(frame, AudioFrame):
        blank = AudioFrame.from_ndarray(
            np.zeros_like(frame.to_ndarray()),
            format=frame.format.name,
            layout=frame.layout.name,
        )
        blank.sample_rate = frame.sample_rate
    else:
        blank = VideoFrame.from_ndarray(np.zeros((frame.height, frame.width, 3), dtype=np.uint8), format="rgb24")
    blank.pts = frame.pts
    blank.time_base = frame.time_base
    return blank


class GatedTrack(MediaStreamTrack):
    """Wraps a capture track; while disabled it forwards silence or black frames."""

    def __init__(self, source: MediaStreamTrack) -> None:
        super().__init__()
        self.kind = source.kind
        self.enabled = True
        self._source = source

    async def recv(self) -> AudioFrame | VideoFrame:
        frame = await self._source.recv()
        if self.enabled:
            return frame
        return _blank_like(frame)

    def stop(self) -> None:
        super().stop()
        self._source.stop()


@dataclass
class LocalMediaSession:
    tracks: list[GatedTrack]
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    audio_muted: bool = False
    video_muted: bool = False
    released: bool = False
    transport: TransportSession | None = None

    def tracks_of(self, kind: str) -> list[GatedTrack]:
        return [track for track in self.tracks if track.kind == kind]

    @property
    def kinds(self) -> list[str]:
        return [track.kind for track in self.tracks]


class MediaSessionController:
    """Owns at most one live LocalMediaSession."""

    def __init__(
        self,
        device: CaptureDevice,
        *,
        log: SessionLog,
        constraints: MediaConstraints | None = None,
    ) -> None:
        self._device = device
        self._log = log
        self._constraints = constraints or MediaConstraints()
        self._session: LocalMediaSession | None = None

    @property
    def session(self) -> LocalMediaSession | None:
        return self._session

    async def acquire(self, constraints: MediaConstraints | None = None) -> LocalMediaSession:
        """Return the live session, opening the capture device if needed.

        Raises:
            MediaAcquisitionError: with the classified failure reason.
        """

        if self._session is not None:
            return self._session

        constraints = constraints or self._constraints
        self._log.record("media", "capture-requested", audio=constraints.audio, video=constraints.video)
        try:
            raw_tracks = await asyncio.to_thread(self._device.open, constraints)
        except OSError as exc:
            reason = classify_capture_failure(exc)
            self._log.record("media", "capture-failed", reason=reason.value, error=str(exc))
            raise MediaAcquisitionError(reason) from exc
        except FFmpegError as exc:
            self._log.record("media", "capture-failed", reason=CaptureFailureReason.UNKNOWN.value, error=str(exc))
            raise MediaAcquisitionError(CaptureFailureReason.UNKNOWN) from exc

        if not raw_tracks:
            self._log.record("media", "capture-failed", reason=CaptureFailureReason.DEVICE_NOT_FOUND.value)
            raise MediaAcquisitionError(CaptureFailureReason.DEVICE_NOT_FOUND)

        # A concurrent acquire may have won while the device was opening.
        if self._session is not None:
            for track in raw_tracks:
                track.stop()
            return self._session

        session = LocalMediaSession(tracks=[GatedTrack(track) for track in raw_tracks])
        self._session = session
        self._log.record("media", "capture-started", session=session.session_id, kinds=session.kinds)
        return session

    def attach(self, session: LocalMediaSession, transport: TransportSession) -> None:
        if session.released:
            raise ValueError("Cannot attach a released media session")
        if session.transport is transport:
            return
        for track in session.tracks:
            transport.add_track(track)
        session.transport = transport
        self._log.record("media", "attached", session=session.session_id, kinds=session.kinds)

    def release(self, session: LocalMediaSession | None = None) -> bool:
        """Stop and detach every track. Releasing twice is a no-op."""

        session = session or self._session
        if session is None or session.released:
            return False

        session.released = True
        for track in session.tracks:
            track.stop()
        detached = 0
        if session.transport is not None:
            detached = session.transport.detach_tracks(list(session.tracks))
            session.transport = None
        session.audio_muted = False
        session.video_muted = False
        if self._session is session:
            self._session = None
        self._log.record("media", "released", session=session.session_id, detached=detached)
        return True

    def toggle_audio_mute(self) -> bool | None:
        return self._toggle("audio")

    def toggle_video_mute(self) -> bool | None:
        return self._toggle("video")

    def _toggle(self, kind: str) -> bool | None:
        session = self._session
        if session is None:
            self._log.record("media", "mute-ignored", kind=kind)
            return None

        attr = f"{kind}_muted"
        muted = not getattr(session, attr)
        setattr(session, attr, muted)
        for track in session.tracks_of(kind):
            track.enabled = not muted
        self._log.record("media", "muted" if muted else "unmuted", kind=kind)
        return muted
