"""Local capture devices.

A capture device turns constraints into raw aiortc tracks. Failures surface
as ``OSError`` subclasses (PyAV maps FFmpeg errno codes onto them), which the
media controller classifies for user-facing messages.
"""

from __future__ import annotations

import errno
import logging
from dataclasses import dataclass
from typing import Protocol

from aiortc.contrib.media import MediaPlayer
from aiortc.mediastreams import AudioStreamTrack, MediaStreamTrack, VideoStreamTrack

from config.settings import Settings, get_settings
from transport.errors import CaptureFailureReason

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class MediaConstraints:
    audio: bool = True
    video: bool = True
    video_size: str = "1280x720"
    framerate: int = 30


class CaptureDevice(Protocol):
    def open(self, constraints: MediaConstraints) -> list[MediaStreamTrack]:  # pragma: no cover - protocol stub
        ...


class PlayerCaptureDevice:
    """Camera and microphone opened through FFmpeg input devices."""

    def __init__(
        self,
        *,
        video_device: str,
        video_format: str,
        audio_device: str,
        audio_format: str,
    ) -> None:
        self._video_device = video_device
        self._video_format = video_format
        self._audio_device = audio_device
        self._audio_format = audio_format

    def open(self, constraints: MediaConstraints) -> list[MediaStreamTrack]:
        tracks: list[MediaStreamTrack] = []
        if constraints.video:
            player = MediaPlayer(
                self._video_device,
                format=self._video_format,
                options={"video_size": constraints.video_size, "framerate": str(constraints.framerate)},
            )
            if player.video is None:
                raise FileNotFoundError(errno.ENOENT, "No video stream on capture device", self._video_device)
            tracks.append(player.video)
        if constraints.audio:
            player = MediaPlayer(self._audio_device, format=self._audio_format)
            if player.audio is None:
                for track in tracks:
                    track.stop()
                raise FileNotFoundError(errno.ENOENT, "No audio stream on capture device", self._audio_device)
            tracks.append(player.audio)
        return tracks


class SyntheticCaptureDevice:
    """Silence and a flat test pattern; useful headless and in tests."""

    def open(self, constraints: MediaConstraints) -> list[MediaStreamTrack]:
        tracks: list[MediaStreamTrack] = []
        if constraints.audio:
            tracks.append(AudioStreamTrack())
        if constraints.video:
            tracks.append(VideoStreamTrack())
        return tracks


def classify_capture_failure(exc: BaseException) -> CaptureFailureReason:
    if isinstance(exc, PermissionError):
        return CaptureFailureReason.PERMISSION_DENIED
    if isinstance(exc, FileNotFoundError):
        return CaptureFailureReason.DEVICE_NOT_FOUND
    if isinstance(exc, OSError) and exc.errno in (errno.EBUSY, errno.EAGAIN):
        return CaptureFailureReason.DEVICE_BUSY
    return CaptureFailureReason.UNKNOWN


def build_capture_device(settings: Settings | None = None) -> CaptureDevice:
    settings = settings or get_settings()
    if settings.capture_backend == "synthetic":
        return SyntheticCaptureDevice()
    return PlayerCaptureDevice(
        video_device=settings.video_device,
        video_format=settings.video_format,
        audio_device=settings.audio_device,
        audio_format=settings.audio_format,
    )


def constraints_from_settings(settings: Settings | None = None) -> MediaConstraints:
    settings = settings or get_settings()
    return MediaConstraints(video_size=settings.video_size, framerate=settings.video_framerate)
