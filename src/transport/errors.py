"""Domain-specific exceptions for negotiation, signaling and capture.

These exceptions are safe to import from API layers without pulling in aiortc.
"""

from __future__ import annotations

from enum import Enum


class PeerLinkError(Exception):
    status_code: int = 500
    default_detail: str = "Peer session error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail


class NegotiationError(PeerLinkError):
    """A session description could not be decoded, applied or finalized."""

    status_code = 400
    default_detail = "Invalid session description."


class SequencingError(PeerLinkError):
    """An operation arrived in a state where it is not allowed."""

    status_code = 409
    default_detail = "Operation not valid in the current negotiation state."


class TransportUnavailableError(PeerLinkError):
    status_code = 409
    default_detail = "Control channel is not open."


class CaptureFailureReason(str, Enum):
    PERMISSION_DENIED = "permission_denied"
    DEVICE_NOT_FOUND = "device_not_found"
    DEVICE_BUSY = "device_busy"
    UNKNOWN = "unknown"


_CAPTURE_MESSAGES = {
    CaptureFailureReason.PERMISSION_DENIED: "Access to camera or microphone was denied.",
    CaptureFailureReason.DEVICE_NOT_FOUND: "No camera or microphone found. Please connect a device.",
    CaptureFailureReason.DEVICE_BUSY: "Camera or microphone is already in use by another application.",
    CaptureFailureReason.UNKNOWN: "Could not start camera or microphone.",
}


class MediaAcquisitionError(PeerLinkError):
    status_code = 503
    default_detail = _CAPTURE_MESSAGES[CaptureFailureReason.UNKNOWN]

    def __init__(self, reason: CaptureFailureReason, detail: str | None = None) -> None:
        super().__init__(detail or _CAPTURE_MESSAGES[reason])
        self.reason = reason


class SessionStoreError(PeerLinkError):
    status_code = 503
    default_detail = "Session metadata store unavailable."
