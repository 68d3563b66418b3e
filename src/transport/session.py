"""Ownership of the single peer connection and its control channel."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection
from aiortc.mediastreams import MediaStreamTrack
from pyee.asyncio import AsyncIOEventEmitter

from transport.description import SessionDescription
from transport.errors import SequencingError, TransportUnavailableError
from transport.events import SessionLog

LOGGER = logging.getLogger(__name__)


class ConnectivityState(str, Enum):
    NEW = "new"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset(
    {ConnectivityState.DISCONNECTED, ConnectivityState.FAILED, ConnectivityState.CLOSED}
)

PeerFactory = Callable[[], RTCPeerConnection]
Role = Literal["offerer", "answerer"]


@dataclass
class RemoteMedia:
    """Inbound tracks surfaced by the transport, grouped as one stream."""

    stream_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    tracks: list[MediaStreamTrack] = field(default_factory=list)

    def kinds(self) -> list[str]:
        return [track.kind for track in self.tracks]


def build_peer_connection(ice_servers: list[str]) -> RTCPeerConnection:
    servers = [RTCIceServer(urls=url) for url in ice_servers]
    return RTCPeerConnection(configuration=RTCConfiguration(iceServers=servers))


class TransportSession(AsyncIOEventEmitter):
    """Owns one peer connection, its connectivity signal and one control channel.

    Emitted events:

    - ``connectivity`` (state): after every distinct connectivity transition.
    - ``channel`` (channel): once, when the control channel is adopted.
    - ``message`` (text): every inbound control-channel frame, decoded to str.
    - ``track`` (track, remote_media): every inbound media track.
    """

    def __init__(
        self,
        peer_factory: PeerFactory,
        *,
        log: SessionLog,
        channel_label: str = "chat",
    ) -> None:
        super().__init__()
        self._peer_factory = peer_factory
        self._log = log
        self._channel_label = channel_label
        self._pc: RTCPeerConnection | None = None
        self._channel: Any = None
        self._role: Role | None = None
        self._state = ConnectivityState.NEW
        self._usable = True

        # Single-use description buffers, dropped once the transport connects.
        self.local_description: SessionDescription | None = None
        self.remote_description: SessionDescription | None = None
        self.remote_media: RemoteMedia | None = None

    @property
    def connectivity(self) -> ConnectivityState:
        return self._state

    @property
    def role(self) -> Role | None:
        return self._role

    @property
    def usable(self) -> bool:
        return self._usable

    @property
    def channel(self) -> Any:
        return self._channel

    @property
    def has_peer(self) -> bool:
        return self._pc is not None

    @property
    def peer_connection(self) -> RTCPeerConnection:
        if not self._usable:
            raise TransportUnavailableError(
                f"Transport is {self._state.value}; start a new negotiation."
            )
        if self._pc is None:
            self._pc = self._peer_factory()
            self._wire_peer(self._pc)
            self._log.record(
                "transport",
                "created",
                connection=self._pc.connectionState,
                gathering=self._pc.iceGatheringState,
            )
        return self._pc

    @property
    def can_send(self) -> bool:
        return (
            self._usable
            and self._channel is not None
            and self._channel.readyState == "open"
        )

    @property
    def has_live_media(self) -> bool:
        return self.remote_media is not None and bool(self.remote_media.tracks)

    def create_as_offerer(self) -> Any:
        """Create the control channel on this side. Only valid once per session."""

        self._claim_role("offerer")
        channel = self.peer_connection.createDataChannel(self._channel_label)
        self._log.record("transport", "channel-created", label=channel.label)
        self._adopt_channel(channel)
        return channel

    def prepare_answerer(self) -> RTCPeerConnection:
        self._claim_role("answerer")
        return self.peer_connection

    async def discard_peer(self) -> None:
        """Forget a peer connection whose negotiation failed before connecting.

        The role is released so the operator can paste another description
        into the same session.
        """

        pc, self._pc = self._pc, None
        role, self._role = self._role, None
        self._channel = None
        self.local_description = None
        self.remote_description = None
        self.remote_media = None
        if pc is not None:
            await pc.close()
        self._log.record("transport", "discarded", role=role)

    def _claim_role(self, role: Role) -> None:
        if self._role is not None:
            raise SequencingError(f"Transport already negotiated as {self._role}.")
        if not self._usable:
            raise TransportUnavailableError(
                f"Transport is {self._state.value}; start a new negotiation."
            )
        self._role = role

    def _wire_peer(self, pc: RTCPeerConnection) -> None:
        pc.on("connectionstatechange", self._on_connection_state_change)
        pc.on("datachannel", self.on_incoming_channel)
        pc.on("track", self.on_media_track)
        pc.on(
            "iceconnectionstatechange",
            lambda: self._log.record("transport", "ice-connection", state=pc.iceConnectionState),
        )
        pc.on(
            "signalingstatechange",
            lambda: self._log.record("transport", "signaling", state=pc.signalingState),
        )

    def _on_connection_state_change(self) -> None:
        if self._pc is None:
            return
        raw = self._pc.connectionState
        try:
            state = ConnectivityState(raw)
        except ValueError:
            LOGGER.warning("Ignoring unknown connection state %r", raw)
            return
        self.set_connectivity(state)

    def set_connectivity(self, state: ConnectivityState) -> None:
        if state is self._state:
            return
        if not self._usable and state is not ConnectivityState.CLOSED:
            self._log.record("transport", "connectivity-ignored", state=state.value, current=self._state.value)
            return

        previous = self._state
        self._state = state
        self._log.record("transport", "connectivity", state=state.value, previous=previous.value)

        if state is ConnectivityState.CONNECTED:
            self.local_description = None
            self.remote_description = None
        elif state.terminal:
            self._usable = False

        self.emit("connectivity", state)

    def on_incoming_channel(self, channel: Any) -> None:
        if self._channel is not None:
            self._log.record("transport", "channel-duplicate-closed", label=channel.label)
            channel.close()
            return
        self._log.record("transport", "channel-received", label=channel.label, state=channel.readyState)
        self._adopt_channel(channel)

    def _adopt_channel(self, channel: Any) -> None:
        self._channel = channel

        @channel.on("open")
        def on_open() -> None:
            self._log.record("transport", "channel-open", label=channel.label)

        @channel.on("close")
        def on_close() -> None:
            self._log.record("transport", "channel-closed", label=channel.label)

        channel.on("message", self._on_channel_message)
        self.emit("channel", channel)

    def _on_channel_message(self, message: str | bytes) -> None:
        if isinstance(message, bytes):
            message = message.decode("utf-8", errors="replace")
        self.emit("message", message)

    def on_media_track(self, track: MediaStreamTrack) -> None:
        if self.remote_media is None:
            self.remote_media = RemoteMedia()
        elif any(known is track for known in self.remote_media.tracks):
            return
        self.remote_media.tracks.append(track)
        self._log.record(
            "transport",
            "track-received",
            kind=track.kind,
            stream=self.remote_media.stream_id,
        )
        self.emit("track", track, self.remote_media)

    def clear_remote_media(self) -> None:
        self.remote_media = None

    def refresh_remote_media(self) -> int:
        """Surface live inbound tracks that no ``track`` event announced.

        aiortc announces a receiver's track once per transceiver, so a call
        placed after a hang-up reuses the receivers silently. Returns how many
        tracks were added back to ``remote_media``.
        """

        if self._pc is None:
            return 0
        added = 0
        for receiver in self._pc.getReceivers():
            track = receiver.track
            if track is None or getattr(track, "readyState", "live") == "ended":
                continue
            if self.remote_media is None or not any(track is seen for seen in self.remote_media.tracks):
                self.on_media_track(track)
                added += 1
        return added

    def send(self, text: str) -> None:
        if not self.can_send:
            raise TransportUnavailableError()
        self._channel.send(text)

    def add_track(self, track: MediaStreamTrack) -> Any:
        return self.peer_connection.addTrack(track)

    def detach_tracks(self, tracks: list[MediaStreamTrack]) -> int:
        """Stop sending the given tracks. Returns how many senders were cleared."""

        if self._pc is None:
            return 0
        cleared = 0
        for sender in self._pc.getSenders():
            if sender.track is not None and any(sender.track is t for t in tracks):
                sender.replaceTrack(None)
                cleared += 1
        return cleared

    async def close(self) -> None:
        pc, self._pc = self._pc, None
        self._usable = False
        if self._channel is not None and self._channel.readyState not in ("closing", "closed"):
            self._channel.close()
        if pc is not None:
            await pc.close()
        self.set_connectivity(ConnectivityState.CLOSED)
