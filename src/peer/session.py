"""One peer relationship: transport, negotiation, call signaling and media.

A ``PeerSession`` is the only owner of its transport and control channel.
Starting over means closing it and constructing a new one.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from typing import TYPE_CHECKING, Any

from calls.capture import CaptureDevice, build_capture_device, constraints_from_settings
from calls.envelope import SignalingEnvelope, decode_frame
from calls.media import LocalMediaSession, MediaSessionController
from calls.signaling import CallSignaling, CallState
from config.settings import Settings, get_settings
from transport.description import DescriptionType, SessionDescription
from transport.errors import PeerLinkError, SessionStoreError
from transport.events import SessionLog
from transport.negotiation import NegotiationExchange
from transport.session import ConnectivityState, PeerFactory, TransportSession, build_peer_connection

if TYPE_CHECKING:  # pragma: no cover
    from db.repository import SessionMetadataRepository

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ChatMessage:
    text: str
    own: bool
    raw: bool = False
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class PeerSession:
    def __init__(
        self,
        *,
        settings: Settings | None = None,
        peer_factory: PeerFactory | None = None,
        capture_device: CaptureDevice | None = None,
        repository: SessionMetadataRepository | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self.session_id = uuid.uuid4().hex
        self.log = SessionLog(limit=self._settings.event_log_limit)

        factory = peer_factory or partial(build_peer_connection, list(self._settings.ice_servers))
        self.transport = TransportSession(
            factory,
            log=self.log,
            channel_label=self._settings.control_channel_label,
        )
        self.negotiation = NegotiationExchange(
            self.transport,
            log=self.log,
            gathering_timeout=self._settings.gathering_timeout_seconds,
        )
        self.media = MediaSessionController(
            capture_device or build_capture_device(self._settings),
            log=self.log,
            constraints=constraints_from_settings(self._settings),
        )
        self.calls = CallSignaling(
            self.transport,
            self.negotiation,
            self.media,
            log=self.log,
            display_name=self._settings.display_name,
            on_chat=self._record_inbound_chat,
        )
        self.chat: deque[ChatMessage] = deque(maxlen=self._settings.chat_history_limit)

        self._repository = repository if self._settings.persist_session_metadata else None
        self._inbox: asyncio.Queue[tuple[str, Any]] | None = None
        self._dispatcher: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()
        self._closed = False

        self.transport.on("message", self._on_frame)
        self.transport.on("connectivity", self._on_connectivity)

    @property
    def closed(self) -> bool:
        return self._closed

    # Manual negotiation

    async def create_offer(self) -> SessionDescription:
        try:
            return await self.negotiation.create_offer()
        except PeerLinkError as exc:
            self._log_failure("create_offer", exc)
            raise

    async def apply_remote(self, text: str) -> SessionDescription | None:
        """Consume a pasted description of unknown provenance.

        Offers start an inbound negotiation and return the local answer to
        paste back. Answers complete an outstanding offer and return None.
        """

        operation = "apply_remote"
        try:
            remote = SessionDescription.from_wire(text)
            self.log.record("negotiation", "remote-description", type=remote.type.value)
            if remote.type is DescriptionType.OFFER:
                operation = "accept_offer_and_create_answer"
                return await self.negotiation.accept_offer_and_create_answer(remote)
            operation = "apply_answer"
            await self.negotiation.apply_answer(remote)
            return None
        except PeerLinkError as exc:
            self._log_failure(operation, exc)
            raise

    # Calls, media and chat

    def start_call(self) -> bool:
        return self.calls.start_call()

    async def accept_call(self) -> None:
        try:
            await self.calls.accept_call()
        except PeerLinkError as exc:
            self._log_failure("accept_call", exc)
            raise

    def decline_call(self) -> None:
        self.calls.decline_call()

    def end_call(self) -> bool:
        return self.calls.end_call()

    async def preview_media(self) -> LocalMediaSession:
        try:
            return await self.media.acquire()
        except PeerLinkError as exc:
            self._log_failure("preview_media", exc)
            raise

    def toggle_audio_mute(self) -> bool | None:
        return self.media.toggle_audio_mute()

    def toggle_video_mute(self) -> bool | None:
        return self.media.toggle_video_mute()

    def send_chat(self, text: str) -> ChatMessage | None:
        text = text.strip()
        if not text:
            return None
        try:
            self.transport.send(SignalingEnvelope.chat(text).to_frame())
        except PeerLinkError as exc:
            self._log_failure("send_chat", exc)
            raise
        message = ChatMessage(text=text, own=True)
        self.chat.append(message)
        return message

    def _record_inbound_chat(self, text: str, raw: bool) -> None:
        self.chat.append(ChatMessage(text=text, own=False, raw=raw))
        self.log.record("chat", "received", raw=raw, length=len(text))

    # Event plumbing

    def _on_frame(self, text: str) -> None:
        self._enqueue(("frame", text))

    def _on_connectivity(self, state: ConnectivityState) -> None:
        self._enqueue(("connectivity", state))
        if state is ConnectivityState.CONNECTED:
            self._spawn(self._persist_connected())
        elif state.terminal:
            self._spawn(self._persist_ended(state.value))

    def _enqueue(self, item: tuple[str, Any]) -> None:
        if self._closed and item[0] == "frame":
            return
        if self._inbox is None:
            self._inbox = asyncio.Queue()
            self._dispatcher = asyncio.get_running_loop().create_task(self._dispatch_loop(self._inbox))
        self._inbox.put_nowait(item)

    async def _dispatch_loop(self, inbox: asyncio.Queue[tuple[str, Any]]) -> None:
        # Strict arrival order: one item is fully handled before the next.
        while True:
            kind, payload = await inbox.get()
            try:
                if kind == "frame":
                    await self.calls.handle_envelope(decode_frame(payload))
                else:
                    self.calls.handle_connectivity(payload)
            except Exception:
                LOGGER.exception(
                    "Handling %s failed (call=%s, connectivity=%s)",
                    kind,
                    self.calls.state.value,
                    self.transport.connectivity.value,
                )
            finally:
                inbox.task_done()

    async def drain(self) -> None:
        """Wait until every inbound frame received so far has been handled."""

        if self._inbox is not None:
            await self._inbox.join()

    def _spawn(self, coro) -> None:
        if self._repository is None:
            coro.close()
            return
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _persist_connected(self) -> None:
        try:
            await self._repository.record_connected(
                self.session_id,
                role=self.transport.role or "unknown",
                display_name=self._settings.display_name,
                attributes={"channel_label": self._settings.control_channel_label},
            )
        except SessionStoreError as exc:
            LOGGER.warning("Session metadata not cached: %s", exc.detail)

    async def _persist_ended(self, reason: str) -> None:
        try:
            await self._repository.record_ended(self.session_id, reason=reason)
        except SessionStoreError as exc:
            LOGGER.warning("Session end not cached: %s", exc.detail)

    def _log_failure(self, operation: str, exc: PeerLinkError) -> None:
        self.log.record(
            "session",
            "operation-failed",
            operation=operation,
            error=exc.detail,
            call=self.calls.state.value,
            connectivity=self.transport.connectivity.value,
        )

    # Status and teardown

    def status(self) -> dict[str, Any]:
        media = self.media.session
        remote = self.transport.remote_media
        gathering = self.negotiation.gathering_state
        return {
            "session_id": self.session_id,
            "role": self.transport.role,
            "connectivity": self.transport.connectivity.value,
            "usable": self.transport.usable,
            "gathering": gathering.value if gathering is not None else None,
            "call": self.calls.state.value,
            "incoming_from": self.calls.incoming_from,
            "has_live_media": self.calls.has_live_media,
            "audio_muted": media.audio_muted if media else False,
            "video_muted": media.video_muted if media else False,
            "local_tracks": media.kinds if media else [],
            "remote_tracks": remote.kinds() if remote else [],
            "outstanding_offer": self.negotiation.outstanding_offer is not None,
        }

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self.calls.state is not CallState.IDLE:
            self.calls.end_call()
        self.media.release()
        await self.transport.close()

        if self._dispatcher is not None:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        self.log.record("session", "closed", session=self.session_id)
