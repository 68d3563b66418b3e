"""Call lifecycle protocol carried over the control channel.

The call state is driven by control-channel envelopes and local actions, not
by the transport's own connectivity. The only coupling to connectivity is that
calls may only start while connected and that a failing transport implicitly
ends any call in progress.

Every step that suspends (capture, renegotiation) remembers the call token it
started with; if the call was ended meanwhile the token no longer matches and
the step's result is discarded.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Literal

from calls.envelope import MessageType, SignalingEnvelope
from calls.media import MediaSessionController
from transport.errors import MediaAcquisitionError, SequencingError, TransportUnavailableError
from transport.events import SessionLog
from transport.negotiation import NegotiationExchange
from transport.session import ConnectivityState, TransportSession

LOGGER = logging.getLogger(__name__)


class CallState(str, Enum):
    IDLE = "idle"
    CALLING = "calling"
    RINGING = "ringing"
    CONNECTING = "connecting"
    ACTIVE = "active"
    ENDING = "ending"


CallRole = Literal["caller", "callee"]
ChatHandler = Callable[[str, bool], None]


class CallSignaling:
    def __init__(
        self,
        transport: TransportSession,
        negotiation: NegotiationExchange,
        media: MediaSessionController,
        *,
        log: SessionLog,
        display_name: str = "me",
        on_chat: ChatHandler | None = None,
    ) -> None:
        self._transport = transport
        self._negotiation = negotiation
        self._media = media
        self._log = log
        self._display_name = display_name
        self._on_chat = on_chat
        self._state = CallState.IDLE
        self._role: CallRole | None = None
        self._token = 0
        self.incoming_from: str | None = None

        self._handlers: dict[MessageType, Callable[[SignalingEnvelope], Awaitable[None]]] = {
            MessageType.CALL_REQUEST: self._on_call_request,
            MessageType.CALL_ACCEPT: self._on_call_accept,
            MessageType.CALL_DECLINE: self._on_call_decline,
            MessageType.CALL_OFFER: self._on_call_offer,
            MessageType.CALL_ANSWER: self._on_call_answer,
            MessageType.CALL_END: self._on_call_end,
            MessageType.CHAT: self._on_chat_message,
        }

    @property
    def state(self) -> CallState:
        return self._state

    @property
    def role(self) -> CallRole | None:
        return self._role

    @property
    def has_live_media(self) -> bool:
        return self._state is CallState.ACTIVE and self._transport.has_live_media

    # Local actions

    def start_call(self) -> bool:
        """Ring the peer. Returns False (no-op) unless connected and idle."""

        if self._transport.connectivity is not ConnectivityState.CONNECTED:
            self._log.record("call", "start-ignored", reason="not-connected",
                             connectivity=self._transport.connectivity.value)
            return False
        if self._state is not CallState.IDLE:
            self._log.record("call", "start-ignored", reason="busy", state=self._state.value)
            return False

        self._token += 1
        self._role = "caller"
        self._set_state(CallState.CALLING)
        try:
            self._send(SignalingEnvelope.call_request(self._display_name))
        except TransportUnavailableError:
            self._reset("send-failed")
            raise
        return True

    async def accept_call(self) -> None:
        if self._state is not CallState.RINGING:
            raise SequencingError(f"No incoming call to accept (call is {self._state.value}).")

        token = self._token
        self._set_state(CallState.CONNECTING)
        try:
            session = await self._media.acquire()
        except MediaAcquisitionError as exc:
            if token == self._token:
                self._log.record("call", "accept-failed", reason=exc.reason.value, state=self._state.value)
                self._try_send(SignalingEnvelope.call_decline(self._display_name))
                self._reset("media-failure")
            raise

        if token != self._token:
            self._log.record("call", "accept-discarded")
            self._media.release(session)
            return

        try:
            self._send(SignalingEnvelope.call_accept(self._display_name))
        except TransportUnavailableError:
            self._reset("send-failed")
            raise

    def decline_call(self) -> None:
        if self._state is not CallState.RINGING:
            raise SequencingError(f"No incoming call to decline (call is {self._state.value}).")
        self._try_send(SignalingEnvelope.call_decline(self._display_name))
        self._reset("declined-locally")

    def end_call(self) -> bool:
        """Hang up. Ending while idle (or already ending) is a no-op."""

        if self._state in (CallState.IDLE, CallState.ENDING):
            self._log.record("call", "end-ignored", state=self._state.value)
            return False
        if self._state is CallState.RINGING:
            self.decline_call()
            return True
        self._teardown(notify_peer=True, reason="ended-locally")
        return True

    # Inbound

    async def handle_envelope(self, envelope: SignalingEnvelope) -> None:
        if envelope.type is not MessageType.CHAT:
            self._log.record("call", "received", type=envelope.type.value, state=self._state.value)
        await self._handlers[envelope.type](envelope)

    def handle_connectivity(self, state: ConnectivityState) -> None:
        if state.terminal and self._state is not CallState.IDLE:
            self._teardown(notify_peer=False, reason=f"transport-{state.value}")

    async def _on_call_request(self, envelope: SignalingEnvelope) -> None:
        if self._state is not CallState.IDLE:
            self._log.record("call", "request-ignored", reason="busy", state=self._state.value)
            return
        self._token += 1
        self._role = "callee"
        self.incoming_from = envelope.sender
        self._set_state(CallState.RINGING, sender=envelope.sender)

    async def _on_call_accept(self, envelope: SignalingEnvelope) -> None:
        if self._state is not CallState.CALLING:
            self._ignored(envelope)
            return

        token = self._token
        self._set_state(CallState.CONNECTING)
        try:
            session = await self._media.acquire()
        except MediaAcquisitionError as exc:
            if token == self._token:
                self._log.record("call", "media-failed", reason=exc.reason.value, state=self._state.value)
                self._try_send(SignalingEnvelope.call_decline(self._display_name))
                self._reset("media-failure")
            return

        if token != self._token:
            self._log.record("call", "offer-discarded", step="capture")
            self._media.release(session)
            return

        try:
            self._media.attach(session, self._transport)
            offer = await self._negotiation.create_renegotiation_offer()
        except Exception:
            if token != self._token:
                return
            LOGGER.exception("Call renegotiation offer failed (state=%s)", self._state.value)
            self._teardown(notify_peer=True, reason="renegotiation-failed")
            return

        if token != self._token:
            self._log.record("call", "offer-discarded", step="renegotiation")
            return
        self._try_send(SignalingEnvelope.call_offer(offer))

    async def _on_call_decline(self, envelope: SignalingEnvelope) -> None:
        if self._state not in (CallState.CALLING, CallState.CONNECTING):
            self._ignored(envelope)
            return
        self._reset("declined-by-peer")

    async def _on_call_offer(self, envelope: SignalingEnvelope) -> None:
        if self._state is not CallState.CONNECTING or self._role != "callee" or envelope.sdp is None:
            self._ignored(envelope)
            return

        token = self._token
        try:
            session = await self._media.acquire()
            if token != self._token:
                self._log.record("call", "answer-discarded", step="capture")
                return
            self._media.attach(session, self._transport)
            answer = await self._negotiation.answer_renegotiation(envelope.sdp)
        except Exception:
            if token != self._token:
                return
            LOGGER.exception("Answering call offer failed (state=%s)", self._state.value)
            self._try_send(SignalingEnvelope.call_decline(self._display_name))
            self._reset("renegotiation-failed")
            return

        if token != self._token:
            self._log.record("call", "answer-discarded", step="renegotiation")
            return
        # Receivers reused from an earlier call announce no new track.
        self._transport.refresh_remote_media()
        self._try_send(SignalingEnvelope.call_answer(answer))
        self._set_state(CallState.ACTIVE)

    async def _on_call_answer(self, envelope: SignalingEnvelope) -> None:
        if self._state is not CallState.CONNECTING or self._role != "caller" or envelope.sdp is None:
            self._ignored(envelope)
            return

        token = self._token
        try:
            await self._negotiation.apply_renegotiation_answer(envelope.sdp)
        except Exception:
            if token != self._token:
                return
            LOGGER.exception("Applying call answer failed (state=%s)", self._state.value)
            self._teardown(notify_peer=True, reason="renegotiation-failed")
            return

        if token != self._token:
            self._log.record("call", "answer-discarded", step="apply")
            return
        self._transport.refresh_remote_media()
        self._set_state(CallState.ACTIVE)

    async def _on_call_end(self, envelope: SignalingEnvelope) -> None:
        if self._state in (CallState.IDLE, CallState.ENDING):
            self._ignored(envelope)
            return
        self._teardown(notify_peer=False, reason="ended-by-peer")

    async def _on_chat_message(self, envelope: SignalingEnvelope) -> None:
        if self._on_chat is not None:
            self._on_chat(envelope.message or "", envelope.fallback)

    # Internals

    def _ignored(self, envelope: SignalingEnvelope) -> None:
        self._log.record("call", "message-ignored", type=envelope.type.value, state=self._state.value)

    def _set_state(self, state: CallState, **detail) -> None:
        if state is self._state:
            return
        previous = self._state
        self._state = state
        self._log.record("call", "state", state=state.value, previous=previous.value, **detail)

    def _send(self, envelope: SignalingEnvelope) -> None:
        self._transport.send(envelope.to_frame())
        self._log.record("call", "sent", type=envelope.type.value)

    def _try_send(self, envelope: SignalingEnvelope) -> bool:
        if not self._transport.can_send:
            self._log.record("call", "send-skipped", type=envelope.type.value, state=self._state.value)
            return False
        self._send(envelope)
        return True

    def _teardown(self, *, notify_peer: bool, reason: str) -> None:
        self._set_state(CallState.ENDING, reason=reason)
        if notify_peer:
            self._try_send(SignalingEnvelope.call_end(self._display_name))
        self._reset(reason)

    def _reset(self, reason: str) -> None:
        self._token += 1
        self._media.release()
        self._transport.clear_remote_media()
        self._role = None
        self.incoming_from = None
        self._set_state(CallState.IDLE, reason=reason)
