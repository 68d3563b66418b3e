"""Offer/answer production and consumption.

Two flavours of negotiation run over the same peer connection:

* the manual exchange, where finalized descriptions are copied between
  operators out of band and the control channel is bootstrapped;
* in-band renegotiation, where a call adds media and the resulting offer and
  answer travel over the already-open control channel.
"""

from __future__ import annotations

import logging

from aiortc.exceptions import InvalidAccessError, InvalidStateError, OperationError

from transport.description import DescriptionType, SessionDescription
from transport.errors import NegotiationError, SequencingError
from transport.events import SessionLog
from transport.gathering import CandidateGatheringState, GatheringWatch
from transport.session import ConnectivityState, TransportSession

LOGGER = logging.getLogger(__name__)

# What aiortc raises for descriptions it cannot parse or apply.
_REJECTED = (ValueError, InvalidAccessError, InvalidStateError, OperationError)


class NegotiationExchange:
    def __init__(
        self,
        transport: TransportSession,
        *,
        log: SessionLog,
        gathering_timeout: float = 30.0,
    ) -> None:
        self._transport = transport
        self._log = log
        self._gathering_timeout = gathering_timeout
        self._generation = 0
        self._watch: GatheringWatch | None = None
        self._outstanding_offer: SessionDescription | None = None
        self._offer_sent = False

    @property
    def gathering_state(self) -> CandidateGatheringState | None:
        return self._watch.state if self._watch is not None else None

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def outstanding_offer(self) -> SessionDescription | None:
        return self._outstanding_offer

    async def create_offer(self) -> SessionDescription:
        """Open the control channel, generate an offer and wait for gathering."""

        if self._offer_sent:
            raise SequencingError("An offer was already created for this session; start a new session.")

        self._transport.create_as_offerer()
        self._offer_sent = True
        pc = self._transport.peer_connection
        offer = await pc.createOffer()
        await pc.setLocalDescription(offer)
        description = await self._finalize_local("offer")

        self._transport.local_description = description
        self._outstanding_offer = description
        return description

    async def accept_offer_and_create_answer(self, remote: SessionDescription) -> SessionDescription:
        if remote.type is not DescriptionType.OFFER:
            raise NegotiationError(f"Expected an offer, got {remote.type.value}.")
        if self._transport.connectivity is ConnectivityState.CONNECTED:
            raise SequencingError("Transport is already connected; an offer cannot be applied.")

        pc = self._transport.prepare_answerer()
        self._log.record("negotiation", "remote-offer", video=remote.has_video)
        try:
            await pc.setRemoteDescription(remote.to_rtc())
            self._transport.remote_description = remote
            answer = await pc.createAnswer()
            await pc.setLocalDescription(answer)
            description = await self._finalize_local("answer")
        except NegotiationError:
            await self._abandon_answer()
            raise
        except _REJECTED as exc:
            await self._abandon_answer()
            raise NegotiationError(f"Offer could not be applied: {exc}") from exc

        self._transport.local_description = description
        return description

    async def apply_answer(self, remote: SessionDescription) -> None:
        if remote.type is not DescriptionType.ANSWER:
            raise NegotiationError(f"Expected an answer, got {remote.type.value}.")
        if self._outstanding_offer is None:
            raise SequencingError("No outstanding offer to apply this answer to.")

        try:
            await self._transport.peer_connection.setRemoteDescription(remote.to_rtc())
        except _REJECTED as exc:
            # The offer stays outstanding so a corrected answer can still be pasted.
            raise NegotiationError(f"Answer could not be applied: {exc}") from exc
        self._outstanding_offer = None
        if self._transport.connectivity is not ConnectivityState.CONNECTED:
            self._transport.remote_description = remote
        self._log.record("negotiation", "remote-answer-applied")

    async def create_renegotiation_offer(self) -> SessionDescription:
        """Offer carrying newly attached tracks, sent over the control channel."""

        pc = self._transport.peer_connection
        offer = await pc.createOffer()
        await pc.setLocalDescription(offer)
        return await self._finalize_local("renegotiation-offer")

    async def answer_renegotiation(self, remote: SessionDescription) -> SessionDescription:
        if remote.type is not DescriptionType.OFFER:
            raise NegotiationError(f"Expected a call offer, got {remote.type.value}.")
        pc = self._transport.peer_connection
        await pc.setRemoteDescription(remote.to_rtc())
        answer = await pc.createAnswer()
        await pc.setLocalDescription(answer)
        return await self._finalize_local("renegotiation-answer")

    async def apply_renegotiation_answer(self, remote: SessionDescription) -> None:
        if remote.type is not DescriptionType.ANSWER:
            raise NegotiationError(f"Expected a call answer, got {remote.type.value}.")
        await self._transport.peer_connection.setRemoteDescription(remote.to_rtc())
        self._log.record("negotiation", "renegotiation-answer-applied")

    async def _abandon_answer(self) -> None:
        self._watch = None
        await self._transport.discard_peer()
        self._log.record("negotiation", "remote-offer-rejected")

    async def _finalize_local(self, purpose: str) -> SessionDescription:
        self._generation += 1
        pc = self._transport.peer_connection
        self._log.record("negotiation", "local-description", purpose=purpose, generation=self._generation)
        self._watch = GatheringWatch(pc, generation=self._generation, log=self._log)
        await self._watch.wait(self._gathering_timeout)

        local = pc.localDescription
        if local is None:
            raise NegotiationError("Peer connection has no local description after gathering.")
        return SessionDescription.from_rtc(local)
