"""Candidate gathering tracking for one local description generation."""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import TYPE_CHECKING

from transport.errors import NegotiationError

if TYPE_CHECKING:  # pragma: no cover
    from aiortc import RTCPeerConnection

    from transport.events import SessionLog


class CandidateGatheringState(str, Enum):
    GATHERING = "gathering"
    COMPLETE = "complete"


class GatheringWatch:
    """Future that resolves exactly once when gathering reaches `complete`.

    Create it right after ``setLocalDescription``: if the connection already
    finished gathering it resolves immediately, otherwise it listens for
    ``icegatheringstatechange`` and detaches itself on completion. Later
    events from the connection never move the state backwards.
    """

    def __init__(self, pc: RTCPeerConnection, *, generation: int, log: SessionLog | None = None) -> None:
        self._pc = pc
        self._log = log
        self.generation = generation
        self.state = CandidateGatheringState.GATHERING
        self.transitions: list[CandidateGatheringState] = [CandidateGatheringState.GATHERING]
        self._done: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._listening = False

        if self._pc.iceGatheringState == "complete":
            self._complete()
        else:
            self._pc.on("icegatheringstatechange", self._on_state_change)
            self._listening = True

    @property
    def complete(self) -> bool:
        return self.state is CandidateGatheringState.COMPLETE

    def _on_state_change(self) -> None:
        if self._pc.iceGatheringState == "complete":
            self._complete()

    def _complete(self) -> None:
        if self.state is CandidateGatheringState.COMPLETE:
            return
        self.state = CandidateGatheringState.COMPLETE
        self.transitions.append(CandidateGatheringState.COMPLETE)
        self._detach()
        if not self._done.done():
            self._done.set_result(None)
        if self._log is not None:
            self._log.record("negotiation", "gathering-complete", generation=self.generation)

    def _detach(self) -> None:
        if self._listening:
            self._pc.remove_listener("icegatheringstatechange", self._on_state_change)
            self._listening = False

    async def wait(self, timeout: float | None = None) -> None:
        try:
            await asyncio.wait_for(asyncio.shield(self._done), timeout)
        except asyncio.TimeoutError as exc:
            self._detach()
            raise NegotiationError(
                f"Candidate gathering did not complete within {timeout:.1f}s"
            ) from exc
