"""Shared FastAPI dependencies.

Separated to avoid circular imports between route modules.
"""

from __future__ import annotations

from collections.abc import Callable
from functools import lru_cache

from fastapi import Depends

from peer.session import PeerSession


def _default_session_factory() -> PeerSession:
    from db.repository import SessionMetadataRepository

    return PeerSession(repository=SessionMetadataRepository())


class SessionHolder:
    """Keeps the single live PeerSession; a reset replaces it with a fresh one."""

    def __init__(self, factory: Callable[[], PeerSession] | None = None) -> None:
        self._factory = factory or _default_session_factory
        self._session: PeerSession | None = None

    def get(self) -> PeerSession:
        if self._session is None or self._session.closed:
            self._session = self._factory()
        return self._session

    async def reset(self) -> PeerSession:
        await self.close()
        return self.get()

    async def close(self) -> None:
        session, self._session = self._session, None
        if session is not None:
            await session.close()


@lru_cache(maxsize=1)
def _holder_factory() -> SessionHolder:
    return SessionHolder()


def get_session_holder() -> SessionHolder:
    return _holder_factory()


def get_peer_session(holder: SessionHolder = Depends(get_session_holder)) -> PeerSession:
    return holder.get()
