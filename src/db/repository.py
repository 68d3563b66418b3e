"""Repository for the best-effort session metadata cache."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import desc, select
from sqlalchemy.exc import SQLAlchemyError

from db.base import AsyncSessionFactory
from db.models import PeerSessionRecord
from transport.errors import SessionStoreError


class SessionMetadataRepository:
    """Async repository encapsulating storage operations.

    Every method raises ``SessionStoreError`` instead of leaking SQLAlchemy
    exceptions, so callers can treat the store as optional.
    """

    async def record_connected(
        self,
        session_id: str,
        *,
        role: str,
        display_name: str,
        attributes: dict[str, Any] | None = None,
    ) -> PeerSessionRecord:
        try:
            async with AsyncSessionFactory() as session:
                record = await self._get(session, session_id)
                if record is None:
                    record = PeerSessionRecord(
                        session_id=session_id,
                        role=role,
                        display_name=display_name,
                        attributes=attributes or {},
                    )
                    session.add(record)
                else:
                    record.connected_at = datetime.now(timezone.utc)
                await session.commit()
                await session.refresh(record)
                return record
        except SQLAlchemyError as exc:
            raise SessionStoreError(f"Could not record session {session_id}: {exc}") from exc

    async def record_ended(self, session_id: str, *, reason: str) -> PeerSessionRecord | None:
        try:
            async with AsyncSessionFactory() as session:
                record = await self._get(session, session_id)
                if record is None:
                    return None
                record.ended_at = datetime.now(timezone.utc)
                record.end_reason = reason
                await session.commit()
                await session.refresh(record)
                return record
        except SQLAlchemyError as exc:
            raise SessionStoreError(f"Could not close session {session_id}: {exc}") from exc

    async def list_recent(self, *, limit: int = 10) -> list[PeerSessionRecord]:
        try:
            async with AsyncSessionFactory() as session:
                query = (
                    select(PeerSessionRecord)
                    .order_by(desc(PeerSessionRecord.connected_at), desc(PeerSessionRecord.id))
                    .limit(limit)
                )
                result = await session.execute(query)
                return list(result.scalars().all())
        except SQLAlchemyError as exc:
            raise SessionStoreError(f"Could not read session history: {exc}") from exc

    async def _get(self, session, session_id: str) -> PeerSessionRecord | None:
        query = select(PeerSessionRecord).where(PeerSessionRecord.session_id == session_id)
        result = await session.execute(query)
        return result.scalar_one_or_none()
