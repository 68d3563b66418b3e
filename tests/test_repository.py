from __future__ import annotations

import asyncio
import uuid

import pytest
from sqlalchemy.exc import SQLAlchemyError

import db.repository as repository_module
from db.base import engine, init_db, resolve_database_url
from db.repository import SessionMetadataRepository
from transport.errors import SessionStoreError


def _run(coro_fn):
    async def wrapper():
        await init_db()
        try:
            return await coro_fn()
        finally:
            await engine.dispose()

    return asyncio.run(wrapper())


def test_connected_then_ended_round_trip():
    session_id = uuid.uuid4().hex
    repo = SessionMetadataRepository()

    async def scenario():
        created = await repo.record_connected(
            session_id,
            role="offerer",
            display_name="alice",
            attributes={"channel_label": "chat"},
        )
        assert created.ended_at is None
        ended = await repo.record_ended(session_id, reason="closed")
        return created, ended

    created, ended = _run(scenario)

    assert created.session_id == session_id
    assert created.attributes == {"channel_label": "chat"}
    assert ended.end_reason == "closed"
    assert ended.ended_at is not None


def test_reconnecting_same_session_updates_single_row():
    session_id = uuid.uuid4().hex
    repo = SessionMetadataRepository()

    async def scenario():
        first = await repo.record_connected(session_id, role="answerer", display_name="bob")
        second = await repo.record_connected(session_id, role="answerer", display_name="bob")
        return first, second

    first, second = _run(scenario)

    assert first.id == second.id
    assert second.connected_at >= first.connected_at


def test_ending_unknown_session_returns_none():
    repo = SessionMetadataRepository()

    async def scenario():
        return await repo.record_ended(uuid.uuid4().hex, reason="failed")

    assert _run(scenario) is None


def test_list_recent_returns_newest_first():
    older, newer = uuid.uuid4().hex, uuid.uuid4().hex
    repo = SessionMetadataRepository()

    async def scenario():
        await repo.record_connected(older, role="offerer", display_name="alice")
        await repo.record_connected(newer, role="answerer", display_name="bob")
        return await repo.list_recent(limit=2)

    records = _run(scenario)

    assert [r.session_id for r in records] == [newer, older]


def test_storage_errors_are_wrapped(monkeypatch):
    def broken_factory():
        raise SQLAlchemyError("database is locked")

    monkeypatch.setattr(repository_module, "AsyncSessionFactory", broken_factory)
    repo = SessionMetadataRepository()

    with pytest.raises(SessionStoreError) as excinfo:
        asyncio.run(repo.list_recent())
    assert excinfo.value.status_code == 503
    assert "database is locked" in excinfo.value.detail


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        ("sqlite+aiosqlite:///./data/peerlink.db", "sqlite+aiosqlite:///{data}/peerlink.db"),
        ("sqlite+aiosqlite:///cache.db", "sqlite+aiosqlite:///{data}/cache.db"),
        ("sqlite+aiosqlite:////var/lib/peerlink/sessions.db", "sqlite+aiosqlite:////var/lib/peerlink/sessions.db"),
        ("sqlite+aiosqlite:///:memory:", "sqlite+aiosqlite:///:memory:"),
        ("postgresql+asyncpg://user:secret@db/peerlink", "postgresql+asyncpg://user:secret@db/peerlink"),
    ],
)
def test_relative_sqlite_files_live_in_the_data_dir(tmp_path, url, expected):
    data = tmp_path.resolve().as_posix()

    assert resolve_database_url(url, tmp_path) == expected.format(data=data)
