"""Engine, session factory and declarative base for the session metadata cache."""

from __future__ import annotations

from pathlib import Path

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from config.settings import get_settings


class Base(DeclarativeBase):
    """Declarative base model."""


def resolve_database_url(url: str, data_dir: Path) -> str:
    """Place relative SQLite files inside ``data_dir``.

    ``sqlite+aiosqlite:///./data/peerlink.db`` becomes
    ``<data_dir>/peerlink.db``. Absolute paths, in-memory databases and other
    backends pass through unchanged.
    """

    parsed = make_url(url)
    if parsed.get_backend_name() != "sqlite":
        return url
    database = parsed.database or ""
    if database in ("", ":memory:") or database.startswith("file:") or Path(database).is_absolute():
        return url
    located = (data_dir / Path(database).name).resolve()
    return parsed.set(database=located.as_posix()).render_as_string(hide_password=False)


_settings = get_settings()
engine = create_async_engine(
    resolve_database_url(_settings.database_url, _settings.data_dir),
    echo=False,
    future=True,
)
AsyncSessionFactory = async_sessionmaker(
    engine,
    expire_on_commit=False,
    autoflush=False,
    autocommit=False,
)


async def init_db() -> None:
    """Create the ``peer_sessions`` table unless migrations own the schema."""

    if not get_settings().auto_create_db_schema:
        return

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
