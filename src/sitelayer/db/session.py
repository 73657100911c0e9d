from __future__ import annotations

from pathlib import Path

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool


def is_memory_url(url: str) -> bool:
    parsed = make_url(url)
    return parsed.get_backend_name() == "sqlite" and parsed.database in (None, "", ":memory:")


def create_engine(url: str, *, echo: bool = False) -> AsyncEngine:
    """Create an async engine for the state database.

    SQLite file databases get their parent directory created. In-memory
    SQLite shares one connection so every session sees the same tables.
    """

    parsed = make_url(url)
    if parsed.get_backend_name() != "sqlite":
        return create_async_engine(url, echo=echo, future=True, pool_pre_ping=True)

    if is_memory_url(url):
        return create_async_engine(
            url,
            echo=echo,
            future=True,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )

    Path(parsed.database).expanduser().parent.mkdir(parents=True, exist_ok=True)
    return create_async_engine(url, echo=echo, future=True, connect_args={"timeout": 30})


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)
