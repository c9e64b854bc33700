from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlmodel import SQLModel

from . import models  # noqa: F401  registers tables on SQLModel.metadata


def normalize_database_url(database_url: str) -> str:
    """Map plain ``sqlite://`` and ``postgres://`` URLs onto async drivers."""
    if database_url.startswith("sqlite://") and "+" not in database_url.split("://")[0]:
        return "sqlite+aiosqlite://" + database_url[len("sqlite://"):]
    for prefix in ("postgres://", "postgresql://"):
        if database_url.startswith(prefix):
            return "postgresql+asyncpg://" + database_url[len(prefix):]
    return database_url


class Database:
    """Async engine and session factory for the SQL repository."""

    def __init__(self, database_url: str) -> None:
        self.url = normalize_database_url(database_url)
        connect_args = (
            {"check_same_thread": False} if self.url.startswith("sqlite") else {}
        )
        self.engine = create_async_engine(self.url, echo=False, connect_args=connect_args)

    async def init_db(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with AsyncSession(self.engine, expire_on_commit=False) as session:
            yield session

    async def dispose(self) -> None:
        await self.engine.dispose()
