"""
WorkflowDatabase — the async engine behind SqlWorkflowStore.

DatabaseConfig.url uses the plain scheme; the async driver is filled in:
  postgresql://  → asyncpg
  mysql://       → aiomysql
  sqlite://      → aiosqlite
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config.settings import DatabaseConfig
from database.models import Base

logger = structlog.get_logger()

_ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "mysql": "mysql+aiomysql",
    "mysql+pymysql": "mysql+aiomysql",
    "sqlite": "sqlite+aiosqlite",
}


def _to_async_url(url: str) -> str:
    scheme, sep, rest = url.partition("://")
    if not sep:
        return url
    return f"{_ASYNC_DRIVERS.get(scheme, scheme)}://{rest}"


class WorkflowDatabase:
    """
    One engine and its session factory, owned by a single SqlWorkflowStore.
    Each transaction() block commits on exit and rolls back on error.
    """

    def __init__(self, url: str, echo: bool = False, pool_size: int = 10, max_overflow: int = 20):
        self.url = _to_async_url(url)
        options: dict = {"echo": echo}
        if self.url.startswith("sqlite"):
            options["connect_args"] = {"check_same_thread": False}
        else:
            options.update(pool_size=pool_size, max_overflow=max_overflow,
                           pool_recycle=1800, pool_pre_ping=True)
        self.engine = create_async_engine(self.url, **options)
        self._sessions = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)
        logger.info("database_engine_created", dialect=self.dialect, url=self.url.split("@")[-1])

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> WorkflowDatabase:
        return cls(config.url, echo=config.echo,
                   pool_size=config.pool_size, max_overflow=config.max_overflow)

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        async with self._sessions() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def create_tables(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("workflow_tables_ready", dialect=self.dialect, tables=sorted(Base.metadata.tables))

    async def dispose(self):
        await self.engine.dispose()
        logger.info("database_closed", dialect=self.dialect)
