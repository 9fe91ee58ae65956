"""Async engine for the token table lookups done by the refresh worker.

The worker never writes to Postgres. Every unit of work is a short read
transaction, so :meth:`DatabaseSessionManager.session` opens and closes the
transaction itself.
"""

import contextlib
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from indexer.main.exceptions import NotReadyException
from indexer.main.logging import get_logger

logger = get_logger(__name__)


class DatabaseSessionManager:
    def __init__(self):
        self._engine: AsyncEngine | None = None
        self._sessionmaker: async_sessionmaker[AsyncSession] | None = None

    @property
    def ready(self) -> bool:
        return self._sessionmaker is not None

    def init(self, url: str, pool_size: int = 2):
        if self._engine is not None:
            return

        # One job at a time per worker, a couple of lookups per batch
        self._engine = create_async_engine(
            url, pool_size=pool_size, max_overflow=pool_size, pool_pre_ping=True
        )
        self._sessionmaker = async_sessionmaker(self._engine, expire_on_commit=False)
        logger.debug("Token database engine created", extra={"pool_size": pool_size})

    async def close(self):
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        self._sessionmaker = None

    @contextlib.asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Yield a session inside a transaction that is closed on exit."""
        if self._sessionmaker is None:
            raise NotReadyException("Token database is not initialized")

        async with self._sessionmaker() as session, session.begin():
            yield session


sessionmanager = DatabaseSessionManager()
