"""Async engine and transactional sessions for ledgersync."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ledgersync.common.config import LedgerSyncSettings, get_settings
from ledgersync.common.models import Base

# Every table must be registered on Base.metadata before create_all()
import ledgersync.ingestion.models  # noqa: F401
import ledgersync.deadletter.models  # noqa: F401
import ledgersync.milestones.models  # noqa: F401
import ledgersync.verification.models  # noqa: F401
import ledgersync.webhooks.models  # noqa: F401

logger = logging.getLogger(__name__)

# Seconds a writer waits on a locked SQLite file before raising "database is locked"
SQLITE_BUSY_TIMEOUT = 30


class DatabaseManager:
    """
    One async engine per instance.

    Each get_session() block is one transaction: it commits when the block
    exits normally and rolls back when it raises. The ingestion pipeline
    relies on this to make check, apply and record atomic.
    """

    def __init__(self, settings: LedgerSyncSettings | None = None):
        self._settings = settings or get_settings()
        self.engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    def _connect_args(self) -> dict:
        url = make_url(self._settings.db_url)
        if url.get_backend_name() == "sqlite" and url.database not in (None, "", ":memory:"):
            return {"timeout": SQLITE_BUSY_TIMEOUT}
        return {}

    async def init(self) -> None:
        self.engine = create_async_engine(
            self._settings.db_url, echo=False, connect_args=self._connect_args(),
        )
        self._session_factory = async_sessionmaker(self.engine, expire_on_commit=False)

    def _require_engine(self) -> AsyncEngine:
        if self.engine is None or self._session_factory is None:
            raise RuntimeError("DatabaseManager not initialized, call init() first")
        return self.engine

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        self._require_engine()
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def create_all(self) -> None:
        async with self._require_engine().begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def ping(self) -> bool:
        """True when the database answers a trivial query."""
        if self.engine is None:
            return False
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            logger.warning("Database ping failed: %s", exc)
            return False
        return True

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()
            self.engine = None
            self._session_factory = None
