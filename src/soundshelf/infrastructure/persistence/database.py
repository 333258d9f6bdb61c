"""Database session management."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from soundshelf.config import Settings

logger = logging.getLogger(__name__)


class Database:
    """Database connection and session manager."""

    def __init__(self, settings: Settings) -> None:
        """Initialize database with settings."""
        self.settings = settings

        engine_kwargs: dict[str, Any] = {
            "echo": settings.database.echo,
            "pool_pre_ping": settings.database.pool_pre_ping,
        }

        # Only apply pool settings for PostgreSQL
        if "postgresql" in settings.database.url:
            engine_kwargs.update(
                {
                    "pool_size": settings.database.pool_size,
                    "max_overflow": settings.database.max_overflow,
                    "pool_timeout": settings.database.pool_timeout,
                    "pool_recycle": settings.database.pool_recycle,
                }
            )
        elif "sqlite" in settings.database.url:
            engine_kwargs.update(
                {
                    "connect_args": {
                        "check_same_thread": False,
                        "timeout": 30,  # Wait up to 30s for lock
                    }
                }
            )

        self._engine = create_async_engine(
            settings.database.url,
            **engine_kwargs,
        )

        if "sqlite" in settings.database.url:
            self._configure_sqlite()

        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    # Hey future me - the sync engine wraps EVERY item in session.begin_nested() (SAVEPOINT) so
    # one broken track doesn't roll back its whole batch. pysqlite's own transaction handling
    # breaks SAVEPOINTs, so we switch it off and emit BEGIN ourselves. Don't remove the "begin"
    # listener or nested transactions silently stop being nested!
    # Listen up: WAL gives concurrent READERS, never a second writer. A deferred BEGIN takes a
    # snapshot on its first SELECT, and if another connection (job progress relay) commits before
    # that transaction writes, the write fails with an immediate "database is locked" that the
    # busy timeout does not cover. BEGIN IMMEDIATE takes the write lock up front, so the other
    # connection waits (busy timeout) until this transaction commits.
    def _configure_sqlite(self) -> None:
        """Enable foreign keys, WAL and working SAVEPOINTs for SQLite."""
        in_memory = ":memory:" in self.settings.database.url

        @event.listens_for(self._engine.sync_engine, "connect")
        def set_sqlite_pragma(dbapi_conn: Any, _connection_record: Any) -> None:
            """Set SQLite pragmas on connection."""
            dbapi_conn.isolation_level = None
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            if not in_memory:
                cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()
            logger.debug("Configured SQLite connection (foreign keys, WAL, savepoints)")

        @event.listens_for(self._engine.sync_engine, "begin")
        def do_begin(conn: Any) -> None:
            """Emit our own BEGIN, holding the write lock from the start."""
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        """Session factory for workers that manage their own sessions."""
        return self._session_factory

    @asynccontextmanager
    async def session_scope(self) -> AsyncGenerator[AsyncSession, None]:
        """Provide a transactional scope for database operations."""
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                # Rollback on any exception - all exceptions are re-raised for proper handling.
                await session.rollback()
                raise
            finally:
                await session.close()

    async def close(self) -> None:
        """Close database connection."""
        await self._engine.dispose()

    async def create_tables(self) -> None:
        """Create all tables."""
        from soundshelf.infrastructure.persistence.models import Base

        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def drop_tables(self) -> None:
        """Drop all tables (for testing only)."""
        from soundshelf.infrastructure.persistence.models import Base

        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
