"""
Database connection management.
Handles the async SQLAlchemy engine, session creation and schema bootstrap.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from jobqueue.config import Settings, get_settings
from jobqueue.db.models import Base
from jobqueue.errors import StorageError

logger = logging.getLogger(__name__)


class Database:
    """
    Handle owning one engine and its session factory.

    Every queue operation runs in its own short transaction opened through
    this handle. Nothing is shared at module level: callers create a
    Database, pass it to the components that need it and dispose it on
    shutdown.

    On SQLite every transaction starts with BEGIN IMMEDIATE, so concurrent
    writers queue up on the database lock (row locks are not available).
    """

    def __init__(
        self,
        database_url: str,
        *,
        pool_size: int | None = None,
        max_overflow: int | None = None,
        echo: bool = False,
    ):
        """
        Create the engine and session factory.

        Args:
            database_url: SQLAlchemy async URL (asyncpg or aiosqlite).
            pool_size: Connection pool size (ignored for SQLite).
            max_overflow: Pool overflow (ignored for SQLite).
            echo: Log emitted SQL.
        """
        self.url = make_url(database_url)
        self._engine = create_async_engine(
            database_url,
            **self._engine_kwargs(pool_size, max_overflow, echo),
        )
        if self.is_sqlite:
            self._install_sqlite_hooks()

        self._sessionmaker = async_sessionmaker(
            bind=self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "Database":
        """Build a Database from application settings."""
        settings = settings or get_settings()
        return cls(
            settings.database_url,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            echo=settings.log_level.upper() == "DEBUG",
        )

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    @property
    def is_sqlite(self) -> bool:
        return self.url.get_backend_name() == "sqlite"

    def _engine_kwargs(
        self,
        pool_size: int | None,
        max_overflow: int | None,
        echo: bool,
    ) -> dict[str, Any]:
        if self.is_sqlite:
            return {"echo": echo, "connect_args": {"check_same_thread": False}}

        kwargs: dict[str, Any] = {"echo": echo, "pool_pre_ping": True}
        if pool_size is not None:
            kwargs["pool_size"] = pool_size
        if max_overflow is not None:
            kwargs["max_overflow"] = max_overflow
        return kwargs

    def _install_sqlite_hooks(self) -> None:
        @event.listens_for(self._engine.sync_engine, "connect")
        def _on_connect(dbapi_connection: Any, _connection_record: Any) -> None:
            # Stop the driver from issuing its own deferred BEGIN
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.close()

        @event.listens_for(self._engine.sync_engine, "begin")
        def _on_begin(conn: Any) -> None:
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession]:
        """
        Context manager for a session wrapped in one transaction.

        Commits on normal exit, rolls back on any exception.

        Yields:
            AsyncSession: An async database session.
        """
        async with self._sessionmaker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    @asynccontextmanager
    async def transaction(self, operation: str) -> AsyncGenerator[AsyncSession]:
        """
        Like session(), but backing-store failures surface as StorageError.

        Args:
            operation: Name of the queue operation, used in the error message.

        Raises:
            StorageError: If the database raised during the transaction.
        """
        try:
            async with self.session() as session:
                yield session
        except SQLAlchemyError as e:
            raise StorageError(f"Queue {operation} failed: {e}") from e

    async def create_schema(self) -> None:
        """Create the queue table and its indexes if they do not exist."""
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Queue schema ensured", extra={"database": self.url.render_as_string()})

    async def drop_schema(self) -> None:
        """Drop the queue table. Intended for tests and teardown scripts."""
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    async def dispose(self) -> None:
        """
        Close all pooled connections.
        Should be called on application shutdown.
        """
        await self._engine.dispose()
        logger.info("Database connection closed")
