# backend/calilights/services/database_service.py
"""
Engine and session lifecycle for the mission engine.

One module-level DatabaseService owns the async engine. SQLite backs local
runs and the test suite; PostgreSQL (asyncpg) backs deployments.

Usage:
    from calilights.services.database_service import database_service

    # Unit of work: commits on exit, rolls back on error
    async with database_service.get_session() as session:
        result = await session.execute(select(Mission).where(Mission.id == mission_id))
        mission = result.scalar_one_or_none()

    # Create missing tables at startup
    await database_service.init_db()

    # Connectivity plus per-table row counts
    health = await database_service.health_check()

Mutual exclusion between overlapping sweeps and user-triggered transitions is
enforced only in the database, through conditional UPDATE statements issued by
the services. Sessions are short-lived and never held across an external call.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from ..config import settings
from ..database.base import Base

_TABLES = (
    "users", "chains", "chain_memberships", "chain_connections", "missions", "entries",
    "chapters", "generation_jobs", "bridge_events", "mission_schedules",
)


def _enable_sqlite_transactions(engine: AsyncEngine) -> None:
    """
    Let SQLAlchemy emit BEGIN itself so SAVEPOINT (session.begin_nested) nests
    inside the outer transaction on SQLite.

    BEGIN IMMEDIATE takes the write lock up front. Competing transactions then
    queue on the busy timeout instead of both reading under a shared lock and
    one failing with "database is locked" when it tries to write.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def _is_celery_worker() -> bool:
    """Check if we're running inside a Celery worker process."""
    return (
        os.getenv("CELERY_WORKER") == "1" or
        "celery" in os.getenv("_", "").lower() or
        os.getenv("FORKED_BY_MULTIPROCESSING") == "1"
    )


class DatabaseService:
    """
    Owns the engine and hands out short-lived sessions.

    Pooling depends on where the code runs: a sized pool for the API process
    on PostgreSQL, NullPool for SQLite and for Celery workers.
    """

    def __init__(self, database_url: Optional[str] = None):
        self._logger = logging.getLogger("calilights.database")
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker] = None
        self._database_url = database_url or settings.database_url
        self._initialize_engine()

    def _initialize_engine(self) -> None:
        """
        Initialize database engine based on DATABASE_URL.

        SQLite Configuration:
            - Uses aiosqlite async driver
            - NullPool so each asyncio loop gets fresh connections
            - Creates data directory if needed

        PostgreSQL Configuration:
            - Uses asyncpg async driver
            - Connection pooling from DB_POOL_SIZE / DB_MAX_OVERFLOW / DB_POOL_RECYCLE
            - NullPool inside Celery workers, where asyncio.run() creates a new
              event loop for each task
        """
        database_url = self._database_url
        self._logger.info(f"Initializing database: {database_url.split('@')[-1].split('?')[0]}")

        if database_url.startswith("sqlite"):
            if ":///" in database_url:
                db_path = database_url.split("///")[1].split("?")[0]
                db_dir = os.path.dirname(db_path)
                if db_dir and not os.path.exists(db_dir):
                    os.makedirs(db_dir, exist_ok=True)
                    self._logger.info(f"Created database directory: {db_dir}")

            self._engine = create_async_engine(
                database_url,
                connect_args={"check_same_thread": False, "timeout": settings.db_sqlite_busy_timeout},
                poolclass=NullPool,
                echo=settings.debug,
            )
            _enable_sqlite_transactions(self._engine)
            self._logger.info("Using SQLite database (development mode)")

        elif _is_celery_worker():
            self._engine = create_async_engine(
                database_url,
                poolclass=NullPool,
                echo=settings.debug,
            )
            self._logger.info("PostgreSQL configured with NullPool for Celery worker")

        else:
            self._engine = create_async_engine(
                database_url,
                pool_size=settings.db_pool_size,
                max_overflow=settings.db_max_overflow,
                pool_pre_ping=True,
                pool_recycle=settings.db_pool_recycle,
                echo=settings.debug,
            )
            self._logger.info(
                f"PostgreSQL connection pool: size={settings.db_pool_size}, "
                f"max_overflow={settings.db_max_overflow}, recycle={settings.db_pool_recycle}s"
            )

        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @property
    def dialect_name(self) -> str:
        return self._engine.dialect.name if self._engine else "unknown"

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        One unit of work.

        Commits when the block exits normally. Any exception, including a
        domain error raised after a conditional UPDATE lost its race, rolls
        the whole block back and propagates.
        """
        if not self._session_factory:
            raise RuntimeError("Database not initialized")

        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def init_db(self) -> None:
        """Create any missing tables; existing tables are left untouched."""
        if not self._engine:
            raise RuntimeError("Database engine not initialized")

        self._logger.info("Ensuring mission engine tables exist")

        async with self._engine.begin() as conn:
            from ..database import models  # noqa: F401

            await conn.run_sync(Base.metadata.create_all)

        self._logger.info(f"Schema ready: {len(Base.metadata.tables)} tables")

    async def drop_all(self) -> None:
        """Drop every table. Used by the test suite between cases."""
        if not self._engine:
            raise RuntimeError("Database engine not initialized")

        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    async def health_check(self) -> Dict[str, Any]:
        """
        Check the database connection and count rows in each engine table.

        Returns:
            Dict with health status:
                {
                    "status": "healthy" | "unhealthy",
                    "connected": True | False,
                    "database_type": "sqlite" | "postgresql",
                    "tables": {"missions": count, ...},
                    "error": "error message" (if unhealthy)
                }
        """
        try:
            async with self.get_session() as session:
                await session.execute(text("SELECT 1"))

                tables = {}
                for table_name in _TABLES:
                    result = await session.execute(text(f"SELECT COUNT(*) FROM {table_name}"))
                    tables[table_name] = result.scalar() or 0

            return {
                "status": "healthy",
                "connected": True,
                "database_type": self.dialect_name,
                "tables": tables,
            }

        except Exception as e:
            self._logger.error(f"Database health check failed: {str(e)}")
            return {
                "status": "unhealthy",
                "connected": False,
                "database_type": self.dialect_name,
                "error": str(e),
            }

    async def close(self) -> None:
        """Dispose of the engine at application shutdown."""
        if self._engine:
            await self._engine.dispose()
            self._logger.info("Database connections closed")

    def __repr__(self) -> str:
        return f"<DatabaseService(type={self.dialect_name})>"


# Global singleton instance
database_service = DatabaseService()
