"""Database engine and session factory shared by the queue and the catalog."""

import logging
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from coverkeep.config import Settings
from coverkeep.config.settings import DatabaseSettings

logger = logging.getLogger(__name__)

# Hey future me - the worker and the scheduler write concurrently! Without a generous
# busy timeout the second SQLite writer gets "database is locked" right away.
SQLITE_BUSY_TIMEOUT_SECONDS = 30


def _engine_kwargs(db_settings: DatabaseSettings) -> dict[str, Any]:
    kwargs: dict[str, Any] = {
        "echo": db_settings.echo,
        "pool_pre_ping": db_settings.pool_pre_ping,
    }
    if "postgresql" in db_settings.url:
        # Pool sizing only means something for a real server
        kwargs["pool_size"] = db_settings.pool_size
        kwargs["max_overflow"] = db_settings.max_overflow
        kwargs["pool_timeout"] = db_settings.pool_timeout
        kwargs["pool_recycle"] = db_settings.pool_recycle
    elif "sqlite" in db_settings.url:
        kwargs["connect_args"] = {
            "check_same_thread": False,
            "timeout": SQLITE_BUSY_TIMEOUT_SECONDS,
        }
    return kwargs


class Database:
    """Owns the async engine. Queue and repositories only ever see session_factory."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._engine = create_async_engine(
            settings.database.url, **_engine_kwargs(settings.database)
        )
        if self.is_sqlite:
            event.listen(
                self._engine.sync_engine, "connect", _configure_sqlite_connection
            )

        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @property
    def is_sqlite(self) -> bool:
        return self._engine.dialect.name == "sqlite"

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        """Session factory handed to the queue store and repositories."""
        return self._session_factory

    async def close(self) -> None:
        await self._engine.dispose()

    async def create_tables(self) -> None:
        """Create all tables (tests and first-run SQLite setups)."""
        from coverkeep.infrastructure.persistence.models import Base

        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    def get_pool_stats(self) -> dict[str, Any]:
        """Connection pool numbers reported by /api/covers/health."""
        if self.is_sqlite:
            return {"dialect": "sqlite", "pooled": False}

        pool = self._engine.pool
        # Not every pool class implements the counters (NullPool doesn't)
        return {
            "dialect": self._engine.dialect.name,
            "pooled": True,
            "size": getattr(pool, "size", lambda: 0)(),
            "checked_out": getattr(pool, "checkedout", lambda: 0)(),
            "overflow": getattr(pool, "overflow", lambda: 0)(),
            "checked_in": getattr(pool, "checkedin", lambda: 0)(),
        }


def _configure_sqlite_connection(dbapi_conn: Any, _connection_record: Any) -> None:
    """WAL lets readers (API, reconciliation) proceed while the worker writes."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()
    logger.debug("Configured SQLite connection pragmas")
