"""Shared fixtures for the cover pipeline tests.

Hey future me - the queue store tests need a REAL database, the claim CAS and the
partial unique index are the things under test. We use a file-backed SQLite per
test (tmp_path) instead of :memory:, so every session gets its own connection just
like two worker instances would.
"""

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest

from coverkeep.application.workers.persistent_cover_queue import PersistentCoverQueue
from coverkeep.config import Settings
from coverkeep.config.settings import DatabaseSettings, StorageSettings
from coverkeep.infrastructure.persistence import Database, GameRepository


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings pointing the database and local covers into tmp_path."""
    return Settings(
        database=DatabaseSettings(url=f"sqlite+aiosqlite:///{tmp_path / 'coverkeep.db'}"),
        storage=StorageSettings(backend="local", local_path=tmp_path / "covers"),
    )


@pytest.fixture
async def db(settings: Settings) -> AsyncGenerator[Database, None]:
    """Fresh database with all tables created."""
    database = Database(settings)
    await database.create_tables()
    yield database
    await database.close()


@pytest.fixture
def queue(db: Database) -> PersistentCoverQueue:
    """Queue store on the test database."""
    return PersistentCoverQueue(session_factory=db.session_factory)


@pytest.fixture
def games(db: Database) -> GameRepository:
    """Catalog repository on the test database."""
    return GameRepository(db.session_factory)
