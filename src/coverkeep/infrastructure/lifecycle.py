"""Application lifecycle management for startup and shutdown tasks.

Wires the cover pipeline together and runs the configured roles:
- "worker": CoverProcessorWorker draining the queue
- "scheduler": ReconciliationWorker (lease reclaim, stale refresh, cleanup)

Both roles can run in one process (default) or be split across deployments.
Every instance shares nothing but the database.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from fastapi import FastAPI

from coverkeep.application.services.covers.reconciliation import (
    CoverReconciliationService,
)
from coverkeep.application.workers.cover_processor_worker import CoverProcessorWorker
from coverkeep.application.workers.persistent_cover_queue import PersistentCoverQueue
from coverkeep.application.workers.reconciliation_worker import ReconciliationWorker
from coverkeep.config import Settings, get_settings
from coverkeep.domain.exceptions import ConfigurationError
from coverkeep.domain.ports import IAssetStore
from coverkeep.infrastructure.imaging import WebPTransformer
from coverkeep.infrastructure.integrations import HttpClientPool, IGDBClient
from coverkeep.infrastructure.observability import configure_logging
from coverkeep.infrastructure.persistence import Database, GameRepository
from coverkeep.infrastructure.storage import create_asset_store

logger = logging.getLogger(__name__)


@dataclass
class CoverComponents:
    """Everything the roles and the ops API need, built once per process."""

    queue: PersistentCoverQueue
    games: GameRepository
    asset_store: IAssetStore
    reconciliation: CoverReconciliationService
    database: Database | None = None
    worker: CoverProcessorWorker | None = None
    scheduler: ReconciliationWorker | None = None


# Hey future me, SQLite needs write access to the DIRECTORY, not only the file - it
# creates -wal/-shm files next to the database. Fail startup with a clear message
# instead of a cryptic "unable to open database file" on the first query.
def _validate_sqlite_path(settings: Settings) -> None:
    db_path = settings.sqlite_db_path()
    if db_path is None:
        return

    try:
        if str(db_path.parent) not in ("", "."):
            db_path.parent.mkdir(parents=True, exist_ok=True)
        test_file = db_path.parent / f".{db_path.stem}_write_test"
        test_file.write_bytes(b"test")
        test_file.unlink()
    except OSError as exc:
        raise ConfigurationError(
            f"Unable to write files in database directory '{db_path.parent}': {exc}. "
            "Update COVERKEEP_DATABASE__URL or adjust directory permissions."
        ) from exc


def build_components(settings: Settings, db: Database) -> CoverComponents:
    """Build queue, repositories, adapters and the roles enabled in settings."""
    queue = PersistentCoverQueue(
        session_factory=db.session_factory,
        default_max_attempts=settings.worker.max_attempts,
    )
    games = GameRepository(db.session_factory)
    asset_store = create_asset_store(settings.storage)

    # cover_url() needs no credentials, so the worker always gets a client
    igdb = IGDBClient(settings.igdb)
    if not settings.igdb.is_configured:
        logger.warning("IGDB credentials missing, metadata refresh is disabled")

    reconciliation = CoverReconciliationService(
        queue=queue,
        games=games,
        asset_store=asset_store,
        metadata_source=igdb if settings.igdb.is_configured else None,
        batch_size=settings.reconciliation.batch_size,
    )

    components = CoverComponents(
        queue=queue,
        games=games,
        asset_store=asset_store,
        reconciliation=reconciliation,
        database=db,
    )

    if "worker" in settings.worker.roles:
        components.worker = CoverProcessorWorker(
            queue=queue,
            asset_store=asset_store,
            metadata_source=igdb,
            transformer=WebPTransformer(
                quality=settings.worker.webp_quality,
                method=settings.worker.webp_method,
            ),
            games=games,
            instance_id=settings.worker.resolved_instance_id(),
            tick_interval_seconds=settings.worker.tick_interval_seconds,
            throttle_delay_seconds=settings.worker.throttle_delay_seconds,
            download_timeout_seconds=settings.worker.download_timeout_seconds,
            lease_timeout_seconds=settings.worker.lease_timeout_seconds,
            size_variant=settings.worker.cover_size_variant,
        )

    # Built on every instance so POST /reconcile works anywhere, only started
    # (periodic loop) with the scheduler role
    components.scheduler = ReconciliationWorker(
        service=reconciliation,
        queue=queue,
        interval_hours=settings.reconciliation.interval_hours,
        initial_delay_seconds=settings.reconciliation.initial_delay_seconds,
        freshness_window_hours=settings.reconciliation.freshness_window_hours,
        cleanup_max_age_days=settings.reconciliation.cleanup_max_age_days,
        lease_timeout_seconds=settings.worker.lease_timeout_seconds,
    )

    return components


# Listen future me, everything before `yield` runs at STARTUP, everything after at
# SHUTDOWN. The finally block makes sure workers are stopped and connections closed
# even if startup blew up halfway.
@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    settings: Settings = getattr(app.state, "settings", None) or get_settings()

    configure_logging(
        log_level=settings.observability.log_level,
        json_format=settings.observability.log_json_format,
        app_name=settings.app_name,
    )
    logger.info(
        "Starting %s (roles: %s)", settings.app_name, ",".join(settings.worker.roles)
    )

    db: Database | None = None
    components: CoverComponents | None = None
    try:
        settings.ensure_directories()
        _validate_sqlite_path(settings)

        db = Database(settings)
        if settings.sqlite_db_path() is not None:
            # Single-file deployments skip alembic, create_all is a no-op when current
            await db.create_tables()
        app.state.db = db
        logger.info("Database initialized: %s", settings.database.url)

        components = build_components(settings, db)
        app.state.covers = components

        try:
            await components.reconciliation.reconcile_on_startup(
                settings.reconciliation.startup_limit
            )
        except Exception as e:
            logger.warning("Startup reconciliation failed: %s", e)

        if components.worker is not None:
            await components.worker.start()
        if components.scheduler is not None and "scheduler" in settings.worker.roles:
            await components.scheduler.start()

        yield

    finally:
        logger.info("Shutting down %s", settings.app_name)
        if components is not None:
            if components.worker is not None:
                await components.worker.stop()
            if components.scheduler is not None:
                await components.scheduler.stop()
        await HttpClientPool.close()
        if db is not None:
            await db.close()
