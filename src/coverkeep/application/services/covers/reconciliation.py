"""Cover reconciliation - keeps catalog metadata and stored covers in sync.

Hey future me - this is the SELF-HEALING half of the cover pipeline! The worker
only ever processes what is queued. Everything that goes wrong OUTSIDE the queue
is found and re-queued here:

1. Metadata drift: IGDB changed a game (new cover art, fixed title). Found by
   comparing IGDB's checksum with ours for entries older than the freshness window.
2. Lost assets: the catalog points at a file/object that no longer exists, or at
   the OTHER storage backend after a local <-> s3 switch.
3. Cold start: a fresh deployment with a catalog full of games but no covers.

Every entry is handled inside its own try/except. One broken game never aborts
the pass for the other 499 in its batch.
"""

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from coverkeep.application.workers.persistent_cover_queue import PersistentCoverQueue
from coverkeep.domain.entities import CatalogEntry, CoverPriority, GameMetadata
from coverkeep.domain.ports import IAssetStore, IMetadataSource
from coverkeep.infrastructure.persistence.models import utc_now
from coverkeep.infrastructure.persistence.repositories import GameRepository

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationReport:
    """Counters of one reconciliation pass."""

    scanned: int = 0
    refreshed: int = 0
    heartbeats: int = 0
    covers_queued: int = 0
    missing_requeued: int = 0
    errors: int = 0
    batches: int = 0
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "scanned": self.scanned,
            "refreshed": self.refreshed,
            "heartbeats": self.heartbeats,
            "covers_queued": self.covers_queued,
            "missing_requeued": self.missing_requeued,
            "errors": self.errors,
            "batches": self.batches,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class CoverReconciliationService:
    """Staleness refresh, missing-asset detection and startup backfill."""

    def __init__(
        self,
        queue: PersistentCoverQueue,
        games: GameRepository,
        asset_store: IAssetStore,
        metadata_source: IMetadataSource | None = None,
        batch_size: int = 500,
    ) -> None:
        """Initialize reconciliation service.

        Args:
            queue: Durable cover queue
            games: Catalog repository
            asset_store: The ACTIVE asset store backend
            metadata_source: IGDB client, None when credentials are missing
            batch_size: Stale entries per page (capped at the source's batch limit)
        """
        self._queue = queue
        self._games = games
        self._asset_store = asset_store
        self._metadata_source = metadata_source
        self._batch_size = batch_size
        if metadata_source is not None:
            self._batch_size = min(batch_size, metadata_source.max_batch_size)

    @property
    def has_metadata_source(self) -> bool:
        return self._metadata_source is not None

    async def refresh_stale(
        self, freshness_window: timedelta = timedelta(hours=24)
    ) -> ReconciliationReport:
        """Refresh entries not updated within freshness_window.

        Pages through stale entries by id with a cutoff fixed at the start of the
        pass, so the pass ends even when IGDB doesn't return some of them.
        """
        report = ReconciliationReport()
        cutoff = utc_now() - freshness_window
        after_id: str | None = None

        while True:
            batch = await self._games.list_stale(cutoff, after_id, self._batch_size)
            if not batch:
                break

            report.batches += 1
            report.scanned += len(batch)
            after_id = batch[-1].id

            fetched = await self._fetch_batch(batch, report)

            for entry in batch:
                try:
                    await self._reconcile_entry(entry, fetched, report)
                except Exception as e:
                    report.errors += 1
                    logger.warning("Reconciliation failed for game %s: %s", entry.id, e)

            if len(batch) < self._batch_size:
                break

        report.finished_at = datetime.now(UTC)
        logger.info(
            "Stale refresh complete: %d scanned in %d batch(es), %d refreshed, "
            "%d heartbeats, %d covers queued, %d missing requeued, %d errors",
            report.scanned,
            report.batches,
            report.refreshed,
            report.heartbeats,
            report.covers_queued,
            report.missing_requeued,
            report.errors,
        )
        return report

    async def _fetch_batch(
        self, batch: list[CatalogEntry], report: ReconciliationReport
    ) -> dict[int, GameMetadata]:
        if self._metadata_source is None:
            return {}
        remote_ids = [e.remote_id for e in batch if e.remote_id is not None]
        if not remote_ids:
            return {}
        try:
            records = await self._metadata_source.fetch_by_ids(remote_ids)
        except Exception as e:
            # Metadata is stale for one more cycle, asset checks still run
            report.errors += 1
            logger.warning("Metadata fetch failed for batch of %d: %s", len(remote_ids), e)
            return {}
        return {record.remote_id: record for record in records}

    async def _reconcile_entry(
        self,
        entry: CatalogEntry,
        fetched: dict[int, GameMetadata],
        report: ReconciliationReport,
    ) -> None:
        metadata = fetched.get(entry.remote_id) if entry.remote_id is not None else None
        if metadata is not None:
            entry, queued = await self._apply_refresh(
                entry, metadata, CoverPriority.REFRESH, report
            )
            if queued:
                return

        if entry.remote_image_id and await self.is_asset_missing(entry):
            if await self.heal_missing_asset(entry):
                report.missing_requeued += 1

    async def _apply_refresh(
        self,
        entry: CatalogEntry,
        metadata: GameMetadata,
        priority: CoverPriority,
        report: ReconciliationReport | None = None,
    ) -> tuple[CatalogEntry, bool]:
        """Apply a fresh source record to an entry.

        Returns:
            (updated entry, whether a cover download was queued)
        """
        if metadata.checksum and metadata.checksum == entry.metadata_checksum:
            await self._games.touch(entry.id)
            if report is not None:
                report.heartbeats += 1
            return entry, False

        new_image_id = metadata.cover_image_id
        cover_changed = new_image_id != entry.remote_image_id

        # Drops the stored pointer itself when the cover changed
        updated = await self._games.apply_metadata(entry.id, metadata)
        if report is not None:
            report.refreshed += 1

        if not new_image_id or not (cover_changed or not updated.has_local_asset):
            return updated, False

        queue_id: str | None = None
        if cover_changed:
            # Work in flight for the OLD image follows the new one
            queue_id = await self._queue.retarget_outstanding(entry.id, new_image_id)
            if queue_id is None:
                # The completed item is for the OLD image, it would dedup the new one away
                await self._queue.delete_completed_for_game(entry.id)
        if queue_id is None:
            queue_id = await self._queue.enqueue(entry.id, new_image_id, priority)
        if queue_id is not None and report is not None:
            report.covers_queued += 1
        return updated, queue_id is not None

    async def is_asset_missing(self, entry: CatalogEntry) -> bool:
        """Check whether the entry's stored cover is unusable on the active backend.

        No pointer, or a pointer with the other backend's URL shape, counts as
        missing. Otherwise the active backend is asked whether the key exists.
        """
        url = entry.local_asset_url
        if not entry.local_asset_id and not url:
            return True
        if not url or not self._asset_store.owns_url(url):
            return True
        key = self._asset_store.key_from_url(url)
        if not key:
            return True
        return not await self._asset_store.exists(key)

    async def heal_missing_asset(self, entry: CatalogEntry) -> str | None:
        """Clear the dead pointer and queue the cover again.

        Hey future me - entry is a SNAPSHOT from the start of the page. The worker
        may have stored a fresh cover since then, and that one must survive:
        - the pointer is only cleared while it still is the dead one
        - only items completed BEFORE the heal started are deleted

        Returns:
            Queue id of the (new or existing) item, None if the entry has no cover
            or got a fresh cover in the meantime
        """
        if not entry.remote_image_id:
            return None

        heal_started = utc_now()
        if entry.local_asset_id:
            cleared = await self._games.clear_local_asset(
                entry.id, expected_asset_id=entry.local_asset_id
            )
            if not cleared:
                logger.debug("Game %s got a new cover meanwhile, not healing", entry.id)
                return None
        else:
            current = await self._games.get(entry.id)
            if current is None or current.local_asset_id:
                logger.debug("Game %s got a new cover meanwhile, not healing", entry.id)
                return None
            if current.local_asset_url:
                await self._games.clear_local_asset(entry.id)

        # A completed item would make enqueue() a no-op
        await self._queue.delete_completed_for_game(
            entry.id, completed_before=heal_started
        )
        queue_id = await self._queue.enqueue(
            entry.id, entry.remote_image_id, CoverPriority.REFRESH
        )
        logger.info(
            "Requeued missing cover for game %s (was %s)",
            entry.id,
            entry.local_asset_url or "no pointer",
        )
        return queue_id

    async def reconcile_on_startup(self, limit: int = 100) -> int:
        """Backfill covers on a cold queue.

        Hey future me - only runs when NOTHING is pending or processing. With work
        in flight, another instance is already draining the queue and a backfill
        would just pile BACKFILL items on top of it.

        Returns:
            Number of entries queued
        """
        if limit <= 0:
            return 0
        if await self._queue.has_outstanding_work():
            logger.debug("Queue has outstanding work, skipping startup reconciliation")
            return 0

        entries = await self._games.list_missing_local_asset(limit)
        queued = 0
        for entry in entries:
            try:
                queue_id = await self._queue.enqueue(
                    entry.id, entry.remote_image_id, CoverPriority.BACKFILL
                )
                if queue_id is not None:
                    queued += 1
            except Exception as e:
                logger.warning("Startup backfill failed for game %s: %s", entry.id, e)

        if queued:
            logger.info("Startup reconciliation queued %d missing covers", queued)
        return queued

    async def refresh_entry(self, game_id: str) -> CatalogEntry | None:
        """Refresh one entry right now (user-triggered, USER priority).

        Returns:
            The entry after refresh, None if it doesn't exist or has no remote id
        """
        entry = await self._games.get(game_id)
        if entry is None or entry.remote_id is None:
            return None
        if self._metadata_source is None:
            return entry

        metadata = await self._metadata_source.fetch_by_id(entry.remote_id)
        if metadata is None:
            return entry

        await self._apply_refresh(entry, metadata, CoverPriority.USER)
        return await self._games.get(game_id)
