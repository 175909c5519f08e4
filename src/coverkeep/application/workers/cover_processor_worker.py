# Hey future me - Cover Processor Worker drains the persistent cover queue!
#
# It runs PERMANENTLY on every instance with the "worker" role. Each tick claims at
# most ONE item, pushes it through fetch -> transform -> store -> catalog update, and
# reports the outcome back to the queue. Many instances can run this side by side,
# the queue's claim CAS makes sure no item is processed twice.
#
# Failure routing:
# - Every pipeline step wraps whatever blew up into exactly ONE CoverPipelineError
#   kind (download / transform / storage / catalog_update)
# - process_item() catches CoverPipelineError in ONE place -> queue.mark_failed()
# - Anything else escaping (e.g. the DB is down during mark_completed) is logged by
#   the loop. The item stays "processing" and the lease reclaim picks it up later.
"""Cover Processor Worker - turns queued cover items into stored WebP assets."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import httpx

from coverkeep.domain.exceptions import (
    CatalogUpdateError,
    CoverPipelineError,
    DownloadError,
    StorageError,
    TransformError,
)
from coverkeep.infrastructure.integrations.http_pool import HttpClientPool
from coverkeep.infrastructure.observability.logging import set_correlation_id

if TYPE_CHECKING:
    from coverkeep.application.workers.persistent_cover_queue import (
        PersistentCoverQueue,
    )
    from coverkeep.domain.entities import QueueItem, StoredAsset
    from coverkeep.domain.ports import IAssetStore, IImageTransformer, IMetadataSource
    from coverkeep.infrastructure.persistence.repositories import GameRepository

logger = logging.getLogger(__name__)


class CoverProcessorWorker:
    """Background worker that processes the persistent cover queue.

    Hey future me - all state lives on the INSTANCE (busy flag, task, stats)!
    Two workers in one process (tests do that) must not share anything but the
    database.

    Usage:
        worker = CoverProcessorWorker(queue, store, igdb, transformer, games, "host-1")
        await worker.start()
        # ... worker runs in background ...
        await worker.stop()
    """

    def __init__(
        self,
        queue: PersistentCoverQueue,
        asset_store: IAssetStore,
        metadata_source: IMetadataSource,
        transformer: IImageTransformer,
        games: GameRepository,
        instance_id: str,
        http_client: httpx.AsyncClient | None = None,
        tick_interval_seconds: float = 2.0,
        throttle_delay_seconds: float = 0.3,
        download_timeout_seconds: float = 30.0,
        lease_timeout_seconds: int = 300,
        size_variant: str = "cover_big",
    ) -> None:
        """Initialize worker.

        Args:
            queue: Durable cover queue shared by all instances
            asset_store: Active asset store backend
            metadata_source: Builds remote cover URLs
            transformer: Converts downloaded bytes to WebP
            games: Catalog repository the result pointer is written to
            instance_id: Recorded as claimed_by on items this worker claims
            http_client: Client for image downloads (defaults to the shared pool)
            tick_interval_seconds: Sleep between polls when the queue is empty
            throttle_delay_seconds: Pause after each processed item
            download_timeout_seconds: Timeout for one image download
            lease_timeout_seconds: Age after which a processing item counts as abandoned
            size_variant: Remote image size variant to fetch
        """
        self._queue = queue
        self._asset_store = asset_store
        self._metadata_source = metadata_source
        self._transformer = transformer
        self._games = games
        self.instance_id = instance_id
        self._http_client = http_client
        self._tick_interval = tick_interval_seconds
        self._throttle_delay = throttle_delay_seconds
        self._download_timeout = download_timeout_seconds
        self._lease_timeout = lease_timeout_seconds
        self._size_variant = size_variant

        self._running = False
        self._busy = False
        self._task: asyncio.Task[None] | None = None
        self._started_at: datetime | None = None
        self._last_error: str | None = None
        self._stats: dict[str, int] = {
            "processed": 0,
            "succeeded": 0,
            "failed": 0,
            "reclaimed": 0,
        }

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Reclaim abandoned items once, then start the tick loop."""
        if self._running:
            logger.warning("CoverProcessorWorker already running")
            return

        await self._reclaim_expired()

        self._running = True
        self._started_at = datetime.now(UTC)
        self._task = asyncio.create_task(self._run_loop(), name="cover-processor")
        logger.info("CoverProcessorWorker started (instance=%s)", self.instance_id)

    async def stop(self) -> None:
        """Stop the tick loop. An item in flight is abandoned to the lease reclaim."""
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

        logger.info(
            "CoverProcessorWorker stopped. Stats: %d processed, %d succeeded, %d failed",
            self._stats["processed"],
            self._stats["succeeded"],
            self._stats["failed"],
        )

    async def _reclaim_expired(self) -> None:
        try:
            self._stats["reclaimed"] += await self._queue.reclaim_stale(
                self._lease_timeout
            )
        except Exception as e:
            # Retried on the next idle tick, never blocks claiming
            logger.warning("Lease reclaim failed: %s", e)

    async def _run_loop(self) -> None:
        while self._running:
            processed = False
            try:
                processed = await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._last_error = str(e)
                logger.exception("Cover worker tick failed: %s", e)

            # Busy queue: go straight to the next item (tick already throttled)
            if not processed:
                await asyncio.sleep(self._tick_interval)

    async def tick(self) -> bool:
        """Claim and process at most one item.

        Returns:
            True if an item was processed (successfully or not), False if the
            worker was busy or the queue had nothing pending
        """
        if self._busy:
            return False

        self._busy = True
        try:
            item = await self._queue.claim_next(self.instance_id)
            if item is None:
                # Idle: release items of dead peers so the next tick can take them
                await self._reclaim_expired()
                return False

            await self.process_item(item)
            if self._throttle_delay > 0:
                await asyncio.sleep(self._throttle_delay)
            return True
        finally:
            self._busy = False

    async def process_item(self, item: QueueItem) -> bool:
        """Run the full pipeline for one claimed item.

        Returns:
            True if the cover was stored and the item completed
        """
        set_correlation_id(f"cover-{item.id[:8]}")
        self._stats["processed"] += 1
        logger.debug(
            "Processing cover %s for game %s (attempt %d/%d)",
            item.remote_image_id,
            item.game_id,
            item.attempts,
            item.max_attempts,
        )

        try:
            url = self._metadata_source.cover_url(
                item.remote_image_id, self._size_variant
            )
            if not url:
                raise DownloadError(f"no cover URL for image {item.remote_image_id}")

            data = await self._download(url)
            webp_data = await self._transform(data)
            asset = await self._store(webp_data, item)
            await self._update_catalog(item, asset)
        except CoverPipelineError as e:
            self._stats["failed"] += 1
            self._last_error = e.describe()
            logger.warning(
                "Cover pipeline failed for queue item %s (game %s): %s",
                item.id,
                item.game_id,
                e.describe(),
            )
            await self._queue.mark_failed(item.id, e.describe())
            return False

        await self._queue.mark_completed(item.id, asset.asset_id)
        self._stats["succeeded"] += 1
        logger.info(
            "Stored cover for game %s as %s (%d bytes)",
            item.game_id,
            asset.url,
            asset.size,
        )
        return True

    async def _download(self, url: str) -> bytes:
        client = self._http_client or await HttpClientPool.get_client()
        try:
            response = await client.get(url, timeout=self._download_timeout)
        except httpx.TimeoutException as e:
            raise DownloadError(
                f"timeout after {self._download_timeout}s fetching {url}"
            ) from e
        except httpx.HTTPError as e:
            raise DownloadError(f"network error fetching {url}: {e}") from e

        if response.status_code != 200:
            raise DownloadError(
                f"HTTP {response.status_code} fetching {url}",
                status_code=response.status_code,
            )
        if not response.content:
            raise DownloadError(f"empty response body from {url}")
        return response.content

    async def _transform(self, data: bytes) -> bytes:
        try:
            return await self._transformer.transform(data)
        except TransformError:
            raise
        except Exception as e:
            raise TransformError(str(e)) from e

    async def _store(self, data: bytes, item: QueueItem) -> StoredAsset:
        meta = {"game_id": item.game_id, "remote_image_id": item.remote_image_id}
        try:
            return await self._asset_store.write(data, meta)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(
                f"{self._asset_store.backend_name} write failed: {e}"
            ) from e

    async def _update_catalog(self, item: QueueItem, asset: StoredAsset) -> None:
        try:
            await self._games.set_local_asset(
                item.game_id, asset.asset_id, asset.url, item.remote_image_id
            )
        except Exception as e:
            # Nothing points at the new asset, don't leave it behind
            await self._discard(asset)
            raise CatalogUpdateError(
                f"could not update game {item.game_id}: {e}"
            ) from e

    async def _discard(self, asset: StoredAsset) -> None:
        try:
            await self._asset_store.delete(asset.key)
        except Exception as e:
            logger.warning("Could not delete orphaned cover %s: %s", asset.key, e)

    def get_status(self) -> dict[str, Any]:
        """Get worker status for monitoring."""
        return {
            "name": "Cover Processor Worker",
            "running": self._running,
            "busy": self._busy,
            "instance_id": self.instance_id,
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "tick_interval_seconds": self._tick_interval,
            "throttle_delay_seconds": self._throttle_delay,
            "last_error": self._last_error,
            "stats": dict(self._stats),
        }
