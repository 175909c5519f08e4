"""Tests for CoverProcessorWorker.

Hey future me - the worker runs the real queue and catalog (SQLite in tmp_path),
a real LocalAssetStore and the real WebPTransformer. Only the network is faked,
through httpx.MockTransport serving a JPEG that Pillow generates on the fly.
"""

from collections.abc import Awaitable, Callable, Sequence
from datetime import timedelta
from io import BytesIO
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from PIL import Image
from pytest_httpx import HTTPXMock
from sqlalchemy import update

from coverkeep.application.services.covers import CoverReconciliationService
from coverkeep.application.workers.cover_processor_worker import CoverProcessorWorker
from coverkeep.application.workers.persistent_cover_queue import PersistentCoverQueue
from coverkeep.domain.entities import GameMetadata, QueueStatus
from coverkeep.domain.ports import IMetadataSource
from coverkeep.infrastructure.imaging import WebPTransformer
from coverkeep.infrastructure.integrations import HttpClientPool
from coverkeep.infrastructure.persistence import (
    CoverQueueModel,
    Database,
    GameRepository,
    utc_now,
)
from coverkeep.infrastructure.storage import LocalAssetStore

IMAGE_BASE = "https://images.example.test/igdb/image/upload"


class FakeMetadataSource(IMetadataSource):
    """cover_url() for the worker, fetch_by_id() for mid-flight refreshes."""

    def __init__(self, records: dict[int, GameMetadata] | None = None) -> None:
        self.records = records or {}

    @property
    def max_batch_size(self) -> int:
        return 500

    async def fetch_by_id(self, remote_id: int) -> GameMetadata | None:
        return self.records.get(remote_id)

    async def fetch_by_ids(self, remote_ids: Sequence[int]) -> list[GameMetadata]:
        return []

    def cover_url(self, image_id: str, size_variant: str = "cover_big") -> str | None:
        if not image_id:
            return None
        return f"{IMAGE_BASE}/t_{size_variant}/{image_id}.jpg"


def _jpeg_bytes(size: tuple[int, int] = (32, 48)) -> bytes:
    buffer = BytesIO()
    Image.new("RGB", size, color=(200, 40, 40)).save(buffer, format="JPEG")
    return buffer.getvalue()


Handler = Callable[[httpx.Request], httpx.Response | Awaitable[httpx.Response]]


def _client(handler: Handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _serve_jpeg(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, content=_jpeg_bytes())


class TestCoverProcessorWorker:
    """Test the per-item pipeline and error routing."""

    @pytest.fixture
    def store(self, tmp_path: Path) -> LocalAssetStore:
        """Local asset store in tmp_path."""
        return LocalAssetStore(tmp_path / "covers")

    @pytest.fixture
    def make_worker(
        self,
        queue: PersistentCoverQueue,
        games: GameRepository,
        store: LocalAssetStore,
    ) -> Callable[..., CoverProcessorWorker]:
        """Factory building a worker around a given HTTP handler."""

        def _make(
            handler: Handler = _serve_jpeg,
            **overrides: object,
        ) -> CoverProcessorWorker:
            kwargs: dict[str, object] = {
                "queue": queue,
                "asset_store": store,
                "metadata_source": FakeMetadataSource(),
                "transformer": WebPTransformer(quality=75, method=4),
                "games": games,
                "instance_id": "test-worker",
                "http_client": _client(handler),
                "throttle_delay_seconds": 0,
            }
            kwargs.update(overrides)
            return CoverProcessorWorker(**kwargs)  # type: ignore[arg-type]

        return _make

    async def test_tick_processes_item_end_to_end(
        self,
        queue: PersistentCoverQueue,
        games: GameRepository,
        store: LocalAssetStore,
        make_worker: Callable[..., CoverProcessorWorker],
    ) -> None:
        """Claim, download, convert, store, point the catalog, complete."""
        requested: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requested.append(str(request.url))
            return _serve_jpeg(request)

        game = await games.add(title="Celeste", remote_id=26226, remote_image_id="co1wyy")
        queue_id = await queue.enqueue(game.id, "co1wyy")
        worker = make_worker(handler)

        assert await worker.tick() is True

        assert requested == [f"{IMAGE_BASE}/t_cover_big/co1wyy.jpg"]
        item = await queue.get(queue_id)  # type: ignore[arg-type]
        assert item is not None
        assert item.status == QueueStatus.COMPLETED

        entry = await games.get(game.id)
        assert entry is not None
        assert entry.local_asset_id == item.result_asset_id
        assert entry.local_asset_url is not None
        assert entry.local_asset_url.startswith("/covers/")
        key = store.key_from_url(entry.local_asset_url)
        assert key is not None and await store.exists(key)

        stored = (store.base_path / key).read_bytes()
        with Image.open(BytesIO(stored)) as img:
            assert img.format == "WEBP"

        status = worker.get_status()
        assert status["stats"]["succeeded"] == 1
        assert status["stats"]["processed"] == 1

    async def test_reenqueue_after_completion_is_noop(
        self,
        queue: PersistentCoverQueue,
        games: GameRepository,
        make_worker: Callable[..., CoverProcessorWorker],
    ) -> None:
        """Once a game's cover is stored, enqueue() hands back the same item."""
        game = await games.add(title="Hades", remote_id=113112, remote_image_id="co2i0c")
        queue_id = await queue.enqueue(game.id, "co2i0c")
        await make_worker().tick()

        assert await queue.enqueue(game.id, "co2i0c") == queue_id
        assert len(await queue.find_for_game(game.id)) == 1

    async def test_tick_empty_queue(
        self, make_worker: Callable[..., CoverProcessorWorker]
    ) -> None:
        """Nothing pending: tick reports no work."""
        assert await make_worker().tick() is False

    async def test_tick_skips_while_busy(
        self,
        queue: PersistentCoverQueue,
        games: GameRepository,
        make_worker: Callable[..., CoverProcessorWorker],
    ) -> None:
        """A tick while the previous one still runs does nothing."""
        game = await games.add(title="Celeste", remote_image_id="co1wyy")
        await queue.enqueue(game.id, "co1wyy")
        worker = make_worker()
        worker._busy = True

        assert await worker.tick() is False
        assert (await queue.stats()).pending == 1

    async def test_http_error_routes_download_failure(
        self,
        queue: PersistentCoverQueue,
        games: GameRepository,
        make_worker: Callable[..., CoverProcessorWorker],
    ) -> None:
        """Non-200 download: item back to pending with a download error."""
        game = await games.add(title="Celeste", remote_image_id="co1wyy")
        queue_id = await queue.enqueue(game.id, "co1wyy")
        worker = make_worker(lambda request: httpx.Response(404))

        assert await worker.tick() is True

        item = await queue.get(queue_id)  # type: ignore[arg-type]
        assert item is not None
        assert item.status == QueueStatus.PENDING
        assert item.last_error is not None
        assert item.last_error.startswith("download: HTTP 404")
        assert worker.get_status()["stats"]["failed"] == 1

    async def test_network_error_routes_download_failure(
        self,
        queue: PersistentCoverQueue,
        games: GameRepository,
        make_worker: Callable[..., CoverProcessorWorker],
    ) -> None:
        """Connection errors are download errors too."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        game = await games.add(title="Celeste", remote_image_id="co1wyy")
        queue_id = await queue.enqueue(game.id, "co1wyy")

        await make_worker(handler).tick()

        item = await queue.get(queue_id)  # type: ignore[arg-type]
        assert item is not None
        assert item.last_error is not None
        assert item.last_error.startswith("download: network error")

    async def test_corrupt_image_routes_transform_failure(
        self,
        queue: PersistentCoverQueue,
        games: GameRepository,
        make_worker: Callable[..., CoverProcessorWorker],
    ) -> None:
        """Bytes Pillow can't read: transform error."""
        game = await games.add(title="Celeste", remote_image_id="co1wyy")
        queue_id = await queue.enqueue(game.id, "co1wyy")
        worker = make_worker(lambda request: httpx.Response(200, content=b"not an image"))

        await worker.tick()

        item = await queue.get(queue_id)  # type: ignore[arg-type]
        assert item is not None
        assert item.last_error is not None
        assert item.last_error.startswith("transform: ")

    async def test_store_failure_routes_storage_error(
        self,
        queue: PersistentCoverQueue,
        games: GameRepository,
        make_worker: Callable[..., CoverProcessorWorker],
    ) -> None:
        """Asset store write blowing up: storage error."""
        broken_store = MagicMock()
        broken_store.backend_name = "s3"
        broken_store.write = AsyncMock(side_effect=RuntimeError("bucket gone"))
        game = await games.add(title="Celeste", remote_image_id="co1wyy")
        queue_id = await queue.enqueue(game.id, "co1wyy")

        await make_worker(asset_store=broken_store).tick()

        item = await queue.get(queue_id)  # type: ignore[arg-type]
        assert item is not None
        assert item.last_error == "storage: s3 write failed: bucket gone"

    async def test_missing_catalog_entry_routes_catalog_error(
        self,
        queue: PersistentCoverQueue,
        make_worker: Callable[..., CoverProcessorWorker],
    ) -> None:
        """Game deleted while queued: catalog_update error."""
        queue_id = await queue.enqueue("ghost-game", "co1wyy")

        await make_worker().tick()

        item = await queue.get(queue_id)  # type: ignore[arg-type]
        assert item is not None
        assert item.last_error is not None
        assert item.last_error.startswith("catalog_update: ")

    async def test_repeated_failures_end_in_failed(
        self,
        queue: PersistentCoverQueue,
        games: GameRepository,
        make_worker: Callable[..., CoverProcessorWorker],
    ) -> None:
        """Three failing ticks exhaust the item."""
        game = await games.add(title="Celeste", remote_image_id="co1wyy")
        queue_id = await queue.enqueue(game.id, "co1wyy")
        worker = make_worker(lambda request: httpx.Response(500))

        for _ in range(3):
            assert await worker.tick() is True
        assert await worker.tick() is False

        item = await queue.get(queue_id)  # type: ignore[arg-type]
        assert item is not None
        assert item.status == QueueStatus.FAILED
        assert item.attempts == 3

    async def test_start_reclaims_and_stop(
        self,
        queue: PersistentCoverQueue,
        make_worker: Callable[..., CoverProcessorWorker],
        mocker: MagicMock,
    ) -> None:
        """start() reclaims stale leases once, stop() ends the loop."""
        reclaim = mocker.patch.object(
            queue, "reclaim_stale", AsyncMock(return_value=2)
        )
        worker = make_worker(tick_interval_seconds=0.01, lease_timeout_seconds=120)

        await worker.start()
        assert worker.is_running is True
        await worker.stop()

        reclaim.assert_any_await(120)
        status = worker.get_status()
        assert status["running"] is False
        assert status["stats"]["reclaimed"] >= 2
        assert status["instance_id"] == "test-worker"

    async def test_download_uses_shared_pool(
        self,
        queue: PersistentCoverQueue,
        games: GameRepository,
        make_worker: Callable[..., CoverProcessorWorker],
        httpx_mock: HTTPXMock,
    ) -> None:
        """Without an injected client the worker downloads through HttpClientPool."""
        httpx_mock.add_response(
            url=f"{IMAGE_BASE}/t_cover_big/co1wyy.jpg", content=_jpeg_bytes()
        )
        game = await games.add(title="Celeste", remote_image_id="co1wyy")
        queue_id = await queue.enqueue(game.id, "co1wyy")
        worker = make_worker(http_client=None)

        try:
            assert await worker.tick() is True
        finally:
            await HttpClientPool.close()

        item = await queue.get(queue_id)  # type: ignore[arg-type]
        assert item is not None
        assert item.status == QueueStatus.COMPLETED

    async def test_idle_tick_reclaims_expired_lease(
        self,
        queue: PersistentCoverQueue,
        games: GameRepository,
        db: Database,
        make_worker: Callable[..., CoverProcessorWorker],
    ) -> None:
        """A dead peer's item is released and processed by a running worker."""
        game = await games.add(title="Celeste", remote_image_id="co1wyy")
        queue_id = await queue.enqueue(game.id, "co1wyy")
        abandoned = await queue.claim_next("dead-host")
        assert abandoned is not None
        async with db.session_factory() as session:
            await session.execute(
                update(CoverQueueModel)
                .where(CoverQueueModel.id == queue_id)
                .values(claimed_at=utc_now() - timedelta(hours=2))
            )
            await session.commit()
        worker = make_worker(lease_timeout_seconds=60)

        assert await worker.tick() is False
        assert await worker.tick() is True

        item = await queue.get(queue_id)  # type: ignore[arg-type]
        assert item is not None
        assert item.status == QueueStatus.COMPLETED
        assert item.attempts == 2
        assert worker.get_status()["stats"]["reclaimed"] == 1

    async def test_cover_change_mid_flight_stores_new_cover(
        self,
        queue: PersistentCoverQueue,
        games: GameRepository,
        store: LocalAssetStore,
        make_worker: Callable[..., CoverProcessorWorker],
    ) -> None:
        """The old image never lands in the catalog, the retry stores the new one."""
        game = await games.add(
            title="Celeste",
            remote_id=26226,
            remote_image_id="co_old",
            metadata_checksum="sum-1",
        )
        queue_id = await queue.enqueue(game.id, "co_old")
        changed = GameMetadata(
            remote_id=26226, name="Celeste", cover_image_id="co_new", checksum="sum-2"
        )
        source = FakeMetadataSource({26226: changed})
        reconciliation = CoverReconciliationService(queue, games, store, source)
        requested: list[str] = []

        async def handler(request: httpx.Request) -> httpx.Response:
            # IGDB swaps the cover while the old image is downloading
            if not requested:
                await reconciliation.refresh_entry(game.id)
            requested.append(request.url.path.rsplit("/", 1)[-1])
            return _serve_jpeg(request)

        worker = make_worker(handler, metadata_source=source)

        assert await worker.tick() is True
        item = await queue.get(queue_id)  # type: ignore[arg-type]
        assert item is not None
        assert item.status == QueueStatus.PENDING
        assert item.remote_image_id == "co_new"
        assert item.last_error is not None
        assert item.last_error.startswith("catalog_update: ")
        entry = await games.get(game.id)
        assert entry is not None
        assert entry.local_asset_id is None
        assert list(store.base_path.rglob("*.webp")) == []

        assert await worker.tick() is True

        assert requested == ["co_old.jpg", "co_new.jpg"]
        item = await queue.get(queue_id)  # type: ignore[arg-type]
        assert item is not None
        assert item.status == QueueStatus.COMPLETED
        entry = await games.get(game.id)
        assert entry is not None
        assert entry.remote_image_id == "co_new"
        assert entry.local_asset_id == item.result_asset_id
