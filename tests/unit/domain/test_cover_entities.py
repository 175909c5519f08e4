"""Tests for cover pipeline entities and errors."""

from coverkeep.domain.entities import (
    DEDUP_BLOCKING_STATUSES,
    TERMINAL_STATUSES,
    CatalogEntry,
    CoverPriority,
    QueueItem,
    QueueStats,
    QueueStatus,
)
from coverkeep.domain.exceptions import (
    CatalogUpdateError,
    CoverPipelineError,
    DownloadError,
    ErrorKind,
    StorageError,
    TransformError,
)


class TestQueueStatus:
    """Test status groupings."""

    def test_failed_does_not_block_dedup(self) -> None:
        """Only failed items let a game be queued again."""
        assert QueueStatus.FAILED not in DEDUP_BLOCKING_STATUSES
        assert QueueStatus.COMPLETED in DEDUP_BLOCKING_STATUSES

    def test_terminal_statuses(self) -> None:
        """Completed and failed are terminal."""
        assert TERMINAL_STATUSES == {QueueStatus.COMPLETED, QueueStatus.FAILED}

    def test_priority_order(self) -> None:
        """Lower value means served first."""
        assert (
            CoverPriority.USER
            < CoverPriority.NEW_DISCOVERY
            < CoverPriority.REFRESH
            < CoverPriority.BACKFILL
        )


class TestQueueItem:
    """Test QueueItem helpers."""

    def test_can_retry(self) -> None:
        """Retry allowed while attempts < max_attempts."""
        item = QueueItem(id="q1", game_id="g1", remote_image_id="co1", attempts=2)
        assert item.can_retry is True

        item.attempts = 3
        assert item.can_retry is False

    def test_is_terminal(self) -> None:
        """Pending isn't terminal, failed is."""
        item = QueueItem(id="q1", game_id="g1", remote_image_id="co1")
        assert item.is_terminal is False

        item.status = QueueStatus.FAILED
        assert item.is_terminal is True

    def test_stats(self) -> None:
        """Totals and outstanding count."""
        stats = QueueStats(pending=2, processing=1, completed=5, failed=1)

        assert stats.total == 9
        assert stats.outstanding == 3


class TestCatalogEntry:
    """Test CatalogEntry helpers."""

    def test_needs_cover(self) -> None:
        """Remote cover without stored copy needs processing."""
        assert CatalogEntry(id="g1", remote_id=1, title="x", remote_image_id="co1").needs_cover
        assert not CatalogEntry(id="g1", remote_id=1, title="x").needs_cover

    def test_has_local_asset_needs_both_fields(self) -> None:
        """A half-written pointer isn't a usable asset."""
        entry = CatalogEntry(id="g1", remote_id=1, title="x", local_asset_id="a1")

        assert entry.has_local_asset is False


class TestPipelineErrors:
    """Test error kinds and describe()."""

    def test_each_error_has_kind(self) -> None:
        """Every subclass maps to exactly one kind."""
        assert DownloadError("x").kind == ErrorKind.DOWNLOAD
        assert TransformError("x").kind == ErrorKind.TRANSFORM
        assert StorageError("x").kind == ErrorKind.STORAGE
        assert CatalogUpdateError("x").kind == ErrorKind.CATALOG_UPDATE

    def test_describe(self) -> None:
        """describe() prefixes the kind."""
        error: CoverPipelineError = DownloadError("HTTP 503 fetching url", status_code=503)

        assert error.describe() == "download: HTTP 503 fetching url"
        assert error.status_code == 503  # type: ignore[attr-defined]
