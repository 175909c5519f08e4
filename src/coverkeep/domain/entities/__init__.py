"""Domain entities."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, IntEnum
from typing import Any


class QueueStatus(str, Enum):
    """Lifecycle status of a cover queue item."""

    PENDING = "pending"  # Waiting to be claimed
    PROCESSING = "processing"  # Claimed by exactly one worker instance
    COMPLETED = "completed"
    FAILED = "failed"  # Attempts exhausted, never retried automatically


# Hey future me - these two sets drive everything! TERMINAL items are what cleanup() may
# delete. DEDUP_BLOCKING items are what enqueue() treats as "already queued" - note that
# COMPLETED blocks re-enqueue on purpose, only FAILED lets a game be queued again. The
# missing-asset healer deletes the old COMPLETED row first, otherwise it could never requeue.
TERMINAL_STATUSES: frozenset[QueueStatus] = frozenset(
    {QueueStatus.COMPLETED, QueueStatus.FAILED}
)
DEDUP_BLOCKING_STATUSES: frozenset[QueueStatus] = frozenset(
    {QueueStatus.PENDING, QueueStatus.PROCESSING, QueueStatus.COMPLETED}
)


class CoverPriority(IntEnum):
    """Queue priority bands. LOWER value = served FIRST."""

    USER = 1  # User asked for this game right now
    NEW_DISCOVERY = 5  # Catalog write path discovered a new game
    REFRESH = 7  # Staleness refresh or missing-asset re-enqueue
    BACKFILL = 10  # Startup reconciliation


@dataclass
class QueueItem:
    """One pending unit of cover acquisition work."""

    id: str
    game_id: str
    remote_image_id: str
    status: QueueStatus = QueueStatus.PENDING
    priority: int = CoverPriority.NEW_DISCOVERY
    attempts: int = 0
    max_attempts: int = 3
    claimed_by: str | None = None
    claimed_at: datetime | None = None
    result_asset_id: str | None = None
    last_error: str | None = None
    completed_at: datetime | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_terminal(self) -> bool:
        """True once the item will never be picked up again."""
        return self.status in TERMINAL_STATUSES

    @property
    def can_retry(self) -> bool:
        """True if a failure right now would send the item back to pending."""
        return self.attempts < self.max_attempts


@dataclass
class QueueStats:
    """Item counts per queue status."""

    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.processing + self.completed + self.failed

    @property
    def outstanding(self) -> int:
        """Items that still need a worker (pending + processing)."""
        return self.pending + self.processing

    def to_dict(self) -> dict[str, int]:
        return {
            "pending": self.pending,
            "processing": self.processing,
            "completed": self.completed,
            "failed": self.failed,
            "total": self.total,
        }


# Hey future me, CatalogEntry is the game record the pipeline writes the cover pointer back
# into. remote_id is the IGDB game id (int), remote_image_id is the IGDB cover image_id
# (string like "co1wyy"). local_asset_* is OUR stored copy - all three are set together by
# the worker and cleared together by reconciliation. Don't set one without the others!
@dataclass
class CatalogEntry:
    """Game catalog record as seen by the cover pipeline."""

    id: str
    remote_id: int | None
    title: str
    remote_image_id: str | None = None
    metadata_checksum: str | None = None
    local_asset_id: str | None = None
    local_asset_url: str | None = None
    local_updated_at: datetime | None = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def has_local_asset(self) -> bool:
        return bool(self.local_asset_id and self.local_asset_url)

    @property
    def needs_cover(self) -> bool:
        """True if there's a remote cover but we never stored our own copy."""
        return bool(self.remote_image_id) and not self.local_asset_id


@dataclass
class StoredAsset:
    """Result of writing an asset to the active store."""

    asset_id: str
    url: str
    key: str
    content_type: str = "image/webp"
    size: int = 0
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass
class GameMetadata:
    """Normalized game record from the metadata source (IGDB).

    checksum is IGDB's own hash of the record. Reconciliation compares it with the stored
    metadata_checksum to decide between a cheap heartbeat and a real metadata update.
    """

    remote_id: int
    name: str
    slug: str | None = None
    summary: str | None = None
    storyline: str | None = None
    platforms: list[str] = field(default_factory=list)
    genres: list[str] = field(default_factory=list)
    themes: list[str] = field(default_factory=list)
    release_date: datetime | None = None
    release_year: int | None = None
    developer: str | None = None
    publisher: str | None = None
    cover_image_id: str | None = None
    rating: float | None = None
    aggregated_rating: float | None = None
    remote_updated_at: datetime | None = None
    checksum: str | None = None

    def to_catalog_fields(self) -> dict[str, Any]:
        """Columns a catalog entry takes over from this record."""
        return {
            "remote_id": self.remote_id,
            "title": self.name,
            "slug": self.slug,
            "summary": self.summary,
            "storyline": self.storyline,
            "platforms": list(self.platforms),
            "genres": list(self.genres),
            "themes": list(self.themes),
            "release_date": self.release_date,
            "release_year": self.release_year,
            "developer": self.developer,
            "publisher": self.publisher,
            "remote_image_id": self.cover_image_id,
            "rating": self.rating,
            "aggregated_rating": self.aggregated_rating,
            "remote_updated_at": self.remote_updated_at,
            "metadata_checksum": self.checksum,
        }


__all__ = [
    "DEDUP_BLOCKING_STATUSES",
    "TERMINAL_STATUSES",
    "CatalogEntry",
    "CoverPriority",
    "GameMetadata",
    "QueueItem",
    "QueueStats",
    "QueueStatus",
    "StoredAsset",
]
