"""SQLAlchemy ORM models for coverkeep."""

import uuid
from datetime import UTC, datetime
from typing import Any

import sqlalchemy as sa
from sqlalchemy import JSON, Float, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Hey future me, utc_now() ensures ALL timestamps are UTC! Never use datetime.now() without
# timezone - naive datetimes break ordering and cutoff comparisons the moment two hosts
# disagree on their local zone.
def utc_now() -> datetime:
    """Get current UTC time."""
    return datetime.now(UTC)


# Hey future me - SQLite doesn't preserve timezone info! Stored UTC datetimes come back
# naive. ALWAYS run DB datetimes through this before comparing with datetime.now(UTC),
# otherwise you get "can't compare offset-naive and offset-aware" TypeError.
def ensure_utc_aware(dt: datetime) -> datetime:
    """Ensure datetime is UTC-aware, assuming naive datetimes are UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


def _new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# Hey future me, GameModel is the catalog entry the cover pipeline feeds! remote_id is
# the IGDB game id and remote_image_id the IGDB cover image_id. The local_asset_* trio is
# OUR stored WebP copy - worker sets it, reconciliation clears it. updated_at doubles as
# the staleness clock: refresh_stale() picks rows whose updated_at is older than the
# freshness window, so EVERY write here (even a no-change heartbeat) must bump it.
class GameModel(Base):
    """Game catalog entry."""

    __tablename__ = "games"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    remote_id: Mapped[int | None] = mapped_column(
        Integer, nullable=True, unique=True, index=True
    )
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    slug: Mapped[str | None] = mapped_column(String(500), nullable=True)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    storyline: Mapped[str | None] = mapped_column(Text, nullable=True)
    platforms: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    genres: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    themes: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    release_date: Mapped[datetime | None] = mapped_column(
        sa.DateTime(timezone=True), nullable=True
    )
    release_year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    developer: Mapped[str | None] = mapped_column(String(255), nullable=True)
    publisher: Mapped[str | None] = mapped_column(String(255), nullable=True)
    rating: Mapped[float | None] = mapped_column(Float, nullable=True)
    aggregated_rating: Mapped[float | None] = mapped_column(Float, nullable=True)
    remote_updated_at: Mapped[datetime | None] = mapped_column(
        sa.DateTime(timezone=True), nullable=True
    )
    metadata_checksum: Mapped[str | None] = mapped_column(String(64), nullable=True)
    # Remote cover reference (IGDB image_id)
    remote_image_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    # Our stored copy
    local_asset_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    local_asset_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    local_updated_at: Mapped[datetime | None] = mapped_column(
        sa.DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, default=utc_now, index=True
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "remote_id": self.remote_id,
            "title": self.title,
            "remote_image_id": self.remote_image_id,
            "local_asset_id": self.local_asset_id,
            "local_asset_url": self.local_asset_url,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


# =============================================================================
# COVER QUEUE
# =============================================================================
# Hey future me - this table IS the queue, there's no in-memory copy anywhere! Any
# number of worker instances poll it. Claiming is a conditional UPDATE on status, see
# PersistentCoverQueue.claim_next().
#
# The partial unique index is the dedup backstop: at most ONE pending/processing/
# completed row per game. Two writers racing enqueue() for the same game -> the second
# INSERT hits this index and the queue resolves to the first writer's id. FAILED rows
# are outside the index, so a failed game can be queued again.
# =============================================================================

_DEDUP_WHERE = sa.text("status IN ('pending', 'processing', 'completed')")


class CoverQueueModel(Base):
    """Durable cover acquisition work item."""

    __tablename__ = "cover_queue"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    game_id: Mapped[str] = mapped_column(String(36), nullable=False)
    remote_image_id: Mapped[str] = mapped_column(String(64), nullable=False)
    # Status: pending, processing, completed, failed
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    # Priority: LOWER = processed first
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    # Worker lease
    claimed_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(
        sa.DateTime(timezone=True), nullable=True
    )
    result_asset_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(
        sa.DateTime(timezone=True), nullable=True
    )
    # Python-side default keeps microsecond precision for FIFO ordering
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        # claim_next(): pending items by priority, oldest first
        Index("ix_cover_queue_claim", "status", "priority", "created_at"),
        # enqueue() dedup lookup
        Index("ix_cover_queue_game_status", "game_id", "status"),
        # cleanup() retention sweep
        Index("ix_cover_queue_status_updated", "status", "updated_at"),
        Index(
            "uq_cover_queue_game_active",
            "game_id",
            unique=True,
            sqlite_where=_DEDUP_WHERE,
            postgresql_where=_DEDUP_WHERE,
        ),
    )
