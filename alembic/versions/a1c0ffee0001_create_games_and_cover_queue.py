"""create games and cover_queue tables

Revision ID: a1c0ffee0001
Revises:
Create Date: 2026-10-19 12:00:00.000000

Hey future me - this is the whole cover pipeline schema!

games: the catalog entry. remote_image_id is the IGDB cover image_id,
local_asset_* is our stored WebP copy, updated_at is the staleness clock.

cover_queue: the durable queue. Every instance polls it.

INDEXES:
- ix_cover_queue_claim: status + priority + created_at for claim_next()
- ix_cover_queue_game_status: dedup lookup in enqueue()
- ix_cover_queue_status_updated: cleanup() retention sweep
- uq_cover_queue_game_active: PARTIAL unique index, one pending/processing/
  completed item per game even when two writers race past the dedup check
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "a1c0ffee0001"
down_revision = None
branch_labels = None
depends_on = None

_DEDUP_WHERE = sa.text("status IN ('pending', 'processing', 'completed')")


def upgrade() -> None:
    op.create_table(
        "games",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("remote_id", sa.Integer, nullable=True),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("slug", sa.String(500), nullable=True),
        sa.Column("summary", sa.Text, nullable=True),
        sa.Column("storyline", sa.Text, nullable=True),
        sa.Column("platforms", sa.JSON, nullable=False),
        sa.Column("genres", sa.JSON, nullable=False),
        sa.Column("themes", sa.JSON, nullable=False),
        sa.Column("release_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("release_year", sa.Integer, nullable=True),
        sa.Column("developer", sa.String(255), nullable=True),
        sa.Column("publisher", sa.String(255), nullable=True),
        sa.Column("rating", sa.Float, nullable=True),
        sa.Column("aggregated_rating", sa.Float, nullable=True),
        sa.Column("remote_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata_checksum", sa.String(64), nullable=True),
        sa.Column("remote_image_id", sa.String(64), nullable=True),
        sa.Column("local_asset_id", sa.String(64), nullable=True),
        sa.Column("local_asset_url", sa.String(1024), nullable=True),
        sa.Column("local_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_games_remote_id", "games", ["remote_id"], unique=True)
    op.create_index("ix_games_updated_at", "games", ["updated_at"])

    op.create_table(
        "cover_queue",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("game_id", sa.String(36), nullable=False),
        sa.Column("remote_image_id", sa.String(64), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("priority", sa.Integer, nullable=False, server_default="5"),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="3"),
        sa.Column("claimed_by", sa.String(100), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("result_asset_id", sa.String(64), nullable=True),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_cover_queue_claim", "cover_queue", ["status", "priority", "created_at"]
    )
    op.create_index("ix_cover_queue_game_status", "cover_queue", ["game_id", "status"])
    op.create_index(
        "ix_cover_queue_status_updated", "cover_queue", ["status", "updated_at"]
    )
    op.create_index(
        "uq_cover_queue_game_active",
        "cover_queue",
        ["game_id"],
        unique=True,
        sqlite_where=_DEDUP_WHERE,
        postgresql_where=_DEDUP_WHERE,
    )


def downgrade() -> None:
    op.drop_index("uq_cover_queue_game_active", table_name="cover_queue")
    op.drop_index("ix_cover_queue_status_updated", table_name="cover_queue")
    op.drop_index("ix_cover_queue_game_status", table_name="cover_queue")
    op.drop_index("ix_cover_queue_claim", table_name="cover_queue")
    op.drop_table("cover_queue")
    op.drop_index("ix_games_updated_at", table_name="games")
    op.drop_index("ix_games_remote_id", table_name="games")
    op.drop_table("games")
