"""Repository implementations for domain entities."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coverkeep.domain.entities import CatalogEntry, GameMetadata
from coverkeep.domain.exceptions import EntityNotFoundException, StaleCoverError

from .models import GameModel, ensure_utc_aware, utc_now


def _model_to_entry(model: GameModel) -> CatalogEntry:
    return CatalogEntry(
        id=model.id,
        remote_id=model.remote_id,
        title=model.title,
        remote_image_id=model.remote_image_id,
        metadata_checksum=model.metadata_checksum,
        local_asset_id=model.local_asset_id,
        local_asset_url=model.local_asset_url,
        local_updated_at=ensure_utc_aware(model.local_updated_at)
        if model.local_updated_at
        else None,
        updated_at=ensure_utc_aware(model.updated_at),
    )


# Hey future me, GameRepository is the ONLY way the cover pipeline touches the catalog!
# Unlike request-scoped repositories it takes the session FACTORY and opens a short session
# per call. The worker and the reconciliation pass call it per entry inside their own
# try/except, and one entry's failed write must not poison the session of the next one.
class GameRepository:
    """Catalog access for the cover pipeline."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def add(
        self,
        title: str,
        remote_id: int | None = None,
        remote_image_id: str | None = None,
        metadata_checksum: str | None = None,
        local_asset_id: str | None = None,
        local_asset_url: str | None = None,
        updated_at: datetime | None = None,
        game_id: str | None = None,
    ) -> CatalogEntry:
        """Insert a catalog entry."""
        now = utc_now()
        model = GameModel(
            title=title,
            remote_id=remote_id,
            remote_image_id=remote_image_id,
            metadata_checksum=metadata_checksum,
            local_asset_id=local_asset_id,
            local_asset_url=local_asset_url,
            local_updated_at=now if local_asset_id else None,
            created_at=now,
            updated_at=updated_at or now,
        )
        if game_id:
            model.id = game_id
        async with self._session_factory() as session:
            session.add(model)
            await session.commit()
            return _model_to_entry(model)

    async def get(self, game_id: str) -> CatalogEntry | None:
        async with self._session_factory() as session:
            model = await session.get(GameModel, game_id)
            return _model_to_entry(model) if model else None

    async def list_stale(
        self, cutoff: datetime, after_id: str | None, limit: int
    ) -> list[CatalogEntry]:
        """Entries not updated since cutoff, keyset-paginated by id.

        Callers pass the last id of the previous page as after_id. Entries that get
        touched during the pass move past the cutoff, but paging on id still walks
        forward so the pass always ends.
        """
        stmt = select(GameModel).where(GameModel.updated_at < cutoff)
        if after_id is not None:
            stmt = stmt.where(GameModel.id > after_id)
        stmt = stmt.order_by(GameModel.id).limit(limit)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_model_to_entry(m) for m in result.scalars().all()]

    async def list_missing_local_asset(self, limit: int) -> list[CatalogEntry]:
        """Entries that have a remote cover but no stored copy, oldest first."""
        stmt = (
            select(GameModel)
            .where(
                GameModel.remote_image_id.is_not(None),
                GameModel.local_asset_id.is_(None),
            )
            .order_by(GameModel.created_at, GameModel.id)
            .limit(limit)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_model_to_entry(m) for m in result.scalars().all()]

    async def set_local_asset(
        self,
        game_id: str,
        asset_id: str,
        url: str,
        remote_image_id: str | None = None,
    ) -> None:
        """Point the entry at its stored cover copy.

        Hey future me - pass the remote_image_id the asset was made from! The write
        is then conditional on the entry STILL using that image. A cover change that
        lands while the old image is being processed would otherwise be overwritten
        with the old picture, and the next checksum heartbeat would never notice.

        Raises:
            EntityNotFoundException: If the entry doesn't exist (anymore)
            StaleCoverError: If the entry moved on to another remote image
        """
        now = utc_now()
        stmt = update(GameModel).where(GameModel.id == game_id)
        if remote_image_id is not None:
            stmt = stmt.where(GameModel.remote_image_id == remote_image_id)
        async with self._session_factory() as session:
            result = await session.execute(
                stmt.values(
                    local_asset_id=asset_id,
                    local_asset_url=url,
                    local_updated_at=now,
                    updated_at=now,
                )
            )
            await session.commit()

        if result.rowcount == 0:
            if remote_image_id is not None and await self.get(game_id) is not None:
                raise StaleCoverError(game_id, remote_image_id)
            raise EntityNotFoundException("Game", game_id)

    async def clear_local_asset(
        self, game_id: str, expected_asset_id: str | None = None
    ) -> bool:
        """Drop the entry's cover pointer.

        With expected_asset_id the clear only happens while the entry still points
        at that asset. Returns False when the pointer moved on in the meantime,
        e.g. the worker just stored a fresh cover.
        """
        stmt = update(GameModel).where(GameModel.id == game_id)
        if expected_asset_id is not None:
            stmt = stmt.where(GameModel.local_asset_id == expected_asset_id)
        async with self._session_factory() as session:
            result = await session.execute(
                stmt.values(
                    local_asset_id=None,
                    local_asset_url=None,
                    local_updated_at=None,
                    updated_at=utc_now(),
                )
            )
            await session.commit()
        return (result.rowcount or 0) > 0

    async def touch(self, game_id: str) -> bool:
        """Heartbeat: bump updated_at without changing anything else."""
        async with self._session_factory() as session:
            result = await session.execute(
                update(GameModel)
                .where(GameModel.id == game_id)
                .values(updated_at=utc_now())
            )
            await session.commit()
        return (result.rowcount or 0) > 0

    async def apply_metadata(self, game_id: str, metadata: GameMetadata) -> CatalogEntry:
        """Overwrite the entry's metadata with a fresh source record.

        A different cover image drops the stored cover pointer in the same write.
        The comparison runs against the row, not the caller's snapshot, so a cover
        the worker stored after the snapshot was taken is dropped too.

        Raises:
            EntityNotFoundException: If the entry doesn't exist
        """
        async with self._session_factory() as session:
            model = await session.get(GameModel, game_id)
            if model is None:
                raise EntityNotFoundException("Game", game_id)

            cover_changed = model.remote_image_id != metadata.cover_image_id
            for column, value in metadata.to_catalog_fields().items():
                setattr(model, column, value)
            if cover_changed:
                model.local_asset_id = None
                model.local_asset_url = None
                model.local_updated_at = None
            model.updated_at = utc_now()

            await session.commit()
            return _model_to_entry(model)
