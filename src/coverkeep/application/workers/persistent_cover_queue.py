"""Persistent Cover Queue - the durable store of cover acquisition work.

Hey future me - this table-backed queue is the ONLY coordination point between
worker instances! There is no in-memory copy and no broker. Every instance (the
same process, another container, a second host) polls the same table and claims
items with a conditional UPDATE.

LIFECYCLE:
```
enqueue() -> pending --claim_next()--> processing --mark_completed()--> completed
                ^                          |
                |                          +--mark_failed()--> attempts < max? pending
                |                          |                                 : failed
                +---reclaim_stale()--------+  (lease expired, worker died mid-item)
```

GUARANTEES:
- Dedup: at most one pending/processing/completed item per game. enqueue() checks
  first, the partial unique index on cover_queue catches writers that race past the
  check. Failed items don't block, a failed game can be queued again.
- Claim atomicity: the status CAS in claim_next() means two callers can never get
  the same item, even on different hosts.
- Never resurrects: mark_failed() only touches pending/processing rows.

USAGE:
```python
queue = PersistentCoverQueue(session_factory=db.session_factory)
queue_id = await queue.enqueue(game.id, game.remote_image_id, CoverPriority.USER)
item = await queue.claim_next("worker-a1b2c3d4")
```
"""

import logging
from collections.abc import Iterable
from datetime import datetime, timedelta

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coverkeep.domain.entities import (
    DEDUP_BLOCKING_STATUSES,
    TERMINAL_STATUSES,
    CoverPriority,
    QueueItem,
    QueueStats,
    QueueStatus,
)
from coverkeep.infrastructure.persistence.models import (
    CoverQueueModel,
    ensure_utc_aware,
    utc_now,
)

logger = logging.getLogger(__name__)

_DEDUP_VALUES = [status.value for status in DEDUP_BLOCKING_STATUSES]
_TERMINAL_VALUES = [status.value for status in TERMINAL_STATUSES]
_RETRYABLE_VALUES = [QueueStatus.PENDING.value, QueueStatus.PROCESSING.value]


class PersistentCoverQueue:
    """Database-backed cover queue shared by every worker instance.

    Each operation opens its own short session, so callers never hold a
    transaction across network calls.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        default_max_attempts: int = 3,
        max_claim_attempts: int = 5,
    ) -> None:
        """Initialize queue store.

        Args:
            session_factory: Factory for creating DB sessions
            default_max_attempts: max_attempts for items enqueued without one
            max_claim_attempts: How many candidates claim_next() tries after
                losing the CAS race before giving up for this tick
        """
        self._session_factory = session_factory
        self._default_max_attempts = default_max_attempts
        self._max_claim_attempts = max_claim_attempts

    async def enqueue(
        self,
        game_id: str | None,
        remote_image_id: str | None,
        priority: int = CoverPriority.NEW_DISCOVERY,
        max_attempts: int | None = None,
    ) -> str | None:
        """Queue a cover download for a game (deduplicated).

        Hey future me - the guard on missing ids is SILENT on purpose. Catalog write
        paths call this for every game, most of which have no cover at all.

        Returns:
            The new item id, the id of the existing pending/processing/completed
            item for the game, or None when game_id/remote_image_id is missing
        """
        if not game_id or not remote_image_id:
            return None

        existing_id = await self._find_blocking_id(game_id)
        if existing_id is not None:
            logger.debug(
                f"Cover for game {game_id} already queued as {existing_id}, skipping"
            )
            return existing_id

        now = utc_now()
        model = CoverQueueModel(
            game_id=game_id,
            remote_image_id=remote_image_id,
            status=QueueStatus.PENDING.value,
            priority=int(priority),
            attempts=0,
            max_attempts=max_attempts or self._default_max_attempts,
            created_at=now,
            updated_at=now,
        )
        try:
            async with self._session_factory() as session:
                session.add(model)
                await session.commit()
                queue_id = model.id
        except IntegrityError:
            # Another writer inserted between our check and our INSERT.
            # First writer wins, hand back its id.
            winner_id = await self._find_blocking_id(game_id)
            if winner_id is None:
                raise
            logger.debug(f"Lost enqueue race for game {game_id}, using {winner_id}")
            return winner_id

        logger.debug(
            f"Queued cover {remote_image_id} for game {game_id} "
            f"as {queue_id} (priority {int(priority)})"
        )
        return queue_id

    async def enqueue_many(
        self,
        entries: Iterable[tuple[str | None, str | None]],
        priority: int = CoverPriority.NEW_DISCOVERY,
    ) -> list[str]:
        """Queue covers for several (game_id, remote_image_id) pairs.

        Returns:
            Ids of every item that was queued or already queued
        """
        queue_ids: list[str] = []
        for game_id, remote_image_id in entries:
            queue_id = await self.enqueue(game_id, remote_image_id, priority)
            if queue_id is not None:
                queue_ids.append(queue_id)
        return queue_ids

    async def claim_next(self, worker_instance_id: str) -> QueueItem | None:
        """Atomically claim the most urgent pending item.

        Picks lowest priority first, then oldest created_at, and flips it to
        processing with a conditional UPDATE. If another instance won the same
        candidate (rowcount 0), the next candidate is tried.

        Returns:
            The claimed item (attempts already incremented), or None if nothing
            is pending
        """
        for _ in range(self._max_claim_attempts):
            async with self._session_factory() as session:
                candidate_id = await session.scalar(
                    select(CoverQueueModel.id)
                    .where(CoverQueueModel.status == QueueStatus.PENDING.value)
                    .order_by(
                        CoverQueueModel.priority,
                        CoverQueueModel.created_at,
                        CoverQueueModel.id,
                    )
                    .limit(1)
                )
                if candidate_id is None:
                    return None

                now = utc_now()
                result = await session.execute(
                    update(CoverQueueModel)
                    .where(
                        CoverQueueModel.id == candidate_id,
                        CoverQueueModel.status == QueueStatus.PENDING.value,
                    )
                    .values(
                        status=QueueStatus.PROCESSING.value,
                        claimed_by=worker_instance_id,
                        claimed_at=now,
                        updated_at=now,
                        attempts=CoverQueueModel.attempts + 1,
                    )
                )
                await session.commit()

                if result.rowcount == 1:
                    model = await session.get(CoverQueueModel, candidate_id)
                    if model is not None:
                        return self._model_to_item(model)

            logger.debug(f"Lost claim race for {candidate_id}, trying next candidate")

        return None

    async def mark_completed(self, queue_id: str, result_asset_id: str) -> bool:
        """Mark a claimed item completed and release its lease."""
        now = utc_now()
        async with self._session_factory() as session:
            result = await session.execute(
                update(CoverQueueModel)
                .where(
                    CoverQueueModel.id == queue_id,
                    CoverQueueModel.status.in_(_RETRYABLE_VALUES),
                )
                .values(
                    status=QueueStatus.COMPLETED.value,
                    result_asset_id=result_asset_id,
                    completed_at=now,
                    updated_at=now,
                    last_error=None,
                    claimed_by=None,
                    claimed_at=None,
                )
            )
            await session.commit()

        if result.rowcount == 0:
            logger.warning(f"Queue item {queue_id} not found for completion update")
            return False
        return True

    async def mark_failed(self, queue_id: str, error_message: str) -> QueueStatus | None:
        """Record a failure and route the item to pending (retry) or failed.

        Single UPDATE: attempts >= max_attempts -> failed, otherwise pending.
        Terminal items are never touched.

        Returns:
            The status the item ended up in, or None if it wasn't retryable
        """
        now = utc_now()
        exhausted = CoverQueueModel.attempts >= CoverQueueModel.max_attempts
        async with self._session_factory() as session:
            result = await session.execute(
                update(CoverQueueModel)
                .where(
                    CoverQueueModel.id == queue_id,
                    CoverQueueModel.status.in_(_RETRYABLE_VALUES),
                )
                .values(
                    status=case(
                        (exhausted, QueueStatus.FAILED.value),
                        else_=QueueStatus.PENDING.value,
                    ),
                    completed_at=case((exhausted, now), else_=None),
                    last_error=error_message,
                    updated_at=now,
                    claimed_by=None,
                    claimed_at=None,
                )
            )
            if result.rowcount == 0:
                await session.rollback()
                logger.warning(f"Queue item {queue_id} not retryable, failure dropped")
                return None

            row = await session.execute(
                select(
                    CoverQueueModel.status,
                    CoverQueueModel.attempts,
                    CoverQueueModel.max_attempts,
                ).where(CoverQueueModel.id == queue_id)
            )
            status_value, attempts, max_attempts = row.one()
            await session.commit()

        status = QueueStatus(status_value)
        if status == QueueStatus.FAILED:
            logger.warning(
                f"Queue item {queue_id} failed permanently after {attempts} attempts: "
                f"{error_message}"
            )
        else:
            logger.info(
                f"Queue item {queue_id} failed (attempt {attempts}/{max_attempts}), "
                f"will retry: {error_message}"
            )
        return status

    async def stats(self) -> QueueStats:
        """Count items per status."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(CoverQueueModel.status, func.count(CoverQueueModel.id)).group_by(
                    CoverQueueModel.status
                )
            )
            counts = {status: count for status, count in result.all()}

        return QueueStats(
            pending=counts.get(QueueStatus.PENDING.value, 0),
            processing=counts.get(QueueStatus.PROCESSING.value, 0),
            completed=counts.get(QueueStatus.COMPLETED.value, 0),
            failed=counts.get(QueueStatus.FAILED.value, 0),
        )

    async def has_outstanding_work(self) -> bool:
        """True if anything is pending or processing."""
        async with self._session_factory() as session:
            found = await session.scalar(
                select(CoverQueueModel.id)
                .where(CoverQueueModel.status.in_(_RETRYABLE_VALUES))
                .limit(1)
            )
        return found is not None

    async def cleanup(self, max_age_days: int = 7) -> int:
        """Delete completed/failed items not updated for max_age_days.

        Pending and processing items are never deleted, whatever their age.

        Returns:
            Number of items deleted
        """
        cutoff = utc_now() - timedelta(days=max_age_days)
        async with self._session_factory() as session:
            result = await session.execute(
                delete(CoverQueueModel).where(
                    CoverQueueModel.status.in_(_TERMINAL_VALUES),
                    CoverQueueModel.updated_at < cutoff,
                )
            )
            await session.commit()

        deleted = result.rowcount or 0
        if deleted > 0:
            logger.info(
                f"Cleaned up {deleted} finished queue items older than {max_age_days} days"
            )
        return deleted

    async def reclaim_stale(self, lease_timeout_seconds: int) -> int:
        """Release items whose worker died mid-processing.

        Hey future me - a processing item whose claimed_at is older than the lease
        belongs to an instance that crashed or hung. It goes back to pending, or to
        failed when the claim that got lost was its last attempt.

        Returns:
            Number of items released
        """
        now = utc_now()
        threshold = now - timedelta(seconds=lease_timeout_seconds)
        exhausted = CoverQueueModel.attempts >= CoverQueueModel.max_attempts
        expired = (
            CoverQueueModel.status == QueueStatus.PROCESSING.value,
            CoverQueueModel.claimed_at < threshold,
        )
        async with self._session_factory() as session:
            # Idle workers call this every tick, read first so a healthy queue
            # never takes the write lock
            found = await session.scalar(
                select(CoverQueueModel.id).where(*expired).limit(1)
            )
            if found is None:
                return 0

            result = await session.execute(
                update(CoverQueueModel)
                .where(*expired)
                .values(
                    status=case(
                        (exhausted, QueueStatus.FAILED.value),
                        else_=QueueStatus.PENDING.value,
                    ),
                    completed_at=case((exhausted, now), else_=None),
                    last_error=f"lease expired after {lease_timeout_seconds}s",
                    updated_at=now,
                    claimed_by=None,
                    claimed_at=None,
                )
            )
            await session.commit()

        reclaimed = result.rowcount or 0
        if reclaimed > 0:
            logger.warning(f"Reclaimed {reclaimed} queue items with expired leases")
        return reclaimed

    async def get(self, queue_id: str) -> QueueItem | None:
        async with self._session_factory() as session:
            model = await session.get(CoverQueueModel, queue_id)
            return self._model_to_item(model) if model else None

    async def find_for_game(self, game_id: str) -> list[QueueItem]:
        """All items of a game, oldest first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(CoverQueueModel)
                .where(CoverQueueModel.game_id == game_id)
                .order_by(CoverQueueModel.created_at)
            )
            return [self._model_to_item(m) for m in result.scalars().all()]

    async def delete_completed_for_game(
        self, game_id: str, completed_before: datetime | None = None
    ) -> int:
        """Drop a game's completed item(s) so the game can be queued again.

        With completed_before, items completed at or after that moment survive.
        Those belong to a cover that was stored while the caller was deciding.
        """
        stmt = delete(CoverQueueModel).where(
            CoverQueueModel.game_id == game_id,
            CoverQueueModel.status == QueueStatus.COMPLETED.value,
        )
        if completed_before is not None:
            stmt = stmt.where(CoverQueueModel.completed_at < completed_before)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount or 0

    async def retarget_outstanding(
        self, game_id: str, remote_image_id: str
    ) -> str | None:
        """Point a game's pending/processing item at a new remote image.

        Hey future me - this is what a cover change does to work already in
        flight. A pending item simply downloads the new image when claimed. A
        processing item keeps working on the OLD image in memory, its catalog
        write is then refused (StaleCoverError) and the retry picks up the new
        image id from this row.

        Returns:
            Id of the retargeted item, None if the game had no outstanding item
        """
        async with self._session_factory() as session:
            result = await session.execute(
                update(CoverQueueModel)
                .where(
                    CoverQueueModel.game_id == game_id,
                    CoverQueueModel.status.in_(_RETRYABLE_VALUES),
                )
                .values(remote_image_id=remote_image_id, updated_at=utc_now())
            )
            if result.rowcount == 0:
                await session.rollback()
                return None
            queue_id = await session.scalar(
                select(CoverQueueModel.id)
                .where(
                    CoverQueueModel.game_id == game_id,
                    CoverQueueModel.status.in_(_RETRYABLE_VALUES),
                )
                .limit(1)
            )
            await session.commit()

        logger.info(
            f"Retargeted queue item {queue_id} of game {game_id} to {remote_image_id}"
        )
        return queue_id

    async def _find_blocking_id(self, game_id: str) -> str | None:
        async with self._session_factory() as session:
            return await session.scalar(
                select(CoverQueueModel.id)
                .where(
                    CoverQueueModel.game_id == game_id,
                    CoverQueueModel.status.in_(_DEDUP_VALUES),
                )
                .limit(1)
            )

    @staticmethod
    def _model_to_item(model: CoverQueueModel) -> QueueItem:
        """Convert DB model to QueueItem dataclass."""
        return QueueItem(
            id=model.id,
            game_id=model.game_id,
            remote_image_id=model.remote_image_id,
            status=QueueStatus(model.status),
            priority=model.priority,
            attempts=model.attempts,
            max_attempts=model.max_attempts,
            claimed_by=model.claimed_by,
            claimed_at=ensure_utc_aware(model.claimed_at) if model.claimed_at else None,
            result_asset_id=model.result_asset_id,
            last_error=model.last_error,
            completed_at=ensure_utc_aware(model.completed_at)
            if model.completed_at
            else None,
            created_at=ensure_utc_aware(model.created_at),
            updated_at=ensure_utc_aware(model.updated_at),
        )
