# Hey future me - ReconciliationWorker is the SCHEDULER role!
#
# Runs on instances with the "scheduler" role (usually exactly one). First cycle
# after initial_delay_seconds, then every interval_hours. Each cycle:
# 1. reclaim_stale()   - release items whose worker died mid-processing
# 2. refresh_stale()   - IGDB checksum refresh + missing-asset healing
# 3. cleanup()         - drop completed/failed items past retention
#
# Step 2 is skipped when IGDB isn't configured, 1 and 3 never are. A failing step
# is logged and the next step still runs.
"""Reconciliation Worker - periodic queue maintenance and catalog refresh."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from coverkeep.infrastructure.observability.logging import set_correlation_id

if TYPE_CHECKING:
    from coverkeep.application.services.covers.reconciliation import (
        CoverReconciliationService,
    )
    from coverkeep.application.workers.persistent_cover_queue import (
        PersistentCoverQueue,
    )

logger = logging.getLogger(__name__)


class ReconciliationWorker:
    """Background scheduler for reconciliation cycles."""

    def __init__(
        self,
        service: CoverReconciliationService,
        queue: PersistentCoverQueue,
        interval_hours: float = 24.0,
        initial_delay_seconds: float = 10.0,
        freshness_window_hours: float = 24.0,
        cleanup_max_age_days: int = 7,
        lease_timeout_seconds: int = 300,
    ) -> None:
        self._service = service
        self._queue = queue
        self.interval_seconds = interval_hours * 3600
        self.initial_delay_seconds = initial_delay_seconds
        self._freshness_window = timedelta(hours=freshness_window_hours)
        self._cleanup_max_age_days = cleanup_max_age_days
        self._lease_timeout = lease_timeout_seconds

        self._running = False
        self._task: asyncio.Task[None] | None = None
        # One cycle at a time, whether scheduled or triggered through the API
        self._cycle_lock = asyncio.Lock()
        self._last_run_at: datetime | None = None
        self._last_run_stats: dict[str, Any] | None = None
        self._last_error: str | None = None

    async def start(self) -> None:
        if self._running:
            logger.warning("ReconciliationWorker is already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop(), name="cover-reconciliation")
        logger.info(
            "ReconciliationWorker started (first run in %.0fs, interval %.0fs)",
            self.initial_delay_seconds,
            self.interval_seconds,
        )

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        logger.info("ReconciliationWorker stopped")

    async def _run_loop(self) -> None:
        await asyncio.sleep(self.initial_delay_seconds)

        while self._running:
            try:
                await self.run_cycle()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._last_error = str(e)
                logger.exception("Reconciliation cycle crashed: %s", e)

            await asyncio.sleep(self.interval_seconds)

    async def trigger_run(self) -> dict[str, Any]:
        """Run one cycle now (ops endpoint)."""
        return await self.run_cycle()

    async def run_cycle(self) -> dict[str, Any]:
        """Run reclaim, refresh and cleanup once.

        Returns:
            Per-step stats, also kept as last_run_stats
        """
        async with self._cycle_lock:
            set_correlation_id(f"reconcile-{datetime.now(UTC):%Y%m%dT%H%M%S}")
            stats: dict[str, Any] = {
                "reclaimed": 0,
                "refresh": None,
                "refresh_skipped": False,
                "cleaned_up": 0,
                "errors": [],
            }

            try:
                stats["reclaimed"] = await self._queue.reclaim_stale(self._lease_timeout)
            except Exception as e:
                stats["errors"].append(f"reclaim: {e}")
                logger.warning("Lease reclaim failed: %s", e)

            if self._service.has_metadata_source:
                try:
                    report = await self._service.refresh_stale(self._freshness_window)
                    stats["refresh"] = report.to_dict()
                except Exception as e:
                    stats["errors"].append(f"refresh: {e}")
                    logger.warning("Stale refresh failed: %s", e)
            else:
                stats["refresh_skipped"] = True
                logger.info("IGDB not configured, skipping metadata refresh")

            try:
                stats["cleaned_up"] = await self._queue.cleanup(
                    self._cleanup_max_age_days
                )
            except Exception as e:
                stats["errors"].append(f"cleanup: {e}")
                logger.warning("Queue cleanup failed: %s", e)

            self._last_run_at = datetime.now(UTC)
            self._last_run_stats = stats
            if stats["errors"]:
                self._last_error = stats["errors"][-1]
            return stats

    def get_status(self) -> dict[str, Any]:
        """Get worker status for monitoring."""
        return {
            "name": "Cover Reconciliation Worker",
            "running": self._running,
            "status": "active" if self._running else "stopped",
            "interval_seconds": self.interval_seconds,
            "last_run_at": self._last_run_at.isoformat() if self._last_run_at else None,
            "last_run_stats": self._last_run_stats,
            "last_error": self._last_error,
        }
