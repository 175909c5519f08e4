"""Cover pipeline operational endpoints."""

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from coverkeep.api.dependencies import get_cover_components, get_cover_queue
from coverkeep.application.workers.persistent_cover_queue import PersistentCoverQueue
from coverkeep.domain.entities import CoverPriority
from coverkeep.infrastructure.lifecycle import CoverComponents

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/covers", tags=["covers"])


class EnqueueRequest(BaseModel):
    """Manual enqueue of one game's cover."""

    game_id: str | None = Field(default=None, description="Catalog entry id")
    remote_image_id: str | None = Field(default=None, description="IGDB cover image_id")
    priority: int = Field(
        default=CoverPriority.USER, ge=1, description="Lower is served first"
    )


class EnqueueResponse(BaseModel):
    """Queue id, or null when game_id/remote_image_id was missing."""

    queue_id: str | None


@router.get("/queue/stats")
async def get_queue_stats(
    queue: PersistentCoverQueue = Depends(get_cover_queue),
) -> dict[str, int]:
    """Item counts per status."""
    stats = await queue.stats()
    return stats.to_dict()


@router.post("/queue/cleanup")
async def cleanup_queue(
    max_age_days: int = Query(default=7, ge=1),
    queue: PersistentCoverQueue = Depends(get_cover_queue),
) -> dict[str, int]:
    """Delete completed/failed items older than max_age_days."""
    deleted = await queue.cleanup(max_age_days)
    return {"deleted": deleted}


@router.post("/queue/enqueue", response_model=EnqueueResponse)
async def enqueue_cover(
    request: EnqueueRequest,
    queue: PersistentCoverQueue = Depends(get_cover_queue),
) -> EnqueueResponse:
    """Queue a cover (deduplicated against existing items for the game)."""
    queue_id = await queue.enqueue(
        request.game_id, request.remote_image_id, request.priority
    )
    return EnqueueResponse(queue_id=queue_id)


@router.post("/reconcile")
async def trigger_reconciliation(
    components: CoverComponents = Depends(get_cover_components),
) -> dict[str, Any]:
    """Run one reconciliation cycle now and return its stats."""
    if components.scheduler is None:
        raise HTTPException(status_code=503, detail="Reconciliation not available")
    return await components.scheduler.trigger_run()


@router.get("/workers")
async def get_workers_status(
    components: CoverComponents = Depends(get_cover_components),
) -> dict[str, Any]:
    """Status of this instance's worker and scheduler."""
    return {
        "worker": components.worker.get_status() if components.worker else None,
        "scheduler": components.scheduler.get_status()
        if components.scheduler
        else None,
    }


@router.get("/health")
async def health(
    components: CoverComponents = Depends(get_cover_components),
) -> JSONResponse:
    """Queue and DB pool stats. 503 when the queue store can't be read."""
    try:
        stats = await components.queue.stats()
    except Exception as e:
        logger.warning("Health check failed: %s", e)
        return JSONResponse(
            status_code=503, content={"status": "unhealthy", "error": str(e)}
        )

    return JSONResponse(
        content={
            "status": "healthy",
            "storage_backend": components.asset_store.backend_name,
            "worker_running": bool(components.worker and components.worker.is_running),
            "queue": stats.to_dict(),
            "database": components.database.get_pool_stats()
            if components.database
            else None,
        }
    )
