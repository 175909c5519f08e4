"""Dependency injection for API endpoints."""

from typing import cast

from fastapi import HTTPException, Request

from coverkeep.application.workers.persistent_cover_queue import PersistentCoverQueue
from coverkeep.infrastructure.lifecycle import CoverComponents


# Hey future me, components are built ONCE in the lifespan and hung on app.state.covers.
# Missing means startup failed (or a test forgot to set it), answer 503 instead of a 500.
def get_cover_components(request: Request) -> CoverComponents:
    """Get the cover pipeline components from app state.

    Raises:
        HTTPException: 503 if the pipeline isn't initialized
    """
    components = getattr(request.app.state, "covers", None)
    if components is None:
        raise HTTPException(status_code=503, detail="Cover pipeline not initialized")
    return cast(CoverComponents, components)


def get_cover_queue(request: Request) -> PersistentCoverQueue:
    return get_cover_components(request).queue
