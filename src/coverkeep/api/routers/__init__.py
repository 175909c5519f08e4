"""HTTP routers, aggregated into api_router (mounted under /api)."""

from fastapi import APIRouter

from coverkeep.api.routers import covers

api_router = APIRouter()
api_router.include_router(covers.router)

__all__ = ["api_router"]
