"""FastAPI application entry point."""

from fastapi import FastAPI, Request, Response
from starlette.middleware.base import RequestResponseEndpoint

from coverkeep import __version__
from coverkeep.api.routers import api_router
from coverkeep.config import Settings
from coverkeep.infrastructure.lifecycle import lifespan
from coverkeep.infrastructure.observability.logging import set_correlation_id


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create the ops application.

    Args:
        settings: Settings to use instead of the cached environment settings
    """
    app = FastAPI(
        title="coverkeep",
        description="Durable cover image acquisition for a game catalog",
        version=__version__,
        lifespan=lifespan,
    )
    if settings is not None:
        app.state.settings = settings

    @app.middleware("http")
    async def correlation_id_middleware(
        request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        correlation_id = set_correlation_id(request.headers.get("X-Correlation-ID"))
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    app.include_router(api_router, prefix="/api")
    return app


app = create_app()
