"""FastAPI application entrypoint.

This is the main file that creates and configures the FastAPI app.
Run with: uvicorn shipyard.api.main:app --reload
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from shipyard import __description__, __version__
from shipyard.api.errors import register_error_handlers
from shipyard.api.routes import dashboard, events, reports, runs
from shipyard.api.routes.webhooks import router as webhooks_router
from shipyard.logging_config import configure_logging
from shipyard.models.config import get_settings
from shipyard.models.database import init_db

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup and shutdown lifecycle.

    Code before `yield` runs on startup.
    Code after `yield` runs on shutdown.
    """
    settings = get_settings()
    configure_logging(settings.log_level)
    init_db()
    app.title = settings.app_name
    logger.info("app_starting", app_name=settings.app_name, debug=settings.debug)
    yield
    logger.info("app_shutting_down")


app = FastAPI(
    title="Shipyard",
    version=__version__,
    description=__description__,
    lifespan=lifespan,
)

# CORS: allow the dashboard to call the API from a different origin.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Every error response is {"errors": {"detail": <reason phrase>}}
register_error_handlers(app)

# Register route modules.
# The prefix is prepended to all routes in the router.
# Tags group endpoints in the Swagger documentation.
app.include_router(runs.router, prefix="/api/runs", tags=["runs"])
app.include_router(reports.router, prefix="/api/reports", tags=["reports"])
app.include_router(events.router, prefix="/api/events", tags=["events"])
app.include_router(dashboard.router, prefix="/api", tags=["dashboard"])
app.include_router(webhooks_router)


@app.get("/health", tags=["system"])
async def health_check() -> dict[str, str]:
    """Health check endpoint.

    Used by:
    - Docker HEALTHCHECK to know if the container is alive
    - Kubernetes readiness/liveness probes
    """
    return {"status": "healthy"}
