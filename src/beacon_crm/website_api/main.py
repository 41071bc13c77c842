"""FastAPI application factory for the tracking ingestion API."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ..storage.migrations import run_migrations
from .config import settings
from .routes.health import router as health_router
from .routes.tracking import router as tracking_router

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting Beacon CRM tracking API")
    applied = run_migrations(settings.db_path)
    logger.info(f"Database ready at {settings.db_path} ({applied} migrations applied)")

    yield

    logger.info("Beacon CRM tracking API shutting down")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Beacon CRM Tracking API",
        description="Behavioral tracking ingestion for visitor, session and lead state",
        version="1.0.0",
        lifespan=lifespan,
        debug=settings.debug,
    )

    # Wildcard origins cannot be combined with credentials
    wildcard = settings.allowed_origins == ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=not wildcard,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    app.include_router(health_router)
    app.include_router(tracking_router)

    return app


# Module-level app instance for uvicorn
app = create_app()
