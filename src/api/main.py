"""
FastAPI application factory and configuration.

This module creates the FastAPI application instance,
configures exception handlers and lifespan events.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from psycopg_pool import ConnectionPool

from src.adapters.repository.memory import InMemoryStore
from src.adapters.repository.postgres import run_migrations
from src.api.errors import install_error_handlers
from src.api.v1 import router as v1_router
from src.config.settings import get_settings

logger = logging.getLogger(__name__)

# OpenAPI tags for documentation grouping
tags_metadata = [
    {
        "name": "verification",
        "description": "Institutional email verification with bounded attempts",
    },
    {
        "name": "attendance",
        "description": "Event attendance codes and exactly-once redemption",
    },
    {
        "name": "identity",
        "description": "Email and institutional ID uniqueness, account linking",
    },
]


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    FastAPI lifespan context manager.

    Manages application startup and shutdown:
    - Creates the database pool and runs migrations (postgres backend)
    - Creates a process-local store instead (memory backend)
    - Closes the pool on shutdown
    """
    settings = get_settings()

    logger.info("Starting application...")

    pool = None
    app.state.store = None
    if settings.storage_backend == "memory":
        logger.warning("Using in-memory storage; data is lost on restart")
        app.state.store = InMemoryStore()
    else:
        logger.info("Connecting to database...")
        pool = ConnectionPool(
            conninfo=settings.database_url,
            min_size=settings.pool_min_size,
            max_size=settings.pool_max_size,
        )

        logger.info("Running database migrations...")
        run_migrations(pool)

    # Store pool in app state for dependency injection
    app.state.pool = pool

    logger.info("Application startup complete")

    yield

    logger.info("Shutting down application...")
    if pool is not None:
        pool.close()
        logger.info("Database connection pool closed")


app = FastAPI(
    title="chapterguard",
    description="Identity and attendance integrity API for a campus chapter",
    version="0.1.0",
    openapi_tags=tags_metadata,
    lifespan=lifespan,
)

install_error_handlers(app)

# Include v1 API routes
app.include_router(v1_router, prefix="/v1")


@app.get("/health")
async def health_check(request: Request) -> dict[str, str]:
    """
    Health check endpoint with database validation.

    Returns 200 OK if the application and its storage are healthy.
    Raises exception if database connection fails.
    """
    pool = request.app.state.pool
    if pool is not None:
        with pool.connection() as conn:
            conn.execute("SELECT 1")

    return {"status": "healthy"}
