"""
FastAPI application factory and configuration.

This module creates the FastAPI application instance,
configures logging and lifespan events.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from psycopg_pool import ConnectionPool

from src.adapters.repository import (
    InMemoryRegistryRepository,
    PostgresRegistryRepository,
    run_migrations,
)
from src.api.dependencies import get_event_sink
from src.api.v1 import router as v1_router
from src.config.settings import get_settings
from src.domain.admin import AdminService

logger = logging.getLogger(__name__)

# OpenAPI tags for documentation grouping
tags_metadata = [
    {
        "name": "v1",
        "description": "Worker Registry API v1 - Attested worker admission, rotation and liveness",
    },
]


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    FastAPI lifespan context manager.

    Manages application startup and shutdown:
    - Creates the repository (PostgreSQL pool + migrations, or in-memory)
    - Bootstraps the registry owner when none is persisted
    - Closes the connection pool on shutdown
    """
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    logger.info("Starting application...")

    pool = None
    if settings.storage_backend == "postgres":
        logger.info("Connecting to database...")
        pool = ConnectionPool(
            conninfo=settings.database_url,
            min_size=settings.pool_min_size,
            max_size=settings.pool_max_size,
        )
        logger.info("Running database migrations...")
        run_migrations(pool)
        app.state.repository = PostgresRegistryRepository(pool)
    else:
        logger.warning("Using in-memory storage; registry state is lost on restart")
        app.state.repository = InMemoryRegistryRepository()
    app.state.pool = pool

    admin = AdminService(app.state.repository, get_event_sink(), settings.bcrypt_cost)
    admin.bootstrap_owner(settings.owner_account_id, settings.owner_password)

    logger.info("Application startup complete")

    yield

    # Shutdown
    logger.info("Shutting down application...")
    if pool is not None:
        pool.close()
        logger.info("Database connection pool closed")


app = FastAPI(
    title="worker-registry",
    description="Worker Registry API - Admits TEE-attested workers into pools, one active worker per pool",
    version="0.1.0",
    openapi_tags=tags_metadata,
    lifespan=lifespan,
)

# Include v1 API routes
app.include_router(v1_router, prefix="/v1")


@app.get("/health")
async def health_check(request: Request) -> dict[str, str]:
    """
    Health check endpoint with storage validation.

    Returns 200 OK if the application and its database (when configured)
    are healthy. Raises exception if the database connection fails.
    """
    pool = request.app.state.pool
    if pool is not None:
        with pool.connection() as conn:
            conn.execute("SELECT 1")

    return {"status": "healthy"}
