"""
FastAPI Main Application
Entry point for the API server
Source: https://fastapi.tiangolo.com/
Verified: 2026-10-16
"""

from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.api.config import settings
from src.api.routes import communications, health
from src.core.config import get_nphies_settings
from src.db.connection import close_db_connection, create_tables, get_session_maker
from src.gateways.nphies_gateway import NphiesGateway
from src.services.nphies import (
    BundleComposer,
    CommunicationService,
    PollSchedulerRegistry,
    ResponseInterpreter,
    SqlAlchemyCorrelationStore,
)
from src.utils.errors import register_exception_handlers
from src.utils.logging import get_logger, setup_logging

# Setup logging
setup_logging(
    level=settings.LOG_LEVEL,
    log_file=settings.LOG_FILE,
    json_logs=settings.is_production,
)

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):  # type: ignore[no-untyped-def]
    """
    Application lifespan manager.

    Builds the workflow components on startup; on shutdown cancels pending
    auto-polls before closing the HTTP client and database connections.

    Evidence: Lifespan events for startup/shutdown tasks
    Source: https://fastapi.tiangolo.com/advanced/events/
    Verified: 2026-10-16
    """
    # Startup
    logger.info(f"Starting application in {settings.ENVIRONMENT} mode")
    logger.info(f"Debug mode: {settings.DEBUG}")

    if settings.DB_CREATE_TABLES:
        await create_tables()

    nphies_settings = get_nphies_settings()
    store = SqlAlchemyCorrelationStore(get_session_maker())
    gateway = NphiesGateway(nphies_settings)
    composer = BundleComposer(nphies_settings)
    interpreter = ResponseInterpreter()
    schedulers = PollSchedulerRegistry(
        store, gateway, composer=composer, interpreter=interpreter, settings=nphies_settings
    )

    app.state.nphies_gateway = gateway
    app.state.poll_schedulers = schedulers
    app.state.communication_service = CommunicationService(
        store,
        gateway,
        schedulers,
        composer=composer,
        interpreter=interpreter,
        settings=nphies_settings,
    )
    logger.info(f"NPHIES endpoint: {nphies_settings.endpoint_url()}")

    yield

    # Shutdown
    logger.info("Shutting down application")
    await schedulers.shutdown()
    await gateway.close()
    await close_db_connection()
    logger.info("Database connections closed")


# Initialize FastAPI app
# Source: https://fastapi.tiangolo.com/tutorial/metadata/
# Verified: 2026-10-16
app = FastAPI(
    title="NPHIES Communication API",
    description="Communication, poll and status-check workflow for NPHIES claims and prior authorizations",
    version="1.0.0",
    docs_url="/docs" if not settings.is_production else None,  # Disable docs in production
    redoc_url="/redoc" if not settings.is_production else None,
    openapi_url="/openapi.json" if not settings.is_production else None,
    lifespan=lifespan,
)

# CORS middleware
# Evidence: CORS configuration for web applications
# Source: https://fastapi.tiangolo.com/tutorial/cors/
# Verified: 2026-10-16
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=settings.CORS_CREDENTIALS,
    allow_methods=settings.CORS_METHODS,
    allow_headers=settings.CORS_HEADERS,
)

register_exception_handlers(app)

# Include routers
app.include_router(health.router)
app.include_router(communications.router)


@app.get("/")
async def root() -> dict[str, Any]:
    """
    Root endpoint with API information.

    Evidence: Discoverable API pattern
    Source: https://restfulapi.net/
    Verified: 2026-10-16
    """
    return {
        "name": "NPHIES Communication API",
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT,
        "docs": "/docs" if not settings.is_production else "disabled",
    }
